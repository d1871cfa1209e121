"""
Transaction fingerprints for duplicate detection.

A fingerprint is the SHA-256 hex digest of

    marketplace rows:  transaction_date | description | order_id | net_amount (2 places) | transaction_type
    statement lines:   origin | account_name | transaction_date | description | amount (2 places) | entry_kind

Two imported rows with the same fingerprint are the same settlement event,
whatever file they came from. Large imports are hashed on a worker thread by
BatchHasher so the caller can report progress and cancel mid-flight.
"""

from __future__ import annotations

import hashlib
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from decimal import ROUND_HALF_UP

from ..extensions import db
from ..models import MarketplaceTransaction
from ..time_utils import parse_business_date
from ..validation import CENTS, to_decimal


class HashingCancelled(Exception):
    """Raised from BatchHasher results when cancel() was called mid-batch."""

    def __init__(self, processed: int, total: int):
        super().__init__(f"Hashing cancelled after {processed} of {total} rows")
        self.processed = processed
        self.total = total


def _text(value) -> str:
    return str(value).strip() if value is not None else ""


def _digest(parts) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _amount_text(value, field: str) -> str:
    amount = to_decimal(value if value is not None else 0, field)
    return str(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


def transaction_fingerprint(
    *,
    transaction_date,
    description: str | None,
    order_id: str | None,
    net_amount,
    transaction_type: str | None,
) -> str:
    day = parse_business_date(transaction_date)
    return _digest([
        day.isoformat() if day else "",
        _text(description),
        _text(order_id),
        _amount_text(net_amount, "net_amount"),
        _text(transaction_type),
    ])


def fingerprint_row(row: dict) -> str:
    return transaction_fingerprint(
        transaction_date=row.get("transaction_date"),
        description=row.get("description"),
        order_id=row.get("order_id"),
        net_amount=row.get("net_amount"),
        transaction_type=row.get("transaction_type"),
    )


def statement_fingerprint(
    *,
    origin: str,
    account_name: str | None,
    transaction_date,
    description: str | None,
    amount,
    entry_kind: str | None,
) -> str:
    day = parse_business_date(transaction_date)
    return _digest([
        _text(origin).upper(),
        _text(account_name),
        day.isoformat() if day else "",
        _text(description),
        _amount_text(amount, "amount"),
        _text(entry_kind).upper(),
    ])


def statement_row_fingerprinter(origin: str):
    """Row -> fingerprint callable for BatchHasher over one statement origin."""
    def _fingerprint(row: dict) -> str:
        return statement_fingerprint(
            origin=origin,
            account_name=row.get("account_name"),
            transaction_date=row.get("transaction_date"),
            description=row.get("description"),
            amount=row.get("amount"),
            entry_kind=row.get("entry_kind"),
        )
    return _fingerprint


class BatchHasher:
    """
    Hash import rows off the calling thread.

    USAGE:
        with BatchHasher(progress_every=500, on_progress=cb) as hasher:
            hashes = hasher.hash_all(rows, should_cancel=job_cancelled)

    hash_all waits on the worker and polls should_cancel() every
    poll_seconds; once it returns true the worker stops before its next row
    and HashingCancelled is raised to the caller.

    on_progress(processed, total) runs on the worker thread, every
    progress_every rows and once at the end. fingerprint maps one row to its
    hash (marketplace rows by default). Rows whose date or amount cannot be
    parsed hash to None.
    """

    def __init__(self, *, progress_every: int = 500, on_progress=None, fingerprint=None, poll_seconds: float = 0.05):
        if progress_every <= 0:
            raise ValueError("progress_every must be > 0")
        self.progress_every = progress_every
        self.on_progress = on_progress
        self.fingerprint = fingerprint or fingerprint_row
        self.poll_seconds = poll_seconds
        self._cancel = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fingerprint")

    def _run(self, rows: list[dict]) -> list[str | None]:
        total = len(rows)
        hashes: list[str | None] = []
        for index, row in enumerate(rows, start=1):
            if self._cancel.is_set():
                raise HashingCancelled(index - 1, total)
            try:
                hashes.append(self.fingerprint(row))
            except ValueError:
                # Unparseable date or amount; the importer reports the row
                hashes.append(None)
            if self.on_progress is not None and (index % self.progress_every == 0 or index == total):
                self.on_progress(index, total)
        return hashes

    def submit(self, rows) -> Future:
        self._cancel.clear()
        return self._executor.submit(self._run, list(rows))

    def hash_all(self, rows, *, should_cancel=None) -> list[str | None]:
        """Hash rows on the worker; raises HashingCancelled if should_cancel() turns true first."""
        future = self.submit(rows)
        if should_cancel is None:
            return future.result()
        while True:
            try:
                return future.result(timeout=self.poll_seconds)
            except FutureTimeoutError:
                if should_cancel():
                    self.cancel()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False


def find_existing_fingerprints(
    company_id: int,
    fingerprints,
    *,
    model=MarketplaceTransaction,
    chunk_size: int = 500,
) -> set[str]:
    """Subset of fingerprints already stored for the company in model's table."""
    wanted = list(dict.fromkeys(fp for fp in fingerprints if fp))
    found: set[str] = set()
    for start in range(0, len(wanted), chunk_size):
        chunk = wanted[start:start + chunk_size]
        rows = (
            db.session.query(model.fingerprint)
            .filter(
                model.company_id == company_id,
                model.fingerprint.in_(chunk),
            )
            .all()
        )
        found.update(fp for (fp,) in rows)
    return found
