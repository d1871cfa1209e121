# Overview: Pytest coverage for fingerprints and marketplace and statement imports.

"""
Fingerprint / Import Tests

- Fingerprints are stable across formatting differences of the same row
- BatchHasher reports progress, flags unparseable rows and can be cancelled
- Imports skip rows already stored and repeats within the batch
- Hashing can be cancelled while it runs
- Statement imports validate the origin and feed categorization
"""

import threading
from datetime import date
from decimal import Decimal

import pytest

from backoffice.models import MarketplaceTransaction, MarketplaceTransactionItem, StatementTransaction
from backoffice.services import ingestion_service
from backoffice.services.hashing_service import (
    BatchHasher,
    HashingCancelled,
    find_existing_fingerprints,
    fingerprint_row,
    transaction_fingerprint,
)
from backoffice.validation import ValidationError


def _row(**overrides):
    row = {
        "transaction_date": "2024-03-01",
        "description": "Venda produto Camiseta",
        "order_id": "2000001",
        "transaction_type": "venda",
        "net_amount": "100.00",
    }
    row.update(overrides)
    return row


class TestFingerprint:
    """transaction_fingerprint / fingerprint_row."""

    def test_same_event_same_fingerprint(self):
        a = fingerprint_row(_row())
        b = transaction_fingerprint(
            transaction_date=date(2024, 3, 1),
            description="  Venda produto Camiseta ",
            order_id=2000001,
            net_amount=Decimal("100"),
            transaction_type="venda",
        )

        assert a == b
        assert len(a) == 64

    def test_any_field_changes_fingerprint(self):
        base = fingerprint_row(_row())

        assert fingerprint_row(_row(order_id="2000002")) != base
        assert fingerprint_row(_row(net_amount="100.01")) != base
        assert fingerprint_row(_row(transaction_date="2024-03-02")) != base
        assert fingerprint_row(_row(transaction_type="estorno")) != base


class TestBatchHasher:
    """Hashing on the worker thread."""

    def test_progress_and_bad_rows(self):
        progress = []
        rows = [_row(order_id=str(n)) for n in range(4)] + [_row(transaction_date="2024-13-45")]

        with BatchHasher(progress_every=2, on_progress=lambda done, total: progress.append((done, total))) as hasher:
            hashes = hasher.hash_all(rows)

        assert len(hashes) == 5
        assert all(h is not None for h in hashes[:4])
        assert hashes[4] is None
        assert progress == [(2, 5), (4, 5), (5, 5)]

    def test_cancel_mid_batch(self):
        rows = [_row(order_id=str(n)) for n in range(3)]
        hasher = BatchHasher(progress_every=1, on_progress=lambda done, total: hasher.cancel())

        with hasher:
            future = hasher.submit(rows)
            with pytest.raises(HashingCancelled) as exc_info:
                future.result()

        assert exc_info.value.processed == 1
        assert exc_info.value.total == 3
        assert hasher.cancelled is True

    def test_progress_every_must_be_positive(self):
        with pytest.raises(ValueError):
            BatchHasher(progress_every=0)

    def test_hash_all_stops_when_caller_cancels(self):
        """should_cancel() is polled while the worker runs; the worker stops before its next row."""
        progressed = threading.Event()
        resumed = threading.Event()

        def _on_progress(done, total):
            progressed.set()
            resumed.wait(5)

        hasher = BatchHasher(progress_every=1, on_progress=_on_progress, poll_seconds=0.01)
        cancel = hasher.cancel

        def _cancel_and_resume():
            cancel()
            resumed.set()

        hasher.cancel = _cancel_and_resume
        rows = [_row(order_id=str(n)) for n in range(3)]

        with hasher:
            with pytest.raises(HashingCancelled) as exc_info:
                hasher.hash_all(rows, should_cancel=progressed.is_set)

        assert exc_info.value.processed == 1
        assert exc_info.value.total == 3

    def test_hash_all_without_cancel_returns_every_hash(self):
        with BatchHasher(poll_seconds=0.01) as hasher:
            hashes = hasher.hash_all([_row(), _row(order_id="2")], should_cancel=lambda: False)

        assert hashes == [fingerprint_row(_row()), fingerprint_row(_row(order_id="2"))]


class TestIngestion:
    """ingest_marketplace_transactions."""

    def test_reimport_counts_duplicates(self, db_session, company_a):
        rows = [_row(), _row(order_id="2000002", net_amount="55.10")]

        first = ingestion_service.ingest_marketplace_transactions(company_a.id, "Mercado Livre", rows)
        second = ingestion_service.ingest_marketplace_transactions(company_a.id, "Mercado Livre", rows)

        assert first["inserted"] == 2
        assert second["inserted"] == 0
        assert second["duplicates"] == 2
        assert db_session.query(MarketplaceTransaction).count() == 2

    def test_repeat_inside_batch_is_duplicate(self, db_session, company_a):
        result = ingestion_service.ingest_marketplace_transactions(
            company_a.id, "shopee", [_row(), _row(description=" Venda produto Camiseta")]
        )

        assert result["inserted"] == 1
        assert result["duplicates"] == 1

    def test_same_row_in_other_company_is_not_duplicate(self, db_session, company_a, company_b):
        ingestion_service.ingest_marketplace_transactions(company_a.id, "shopee", [_row()])
        result = ingestion_service.ingest_marketplace_transactions(company_b.id, "shopee", [_row()])

        assert result["inserted"] == 1
        assert find_existing_fingerprints(company_b.id, [fingerprint_row(_row())]) == {fingerprint_row(_row())}

    def test_invalid_rows_reported(self, db_session, company_a):
        rows = [
            _row(transaction_date="2024-13-45"),
            _row(order_id="2000009", description=""),
            _row(order_id="2000010"),
        ]

        result = ingestion_service.ingest_marketplace_transactions(company_a.id, "shopee", rows)

        assert result["inserted"] == 1
        assert [e["row"] for e in result["errors"]] == [0, 1]

    def test_items_stored_and_rows_categorized(self, db_session, company_a):
        rows = [
            _row(items=[{"external_sku": "CAM-001", "quantity": 2, "unit_price": "50.00"}]),
            _row(description="Comissão por venda", order_id="2000001", net_amount="-12.50", transaction_type=None),
        ]

        result = ingestion_service.ingest_marketplace_transactions(company_a.id, "mercado_livre", rows)

        assert result["inserted"] == 2
        assert result["categorization"]["reconciled"] == 2
        item = db_session.query(MarketplaceTransactionItem).one()
        assert item.total_price == Decimal("100.00")
        fee = db_session.get(MarketplaceTransaction, result["transaction_ids"][1])
        assert fee.entry_kind == "DEBIT"
        assert fee.transaction_type == "comissao"
        assert fee.status == "RECONCILED"

    def test_cancel_before_first_row(self, db_session, company_a):
        result = ingestion_service.ingest_marketplace_transactions(
            company_a.id, "shopee", [_row()], should_cancel=lambda: True
        )

        assert result["cancelled"] is True
        assert result["inserted"] == 0
        assert result["categorization"] is None

    def test_cancel_while_hashing(self, app, db_session, company_a, monkeypatch):
        monkeypatch.setitem(app.config, "HASH_PROGRESS_EVERY", 1)
        progressed = threading.Event()
        resumed = threading.Event()
        cancel = BatchHasher.cancel

        def _cancel_and_resume(self):
            cancel(self)
            resumed.set()

        def _on_progress(done, total):
            progressed.set()
            resumed.wait(5)

        monkeypatch.setattr(BatchHasher, "cancel", _cancel_and_resume)
        rows = [_row(order_id=str(n)) for n in range(3)]

        result = ingestion_service.ingest_marketplace_transactions(
            company_a.id, "shopee", rows, on_progress=_on_progress, should_cancel=progressed.is_set
        )

        assert result["cancelled"] is True
        assert result["inserted"] == 0
        assert result["categorization"] is None
        assert db_session.query(MarketplaceTransaction).count() == 0


def _line(**overrides):
    line = {
        "transaction_date": "2024-04-03",
        "description": "TARIFA PACOTE SERVICOS",
        "account_name": "Conta 1234",
        "amount": "-39.90",
    }
    line.update(overrides)
    return line


class TestStatementIngestion:
    """ingest_statement_transactions."""

    def test_origin_is_normalized(self, db_session, company_a):
        result = ingestion_service.ingest_statement_transactions(company_a.id, "bank", [_line()], categorize=False)

        assert result["origin"] == "BANK"
        assert result["inserted"] == 1
        line = db_session.query(StatementTransaction).one()
        assert line.origin == "BANK"
        assert line.amount == Decimal("39.90")
        assert line.entry_kind == "DEBIT"
        assert line.status == "PENDING"

    @pytest.mark.parametrize("origin", ["pix", "", None, "marketplace"])
    def test_unknown_origin_rejected(self, db_session, company_a, origin):
        with pytest.raises(ValidationError):
            ingestion_service.ingest_statement_transactions(company_a.id, origin, [_line()])

        assert db_session.query(StatementTransaction).count() == 0

    def test_reimport_counts_duplicates(self, db_session, company_a):
        rows = [_line(), _line(description="IOF COMPRA EXTERIOR", amount="-1.20")]

        first = ingestion_service.ingest_statement_transactions(company_a.id, "BANK", rows, categorize=False)
        second = ingestion_service.ingest_statement_transactions(company_a.id, "BANK", rows, categorize=False)

        assert first["inserted"] == 2
        assert second["inserted"] == 0
        assert second["duplicates"] == 2
        assert db_session.query(StatementTransaction).count() == 2

    def test_same_line_on_other_origin_is_not_duplicate(self, db_session, company_a):
        ingestion_service.ingest_statement_transactions(company_a.id, "BANK", [_line()], categorize=False)
        result = ingestion_service.ingest_statement_transactions(company_a.id, "CARD", [_line()], categorize=False)

        assert result["inserted"] == 1

    def test_card_charges_default_to_debit(self, db_session, company_a):
        ingestion_service.ingest_statement_transactions(company_a.id, "card", [
            _line(description="PADARIA SAO JOAO", amount="23.90"),
            _line(description="ESTORNO PADARIA SAO JOAO", amount="-23.90"),
        ], categorize=False)

        kinds = [line.entry_kind for line in db_session.query(StatementTransaction).order_by(StatementTransaction.id)]
        assert kinds == ["DEBIT", "CREDIT"]

    def test_invalid_lines_reported(self, db_session, company_a):
        result = ingestion_service.ingest_statement_transactions(company_a.id, "BANK", [
            _line(description=""),
            _line(amount=None),
            _line(entry_kind="SIDEWAYS"),
            _line(transaction_date="03/04/2024"),
            _line(),
        ], categorize=False)

        assert result["inserted"] == 1
        assert [e["row"] for e in result["errors"]] == [0, 1, 2, 3]

    def test_new_lines_are_categorized(self, db_session, company_a):
        result = ingestion_service.ingest_statement_transactions(company_a.id, "bank", [_line()])

        assert result["categorization"]["reconciled"] == 1
        line = db_session.query(StatementTransaction).one()
        assert line.status == "RECONCILED"
        assert line.category.name == "Tarifas Bancárias"
