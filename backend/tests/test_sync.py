# Overview: Pytest coverage for the unified cash ledger and its synchronization.

"""
Cash Ledger Sync Tests

- Settled payables, receivables, reconciled marketplace events and statement
  lines are mirrored once each
- A second sync writes nothing; pending counts drop to zero
- Manual registration is an upsert keyed by a deterministic reference
"""

from datetime import date
from decimal import Decimal

import pytest

from backoffice.models import (
    AccountPayable,
    AccountReceivable,
    CashMovement,
    MarketplaceTransaction,
    StatementTransaction,
)
from backoffice.services import cash_ledger_service, sync_service
from backoffice.signals import ledger_refreshed
from backoffice.validation import ValidationError


def _payable(db_session, company, status="PAID", amount="300.00"):
    payable = AccountPayable(
        company_id=company.id,
        supplier_name="Malharia Sul",
        description="Compra de camisetas",
        document="NF 1020",
        due_date=date(2024, 5, 10),
        payment_date=date(2024, 5, 9),
        total_amount=Decimal(amount),
        paid_amount=Decimal(amount) if status == "PAID" else None,
        payment_method="pix",
        status=status,
    )
    db_session.add(payable)
    db_session.commit()
    return payable


def _receivable(db_session, company, status="RECEIVED", received="150.00"):
    receivable = AccountReceivable(
        company_id=company.id,
        customer_name="Loja Centro",
        description="Venda atacado",
        due_date=date(2024, 5, 15),
        receipt_date=date(2024, 5, 14),
        total_amount=Decimal("200.00"),
        received_amount=Decimal(received) if received is not None else None,
        status=status,
    )
    db_session.add(receivable)
    db_session.commit()
    return receivable


@pytest.fixture
def settled(db_session, company_a):
    """One eligible record per source plus a few that are not eligible."""
    _payable(db_session, company_a)
    _payable(db_session, company_a, status="OPEN")
    _receivable(db_session, company_a, status="PARTIALLY_RECEIVED", received="150.00")
    _receivable(db_session, company_a, status="OPEN", received=None)
    db_session.add_all([
        MarketplaceTransaction(
            company_id=company_a.id, channel="mercado_livre", transaction_date=date(2024, 5, 12),
            description="Comissão por venda", entry_kind="DEBIT", net_amount=Decimal("-12.50"),
            status="RECONCILED",
        ),
        MarketplaceTransaction(
            company_id=company_a.id, channel="mercado_livre", transaction_date=date(2024, 5, 12),
            description="Venda", entry_kind="CREDIT", net_amount=Decimal("80.00"), status="IMPORTED",
        ),
        StatementTransaction(
            company_id=company_a.id, origin="BANK", transaction_date=date(2024, 5, 13),
            description="TARIFA PACOTE", amount=Decimal("39.90"), entry_kind="DEBIT", status="RECONCILED",
        ),
    ])
    db_session.commit()


class TestSyncAll:
    """sync_all_movements."""

    def test_mirrors_each_eligible_record(self, db_session, company_a, settled):
        result = sync_service.sync_all_movements(company_a.id)

        assert result.payables_synced == 1
        assert result.receivables_synced == 1
        assert result.marketplace_synced == 1
        assert result.statements_synced == 1
        assert result.total_synced == 4
        assert result.errors == []

        by_source = {m.source: m for m in db_session.query(CashMovement).all()}
        assert set(by_source) == {"PAYABLE", "RECEIVABLE", "MARKETPLACE", "BANK"}
        assert by_source["PAYABLE"].kind == "OUTFLOW"
        assert by_source["PAYABLE"].movement_date == date(2024, 5, 9)
        assert by_source["RECEIVABLE"].kind == "INFLOW"
        assert by_source["RECEIVABLE"].amount == Decimal("150.00")
        assert by_source["MARKETPLACE"].amount == Decimal("12.50")
        assert by_source["MARKETPLACE"].kind == "OUTFLOW"

    def test_second_sync_writes_nothing(self, db_session, company_a, settled):
        sync_service.sync_all_movements(company_a.id)
        again = sync_service.sync_all_movements(company_a.id)

        assert again.total_synced == 0
        assert db_session.query(CashMovement).count() == 4

    def test_pending_counts(self, db_session, company_a, settled):
        before = sync_service.count_pending_sync(company_a.id)
        sync_service.sync_all_movements(company_a.id)
        after = sync_service.count_pending_sync(company_a.id)

        assert before == {"payables": 1, "receivables": 1, "marketplace": 1, "statements": 1, "total": 4}
        assert after["total"] == 0

    def test_record_settled_later_is_picked_up(self, db_session, company_a, settled):
        sync_service.sync_all_movements(company_a.id)
        payable = db_session.query(AccountPayable).filter_by(status="OPEN").one()
        payable.status = "PAID"
        payable.paid_amount = payable.total_amount
        db_session.commit()

        result = sync_service.sync_all_movements(company_a.id)

        assert result.payables_synced == 1
        assert result.total_synced == 1

    def test_failing_record_does_not_block_siblings(self, db_session, company_a, settled):
        _payable(db_session, company_a, amount="0.00")

        result = sync_service.sync_all_movements(company_a.id)

        assert result.payables_synced == 1
        assert result.total_synced == 4
        assert len(result.errors) == 1
        assert result.errors[0]["source"] == "PAYABLE"
        assert "amount" in result.errors[0]["error"]
        assert db_session.query(CashMovement).count() == 4
        assert sync_service.count_pending_sync(company_a.id)["payables"] == 1

    def test_lowercase_statement_origin_synced_once(self, db_session, company_a):
        db_session.add(StatementTransaction(
            company_id=company_a.id, origin="card", transaction_date=date(2024, 5, 13),
            description="PADARIA", amount=Decimal("23.90"), entry_kind="DEBIT", status="RECONCILED",
        ))
        db_session.commit()

        first = sync_service.sync_all_movements(company_a.id)
        second = sync_service.sync_all_movements(company_a.id)

        assert first.statements_synced == 1
        assert second.statements_synced == 0
        assert sync_service.count_pending_sync(company_a.id)["statements"] == 0
        assert db_session.query(CashMovement).one().source == "CARD"

    def test_cancel_before_first_record(self, db_session, company_a, settled):
        result = sync_service.sync_all_movements(company_a.id, should_cancel=lambda: True)

        assert result.cancelled is True
        assert result.total_synced == 0
        assert sync_service.count_pending_sync(company_a.id)["total"] == 4

    def test_other_company_untouched(self, db_session, company_a, company_b, settled):
        result = sync_service.sync_all_movements(company_b.id)

        assert result.total_synced == 0
        assert db_session.query(CashMovement).count() == 0

    def test_sends_ledger_refreshed(self, db_session, company_a, settled):
        received = []

        def _on_refresh(sender, **kwargs):
            received.append(kwargs["company_id"])

        with ledger_refreshed.connected_to(_on_refresh):
            sync_service.sync_all_movements(company_a.id)

        assert received == [company_a.id]


class TestCashMovements:
    """register_cash_movement / remove_cash_movement / cash_balance."""

    def _data(self, **overrides):
        data = {
            "kind": "inflow",
            "movement_date": "2024-05-20",
            "description": "Aporte de capital",
            "amount": "1000",
        }
        data.update(overrides)
        return data

    def test_reference_is_deterministic(self):
        a = cash_ledger_service.reference_id_for(1, "PAYABLE", 42)
        b = cash_ledger_service.reference_id_for(1, "PAYABLE", "42")

        assert a == b
        assert a != cash_ledger_service.reference_id_for(2, "PAYABLE", 42)
        assert a != cash_ledger_service.reference_id_for(1, "RECEIVABLE", 42)

    def test_register_twice_updates_same_row(self, db_session, company_a):
        first, created = cash_ledger_service.register_cash_movement(
            company_id=company_a.id, source="MANUAL", source_record_id="A-1", data=self._data()
        )
        second, created_again = cash_ledger_service.register_cash_movement(
            company_id=company_a.id, source="MANUAL", source_record_id="A-1",
            data=self._data(amount="1200.00"),
        )

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.amount == Decimal("1200.00")
        assert second.kind == "INFLOW"
        assert second.reference_id == cash_ledger_service.reference_id_for(company_a.id, "MANUAL", "A-1")
        assert db_session.query(CashMovement).count() == 1

    @pytest.mark.parametrize("overrides", [
        {"amount": "0"},
        {"amount": "-5"},
        {"kind": "sideways"},
        {"description": "  "},
        {"movement_date": None},
    ])
    def test_invalid_data_rejected(self, db_session, company_a, overrides):
        with pytest.raises(ValidationError):
            cash_ledger_service.register_cash_movement(
                company_id=company_a.id, source="MANUAL", source_record_id="A-1",
                data=self._data(**overrides),
            )

    def test_unknown_source_rejected(self, db_session, company_a):
        with pytest.raises(ValidationError):
            cash_ledger_service.register_cash_movement(
                company_id=company_a.id, source="CRYPTO", source_record_id="A-1", data=self._data()
            )

    def test_remove(self, db_session, company_a):
        cash_ledger_service.register_cash_movement(
            company_id=company_a.id, source="MANUAL", source_record_id="A-1", data=self._data()
        )

        assert cash_ledger_service.remove_cash_movement(
            company_id=company_a.id, source="manual", source_record_id="A-1"
        ) is True
        assert cash_ledger_service.remove_cash_movement(
            company_id=company_a.id, source="MANUAL", source_record_id="A-1"
        ) is False

    def test_balance(self, db_session, company_a, settled):
        sync_service.sync_all_movements(company_a.id)

        balance = cash_ledger_service.cash_balance(company_id=company_a.id)

        assert balance["movements"] == 4
        assert balance["inflow"] == "150.00"
        assert balance["outflow"] == "352.40"
        assert balance["net"] == "-202.40"

    def test_balance_period(self, db_session, company_a, settled):
        sync_service.sync_all_movements(company_a.id)

        balance = cash_ledger_service.cash_balance(
            company_id=company_a.id, start=date(2024, 5, 13), end=date(2024, 5, 31)
        )

        assert balance["movements"] == 2
        assert balance["inflow"] == "150.00"
        assert balance["outflow"] == "39.90"
