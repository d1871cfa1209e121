# Overview: Pytest coverage for marketplace stock exits.

"""
Marketplace Stock Tests

- Resolved items post an exit with COGS; unresolved items are flagged
  NO_PRODUCT without blocking the rest of the order
- Reprocessing a transaction posts nothing new
- Reversal restores stock at the cost of the original exit
"""

from datetime import date
from decimal import Decimal

import pytest

from backoffice.models import CogsRecord, MarketplaceTransaction, MarketplaceTransactionItem
from backoffice.services import cost_ledger, inventory_service, marketplace_stock_service, sku_resolver
from backoffice.services.marketplace_stock_service import MarketplaceStockError


def _order(db_session, company, lines, channel="mercado_livre"):
    transaction = MarketplaceTransaction(
        company_id=company.id,
        channel=channel,
        transaction_date=date(2024, 3, 10),
        description="Venda #2000001",
        order_id="2000001",
        transaction_type="sale",
        entry_kind="CREDIT",
        net_amount=Decimal("90.00"),
    )
    db_session.add(transaction)
    db_session.flush()
    for sku, quantity, price, description in lines:
        db_session.add(MarketplaceTransactionItem(
            company_id=company.id,
            transaction_id=transaction.id,
            external_sku=sku,
            description=description,
            quantity=quantity,
            unit_price=Decimal(price),
        ))
    db_session.commit()
    return transaction


@pytest.fixture
def stocked_product(db_session, company_a, product_a):
    inventory_service.record_entry(
        company_id=company_a.id, product_id=product_a.id, quantity=10, unit_cost="20.00"
    )
    return product_a


class TestSaleExit:
    """process_sale_exit over a whole order."""

    def test_unmapped_item_does_not_block_order(self, db_session, company_a, stocked_product):
        transaction = _order(db_session, company_a, [
            ("CAM-001", 2, "50.00", "Camiseta"),
            ("ZZZ-999", 1, "40.00", "Relogio Digital Esportivo"),
        ])

        result = marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)

        assert result["costed"] == 1
        assert result["no_product"] == 1
        statuses = [item.cost_status for item in transaction.items]
        assert statuses == ["COSTED", "NO_PRODUCT"]
        assert transaction.items[1].cost_message.startswith("SKU not mapped")
        assert cost_ledger.get_current_cost(company_a.id, product_id=stocked_product.id).quantity_on_hand == 8

        cogs = db_session.query(CogsRecord).one()
        assert cogs.total_cost == Decimal("40.00")
        assert cogs.revenue_total == Decimal("100.00")
        assert cogs.channel == "mercado_livre"

    def test_reprocessing_posts_nothing_new(self, db_session, company_a, stocked_product):
        transaction = _order(db_session, company_a, [("CAM-001", 2, "50.00", None)])

        marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)
        again = marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)

        assert again["costed"] == 0
        assert again["skipped"] == 1
        assert db_session.query(CogsRecord).count() == 1
        assert cost_ledger.get_current_cost(company_a.id, product_id=stocked_product.id).quantity_on_hand == 8

    def test_item_costs_after_mapping_created(self, db_session, company_a, stocked_product):
        transaction = _order(db_session, company_a, [("ZZZ-999", 1, "40.00", "Relogio Digital Esportivo")])
        marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)

        sku_resolver.save_mapping(
            company_id=company_a.id, channel="mercado_livre", external_sku="ZZZ-999",
            product_id=stocked_product.id,
        )
        db_session.commit()
        result = marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)

        assert result["costed"] == 1
        assert transaction.items[0].cost_status == "COSTED"
        assert transaction.items[0].product_id == stocked_product.id

    def test_missing_transaction_raises(self, db_session, company_a):
        with pytest.raises(MarketplaceStockError) as exc_info:
            marketplace_stock_service.process_sale_exit(company_a.id, 424242)
        assert exc_info.value.details == {"transaction_id": 424242}

    def test_other_company_transaction_not_found(self, db_session, company_a, company_b, stocked_product):
        transaction = _order(db_session, company_a, [("CAM-001", 1, "50.00", None)])

        with pytest.raises(MarketplaceStockError):
            marketplace_stock_service.process_sale_exit(company_b.id, transaction.id)


class TestSaleReversal:
    """reverse_sale_exit for refunds and cancellations."""

    def test_reversal_restores_stock(self, db_session, company_a, stocked_product):
        transaction = _order(db_session, company_a, [("CAM-001", 3, "50.00", None)])
        marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)
        # A later purchase at another price must not change the reversal cost
        inventory_service.record_entry(
            company_id=company_a.id, product_id=stocked_product.id, quantity=7, unit_cost="30.00"
        )

        result = marketplace_stock_service.reverse_sale_exit(company_a.id, transaction.id)

        assert result["reversed"] == 1
        assert transaction.items[0].cost_status == "REVERSED"
        reversal = (
            db_session.query(CogsRecord)
            .filter(CogsRecord.total_cost < 0)
            .one()
        )
        assert reversal.total_cost == Decimal("-60.00")
        assert cost_ledger.get_current_cost(company_a.id, product_id=stocked_product.id).quantity_on_hand == 17

    def test_second_reversal_does_nothing(self, db_session, company_a, stocked_product):
        transaction = _order(db_session, company_a, [("CAM-001", 1, "50.00", None)])
        marketplace_stock_service.process_sale_exit(company_a.id, transaction.id)

        marketplace_stock_service.reverse_sale_exit(company_a.id, transaction.id)
        again = marketplace_stock_service.reverse_sale_exit(company_a.id, transaction.id)

        assert again["reversed"] == 0
        assert db_session.query(CogsRecord).count() == 2


class TestStockCheck:
    """validate_stock_for_sale is a read-only preview."""

    def test_reports_unresolved_and_short_items(self, db_session, company_a, stocked_product):
        transaction = _order(db_session, company_a, [
            ("CAM-001", 4, "50.00", None),
            ("ZZZ-999", 1, "40.00", "Relogio Digital Esportivo"),
        ])

        result = marketplace_stock_service.validate_stock_for_sale(company_a.id, transaction.id)

        assert result["ok"] is False
        first, second = result["items"]
        assert first["resolved"] is True
        assert first["available"] == 10
        assert first["sufficient"] is True
        assert second["resolved"] is False
        assert db_session.query(CogsRecord).count() == 0
