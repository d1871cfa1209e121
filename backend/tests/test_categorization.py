# Overview: Pytest coverage for auto-categorization and learned rules.

"""
Auto-Categorization Tests

- Channel heuristics classify marketplace fees, sales and statement lines
- Learned rules: exact match first, confidence grows with usage
- Containment matches score half confidence
- Batches reconcile only confident, complete results and are idempotent
"""

from datetime import date
from decimal import Decimal

import pytest

from backoffice.models import (
    Category,
    CategorizationRule,
    CostCenter,
    MarketplaceTransaction,
    StatementTransaction,
)
from backoffice.services import categorization_service
from backoffice.services.catalog_service import find_or_create_category, find_or_create_cost_center
from backoffice.services.categorization_service import CategorizationCache, CategorizationInput
from backoffice.signals import categorization_applied
from backoffice.validation import ValidationError


def _marketplace(db_session, company, description, net, entry_kind, channel="mercado_livre"):
    transaction = MarketplaceTransaction(
        company_id=company.id,
        channel=channel,
        transaction_date=date(2024, 4, 2),
        description=description,
        entry_kind=entry_kind,
        net_amount=Decimal(net),
    )
    db_session.add(transaction)
    db_session.commit()
    return transaction


def _statement(db_session, company, establishment, amount="23.90", origin="CARD", description=None):
    line = StatementTransaction(
        company_id=company.id,
        origin=origin,
        transaction_date=date(2024, 4, 3),
        description=description or establishment.upper(),
        establishment=establishment,
        amount=Decimal(amount),
        entry_kind="DEBIT",
    )
    db_session.add(line)
    db_session.commit()
    return line


@pytest.fixture
def targets(db_session, company_a):
    category = find_or_create_category(company_a.id, "Alimentação", "Despesas Operacionais")
    cost_center = find_or_create_cost_center(company_a.id, "Administrativo")
    db_session.commit()
    return category, cost_center


def _learn(company, establishment, targets, cache=None):
    category, cost_center = targets
    return categorization_service.learn_categorization(
        company.id, establishment, category_id=category.id, cost_center_id=cost_center.id, cache=cache
    )


class TestHeuristics:
    """Fixed keyword tables per channel."""

    def test_mercado_livre_commission(self, db_session, company_a):
        transaction = _marketplace(db_session, company_a, "Comissão por venda - pedido 2000001", "-12.50", "DEBIT")

        result = categorization_service.categorize(company_a.id, transaction)

        assert result.source == categorization_service.SOURCE_HEURISTIC
        assert result.confidence == 100
        assert result.transaction_type == "comissao"
        category = db_session.get(Category, result.category_id)
        cost_center = db_session.get(CostCenter, result.cost_center_id)
        assert category.name == "Comissões de Marketplace"
        assert cost_center.name == "Marketplace - Mercado Livre"

    def test_rule_restricted_to_entry_kind(self, db_session, company_a):
        """A credit mentioning a fee keyword is still a sale payout."""
        transaction = _marketplace(db_session, company_a, "Liberação de dinheiro - envio", "80.00", "CREDIT")

        result = categorization_service.categorize(company_a.id, transaction)

        assert result.transaction_type == "venda"
        assert db_session.get(Category, result.category_id).name == "Receita de Vendas - Mercado Livre"

    def test_unmatched_positive_credit_is_generic_revenue(self, db_session, company_a):
        transaction = _marketplace(db_session, company_a, "Movimento 99812", "35.00", "CREDIT", channel="shopee")

        result = categorization_service.categorize(company_a.id, transaction)

        assert result.rule == categorization_service.GENERIC_CREDIT_RULE
        assert db_session.get(Category, result.category_id).name == "Receita de Vendas - Shopee"

    def test_bank_fee(self, db_session, company_a):
        line = _statement(db_session, company_a, "Banco", origin="BANK", description="TARIFA PACOTE SERVICOS")

        result = categorization_service.categorize(company_a.id, line)

        assert result.transaction_type == "tarifa_bancaria"

    def test_heuristic_reuses_existing_category(self, db_session, company_a):
        first = _marketplace(db_session, company_a, "Comissão por venda 1", "-5.00", "DEBIT")
        second = _marketplace(db_session, company_a, "Comissão por venda 2", "-7.00", "DEBIT")

        a = categorization_service.categorize(company_a.id, first)
        b = categorization_service.categorize(company_a.id, second)

        assert a.category_id == b.category_id
        assert db_session.query(Category).filter_by(name="Comissões de Marketplace").count() == 1

    def test_nothing_matches(self, db_session, company_a):
        data = CategorizationInput(channel="card", description="XPTO 4431", amount=Decimal("-9.90"))
        assert categorization_service.categorize(company_a.id, data) is None


class TestLearnedRules:
    """Rules learned from manual categorization."""

    def test_confidence_grows_with_usage(self, db_session, company_a, targets):
        data = CategorizationInput(
            channel="card", description="PADARIA SAO JOAO LTDA",
            establishment="Padaria São João", amount=Decimal("-23.90"),
        )

        seen = []
        for _ in range(6):
            _learn(company_a, "Padaria São João", targets)
            seen.append(categorization_service.categorize(company_a.id, data).confidence)

        assert seen == [20, 40, 60, 80, 100, 100]
        rule = db_session.query(CategorizationRule).one()
        assert rule.pattern == "padaria sao joao"
        assert rule.usage_count == 6

    def test_exact_learned_rule_beats_heuristic(self, db_session, company_a, targets):
        category, _ = targets
        _learn(company_a, "Tarifa Pacote Servicos", targets)
        line = _statement(db_session, company_a, "Tarifa Pacote Servicos", origin="BANK")

        result = categorization_service.categorize(company_a.id, line)

        assert result.source == categorization_service.SOURCE_LEARNED
        assert result.category_id == category.id

    def test_containment_match_has_half_confidence(self, db_session, company_a, targets):
        _learn(company_a, "Padaria São João", targets)
        _learn(company_a, "Padaria São João", targets)
        data = CategorizationInput(
            channel="card", description="x", establishment="Padaria São João Filial 2",
            amount=Decimal("-10.00"),
        )

        result = categorization_service.categorize(company_a.id, data)

        assert result.source == categorization_service.SOURCE_LEARNED
        assert result.confidence == 20

    def test_last_learned_target_wins(self, db_session, company_a, targets):
        _learn(company_a, "Posto Ipiranga", targets)
        fuel = find_or_create_category(company_a.id, "Combustível")
        db_session.commit()

        rule = categorization_service.learn_categorization(company_a.id, "POSTO IPIRANGA", category_id=fuel.id)

        assert rule.category_id == fuel.id
        assert rule.usage_count == 2

    def test_later_choice_clears_omitted_targets(self, db_session, company_a, targets):
        _learn(company_a, "Posto Ipiranga", targets)
        fuel = find_or_create_category(company_a.id, "Combustível")
        db_session.commit()

        rule = categorization_service.learn_categorization(company_a.id, "Posto Ipiranga", category_id=fuel.id)

        assert rule.category_id == fuel.id
        assert rule.cost_center_id is None
        assert rule.responsible_id is None

    def test_blank_establishment_rejected(self, db_session, company_a, targets):
        with pytest.raises(ValidationError):
            _learn(company_a, "  !! ", targets)

    def test_targets_required(self, db_session, company_a):
        with pytest.raises(ValidationError):
            categorization_service.learn_categorization(company_a.id, "Padaria")

    def test_foreign_category_rejected(self, db_session, company_a, company_b):
        foreign = find_or_create_category(company_b.id, "Alimentação")
        db_session.commit()

        with pytest.raises(ValidationError):
            categorization_service.learn_categorization(company_a.id, "Padaria", category_id=foreign.id)

    def test_cache_refreshes_after_learning(self, db_session, company_a, targets):
        cache = CategorizationCache(ttl_seconds=300)
        data = CategorizationInput(
            channel="card", description="x", establishment="Padaria São João", amount=Decimal("-1.00"),
        )
        assert categorization_service.categorize(company_a.id, data, cache=cache) is None

        _learn(company_a, "Padaria São João", targets)
        assert categorization_service.categorize(company_a.id, data, cache=cache) is None

        cache.clear(company_a.id)
        assert categorization_service.categorize(company_a.id, data, cache=cache) is not None

    def test_rules_are_scoped_to_company(self, db_session, company_a, company_b, targets):
        _learn(company_a, "Padaria São João", targets)
        data = CategorizationInput(
            channel="card", description="x", establishment="Padaria São João", amount=Decimal("-1.00"),
        )

        assert categorization_service.categorize(company_b.id, data) is None


class TestBatches:
    """apply_categorization_batch / reprocess_uncategorized."""

    def test_confident_heuristic_reconciles(self, db_session, company_a):
        transaction = _marketplace(db_session, company_a, "Comissão por venda", "-12.50", "DEBIT")

        summary = categorization_service.apply_categorization_batch(company_a.id, [transaction])

        assert summary["reconciled"] == 1
        assert transaction.status == "RECONCILED"
        assert transaction.transaction_type == "comissao"
        assert transaction.confidence == 100

    def test_low_confidence_applied_but_not_reconciled(self, db_session, company_a, targets):
        line = _statement(db_session, company_a, "Padaria São João")
        _learn(company_a, "Padaria São João", targets)

        summary = categorization_service.reprocess_uncategorized(company_a.id)

        assert summary["updated"] == 1
        assert summary["reconciled"] == 0
        assert line.category_id == targets[0].id
        assert line.confidence == 20
        assert line.status == "PENDING"

    def test_reconciles_once_rule_is_confident(self, db_session, company_a, targets):
        line = _statement(db_session, company_a, "Padaria São João")
        for _ in range(3):
            _learn(company_a, "Padaria São João", targets)

        summary = categorization_service.reprocess_uncategorized(company_a.id)

        assert summary["reconciled"] == 1
        assert line.status == "RECONCILED"
        assert line.applied_rule == "padaria sao joao"

    def test_reprocess_is_idempotent(self, db_session, company_a, targets):
        _statement(db_session, company_a, "Padaria São João")
        _statement(db_session, company_a, "Loja Desconhecida")
        _learn(company_a, "Padaria São João", targets)

        first = categorization_service.reprocess_uncategorized(company_a.id)
        second = categorization_service.reprocess_uncategorized(company_a.id)

        assert first["updated"] == 1
        assert second["total"] == 2
        assert second["updated"] == 0

    def test_reconciled_records_left_alone(self, db_session, company_a, targets):
        transaction = _marketplace(db_session, company_a, "Comissão por venda", "-12.50", "DEBIT")
        categorization_service.apply_categorization_batch(company_a.id, [transaction])
        _learn(company_a, "Comissão por venda", targets)

        summary = categorization_service.apply_categorization_batch(company_a.id, [transaction])

        assert summary["updated"] == 0
        assert transaction.category_id != targets[0].id

    def test_cancel_stops_before_next_record(self, db_session, company_a):
        transaction = _marketplace(db_session, company_a, "Comissão por venda", "-12.50", "DEBIT")

        summary = categorization_service.apply_categorization_batch(
            company_a.id, [transaction], should_cancel=lambda: True
        )

        assert summary["cancelled"] is True
        assert summary["processed"] == 0
        assert transaction.status == "IMPORTED"

    def test_progress_and_signal(self, app, db_session, company_a):
        records = [
            _marketplace(db_session, company_a, f"Comissão por venda {n}", "-1.00", "DEBIT")
            for n in range(3)
        ]
        progress = []
        received = []

        def _on_applied(sender, **kwargs):
            received.append(kwargs)

        with categorization_applied.connected_to(_on_applied):
            categorization_service.apply_categorization_batch(
                company_a.id, records, chunk_size=2,
                on_progress=lambda done, total: progress.append((done, total)),
            )

        assert progress == [(2, 3), (3, 3)]
        assert received == [{"company_id": company_a.id, "updated": 3, "reconciled": 3}]
