"""
Auto-Categorization Engine

Classifies bank/card statement lines and marketplace settlement events into a
category / cost center (and optionally a responsible) pair.

MATCH ORDER:
1. Learned rule whose normalized pattern equals the normalized text.
   Confidence = min(100, usage_count * 20).
2. Channel heuristics: fixed keyword tables per channel, highest priority
   first, restricted to the transaction's entry kind. Confidence 100.
   A positive marketplace credit that matches nothing is generic sale revenue.
3. Learned rule whose pattern contains, or is contained in, the text.
   Confidence is half of the exact-match confidence.

Heuristic tables name categories and cost centers; ids are resolved through
find-or-create by name, so a fresh company gets its chart on first use.

RECONCILIATION:
A record is marked RECONCILED only when category and cost center are both
set and confidence >= CATEGORIZATION_MIN_CONFIDENCE. Batches write only the
fields that change, so re-running them is harmless.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import (
    CategorizationRule,
    Category,
    CostCenter,
    MarketplaceTransaction,
    Responsible,
    StatementTransaction,
)
from ..signals import categorization_applied
from ..text_utils import normalize_channel, normalize_text
from ..validation import ValidationError
from .catalog_service import find_or_create_category, find_or_create_cost_center
from .concurrency import insert_or_fetch


SOURCE_LEARNED = "LEARNED"
SOURCE_HEURISTIC = "HEURISTIC"

STATUS_RECONCILED = "RECONCILED"

CREDIT = "CREDIT"
DEBIT = "DEBIT"

CONFIDENCE_PER_USE = 20
MAX_CONFIDENCE = 100
GENERIC_CREDIT_RULE = "generic_positive_credit"


@dataclass(frozen=True)
class HeuristicRule:
    patterns: tuple[str, ...]
    transaction_type: str
    entry_kind: str
    category_name: str
    category_kind: str
    cost_center_name: str
    priority: int


@dataclass(frozen=True)
class CategorizationInput:
    channel: str
    description: str
    amount: Decimal
    entry_kind: str | None = None
    establishment: str | None = None


@dataclass(frozen=True)
class CategorizationResult:
    category_id: int | None
    cost_center_id: int | None
    confidence: int
    rule: str
    source: str
    responsible_id: int | None = None
    transaction_type: str | None = None
    entry_kind: str | None = None


def _rule(patterns, transaction_type, entry_kind, category_name, category_kind, cost_center_name, priority):
    return HeuristicRule(
        patterns=tuple(normalize_text(p) for p in patterns),
        transaction_type=transaction_type,
        entry_kind=entry_kind,
        category_name=category_name,
        category_kind=category_kind,
        cost_center_name=cost_center_name,
        priority=priority,
    )


# =============================================================================
# HEURISTIC TABLES
# =============================================================================

MERCADO_LIVRE_RULES = (
    _rule(["custo por vender no mercado livre", "custo por vender", "cobrar no mercado livre"],
          "tarifa_marketplace", DEBIT, "Tarifas de Marketplace", "Custos", "Marketplace - Mercado Livre", 100),
    _rule(["comissão por venda", "comissão de venda", "comissao"],
          "comissao", DEBIT, "Comissões de Marketplace", "Custos", "Marketplace - Mercado Livre", 95),
    _rule(["tarifa por venda", "tarifa de venda"],
          "tarifa_venda", DEBIT, "Tarifas de Marketplace", "Custos", "Marketplace - Mercado Livre", 95),
    _rule(["tarifa de assinatura", "tarifa por assinatura", "assinatura mensal", "mensalidade"],
          "assinatura", DEBIT, "Tarifas Fixas / Assinaturas", "Despesas Operacionais", "Financeiro / Plataforma", 90),
    _rule(["campanha de publicidade", "publicidade", "anúncios", "ads", "product ads", "mercado ads"],
          "ads", DEBIT, "Marketing / Anúncios", "Despesas Comercial / Marketing", "Marketing", 85),
    _rule(["taxa de parcelamento", "parcelamento", "financiamento"],
          "taxa_parcelamento", DEBIT, "Taxas Financeiras / Juros", "Despesas Financeiras", "Financeiro", 80),
    _rule(["juros"],
          "juros", DEBIT, "Taxas Financeiras / Juros", "Despesas Financeiras", "Financeiro", 75),
    _rule(["antecipação", "antecipacao", "custo de antecipação"],
          "antecipacao", DEBIT, "Taxas de Antecipação", "Despesas Financeiras", "Financeiro", 75),
    _rule(["indisponibilidade logística", "multa logística", "penalidade logística"],
          "multa_logistica", DEBIT, "Multas / Penalidades", "Despesas Operacionais", "Operação / Logística", 70),
    _rule(["cancelamento", "cancelado", "cancel"],
          "cancelamento", DEBIT, "Estornos / Devoluções", "Custos", "Operação - Vendas", 70),
    _rule(["devolução", "devolvido", "devolucao"],
          "devolucao", DEBIT, "Estornos / Devoluções", "Custos", "Operação - Vendas", 70),
    _rule(["estorno", "refund", "reversão", "reembolso"],
          "estorno", DEBIT, "Estornos / Devoluções", "Custos", "Operação - Vendas", 70),
    _rule(["tarifa de envio", "tarifas do full", "full", "envio full", "frete"],
          "frete", DEBIT, "Frete / Logística", "Custos", "Operação / Logística", 65),
    _rule(["envio"],
          "frete", DEBIT, "Frete / Logística", "Custos", "Operação / Logística", 60),
    _rule(["venda", "pagamento", "liberação", "repasse", "liquidação", "liberado", "transferido"],
          "venda", CREDIT, "Receita de Vendas - Mercado Livre", "Receitas", "Operação - Vendas", 10),
)

MERCADO_PAGO_RULES = (
    _rule(["fee", "tarifa", "mercadopago_fee", "mp_fee", "taxa mercado pago"],
          "tarifa_financeira", DEBIT, "Tarifas Financeiras - Mercado Pago", "Despesas Financeiras", "Financeiro", 90),
    _rule(["chargeback", "mediação", "disputa", "contestação"],
          "chargeback", DEBIT, "Estornos / Chargeback", "Custos", "Operação - Vendas", 85),
    _rule(["estorno", "refund", "devolução", "devolvido"],
          "estorno", DEBIT, "Estornos / Devoluções", "Custos", "Operação - Vendas", 80),
    _rule(["transferência", "transfer", "saque", "withdrawal", "pix enviado"],
          "transferencia", DEBIT, "Transferências Internas", "Outras Receitas / Despesas", "Financeiro", 75),
    _rule(["depósito", "deposit", "pix recebido"],
          "deposito", CREDIT, "Transferências Internas", "Outras Receitas / Despesas", "Financeiro", 75),
    _rule(["payment", "pagamento", "venda", "approved", "accredited"],
          "venda", CREDIT, "Receita de Vendas - Mercado Pago", "Receitas", "Operação - Vendas", 10),
)

SHOPEE_RULES = (
    _rule(["comissão", "commission", "taxa de serviço"],
          "comissao", DEBIT, "Comissões de Marketplace", "Custos", "Marketplace - Shopee", 90),
    _rule(["frete", "envio", "shipping"],
          "frete", DEBIT, "Frete / Logística", "Custos", "Operação / Logística", 85),
    _rule(["voucher", "cupom", "desconto"],
          "desconto", DEBIT, "Descontos Promocionais", "Custos", "Marketing", 80),
    _rule(["ads", "anúncio", "publicidade"],
          "ads", DEBIT, "Marketing / Anúncios", "Despesas Comercial / Marketing", "Marketing", 80),
    _rule(["estorno", "devolução", "refund", "cancelamento"],
          "estorno", DEBIT, "Estornos / Devoluções", "Custos", "Operação - Vendas", 75),
    _rule(["venda", "pedido", "order", "pagamento"],
          "venda", CREDIT, "Receita de Vendas - Shopee", "Receitas", "Operação - Vendas", 10),
)

# Bank and card statements share one table; earlier rules win on equal priority
BANK_RULES = (
    _rule(["tarifa", "taxa de manutenção", "mensalidade", "anuidade", "taxa bancária"],
          "tarifa_bancaria", DEBIT, "Tarifas Bancárias", "Despesas Financeiras", "Financeiro", 90),
    _rule(["juros", "encargos", "mora", "multa"],
          "juros", DEBIT, "Juros / Encargos", "Despesas Financeiras", "Financeiro", 85),
    _rule(["iof"],
          "iof", DEBIT, "IOF", "Impostos", "Financeiro", 85),
    _rule(["pix recebido", "transferência recebida", "ted recebida", "doc recebida"],
          "transferencia_recebida", CREDIT, "Transferências Recebidas", "Outras Receitas / Despesas", "Financeiro", 80),
    _rule(["ted", "doc", "pix enviado", "transferência enviada", "transf"],
          "transferencia_enviada", DEBIT, "Transferências Enviadas", "Outras Receitas / Despesas", "Financeiro", 80),
    _rule(["pagamento", "pgto", "boleto"],
          "pagamento", DEBIT, "Pagamentos Diversos", "Despesas Operacionais", "Operação", 70),
    _rule(["compra", "débito", "debito"],
          "compra_debito", DEBIT, "Compras no Débito", "Despesas Operacionais", "Operação", 60),
    _rule(["depósito", "deposito", "crédito em conta"],
          "deposito", CREDIT, "Depósitos", "Outras Receitas / Despesas", "Financeiro", 60),
    _rule(["saque", "retirada"],
          "saque", DEBIT, "Saques", "Outras Receitas / Despesas", "Financeiro", 60),
    _rule(["mercado livre", "mercado pago", "shopee", "amazon", "magalu"],
          "recebimento_marketplace", CREDIT, "Recebimento Marketplace", "Receitas", "Operação - Vendas", 50),
)

RULES_BY_CHANNEL = {
    "mercado_livre": MERCADO_LIVRE_RULES,
    "mercado_pago": MERCADO_PAGO_RULES,
    "shopee": SHOPEE_RULES,
    "bank": BANK_RULES,
    "card": BANK_RULES,
}

MARKETPLACE_CHANNELS = {"mercado_livre", "mercado_pago", "shopee"}

GENERIC_REVENUE_BY_CHANNEL = {
    "mercado_livre": "Receita de Vendas - Mercado Livre",
    "mercado_pago": "Receita de Vendas - Mercado Pago",
    "shopee": "Receita de Vendas - Shopee",
}
GENERIC_REVENUE_COST_CENTER = "Operação - Vendas"


# =============================================================================
# LEARNED RULE CACHE
# =============================================================================

@dataclass(frozen=True)
class _LearnedRule:
    rule_id: int
    pattern: str
    category_id: int | None
    cost_center_id: int | None
    responsible_id: int | None
    usage_count: int


@dataclass
class _CompanyRules:
    loaded_at: float
    rules: list = field(default_factory=list)
    by_pattern: dict = field(default_factory=dict)


class CategorizationCache:
    """
    Learned rules per company, most used first.

    Loaded lazily, expires after ttl_seconds. learn_categorization and
    reprocess_uncategorized clear the company's entry.
    """

    def __init__(self, ttl_seconds: int = 300, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._companies: dict[int, _CompanyRules] = {}

    def rules_for(self, company_id: int) -> _CompanyRules:
        entry = self._companies.get(company_id)
        if entry is not None and self._clock() - entry.loaded_at < self.ttl_seconds:
            return entry

        entry = _CompanyRules(loaded_at=self._clock())
        rows = (
            db.session.query(CategorizationRule)
            .filter_by(company_id=company_id, is_active=True)
            .order_by(CategorizationRule.usage_count.desc(), CategorizationRule.id)
            .all()
        )
        for row in rows:
            learned = _LearnedRule(
                rule_id=row.id,
                pattern=row.pattern,
                category_id=row.category_id,
                cost_center_id=row.cost_center_id,
                responsible_id=row.responsible_id,
                usage_count=row.usage_count,
            )
            entry.rules.append(learned)
            entry.by_pattern[row.pattern] = learned
        self._companies[company_id] = entry
        return entry

    def clear(self, company_id: int | None = None) -> None:
        if company_id is None:
            self._companies.clear()
        else:
            self._companies.pop(company_id, None)


def _default_cache() -> CategorizationCache:
    return CategorizationCache(ttl_seconds=current_app.config.get("CATEGORIZATION_CACHE_TTL", 300))


def learned_confidence(usage_count: int) -> int:
    return min(MAX_CONFIDENCE, max(usage_count, 0) * CONFIDENCE_PER_USE)


# =============================================================================
# CATEGORIZATION
# =============================================================================

def input_for(record) -> CategorizationInput:
    """Build the engine input from a marketplace or statement row."""
    if isinstance(record, CategorizationInput):
        return record
    if isinstance(record, MarketplaceTransaction):
        return CategorizationInput(
            channel=record.channel,
            description=record.description or "",
            amount=Decimal(record.net_amount or 0),
            entry_kind=record.entry_kind,
        )
    if isinstance(record, StatementTransaction):
        return CategorizationInput(
            channel=record.origin,
            description=record.description or "",
            amount=Decimal(record.amount or 0),
            entry_kind=record.entry_kind,
            establishment=record.establishment,
        )
    raise ValidationError(f"cannot categorize {type(record).__name__}")


def _entry_kind(data: CategorizationInput) -> str:
    if data.entry_kind:
        return data.entry_kind.upper()
    return CREDIT if data.amount >= 0 else DEBIT


def _learned_result(rule: _LearnedRule, confidence: int, source_rule: str) -> CategorizationResult:
    return CategorizationResult(
        category_id=rule.category_id,
        cost_center_id=rule.cost_center_id,
        responsible_id=rule.responsible_id,
        confidence=confidence,
        rule=source_rule,
        source=SOURCE_LEARNED,
    )


def _match_heuristic(company_id: int, channel: str, text: str, data: CategorizationInput) -> CategorizationResult | None:
    rules = RULES_BY_CHANNEL.get(channel)
    if not rules:
        return None

    kind = _entry_kind(data)
    # sorted() is stable, so table order breaks priority ties
    for rule in sorted(rules, key=lambda r: r.priority, reverse=True):
        if rule.entry_kind != kind:
            continue
        matched = next((p for p in rule.patterns if p and p in text), None)
        if matched is None:
            continue
        category = find_or_create_category(company_id, rule.category_name, rule.category_kind)
        cost_center = find_or_create_cost_center(company_id, rule.cost_center_name)
        return CategorizationResult(
            category_id=category.id,
            cost_center_id=cost_center.id,
            confidence=MAX_CONFIDENCE,
            rule=rule.patterns[0],
            source=SOURCE_HEURISTIC,
            transaction_type=rule.transaction_type,
            entry_kind=rule.entry_kind,
        )

    if channel in MARKETPLACE_CHANNELS and kind == CREDIT and data.amount > 0:
        category = find_or_create_category(company_id, GENERIC_REVENUE_BY_CHANNEL[channel], "Receitas")
        cost_center = find_or_create_cost_center(company_id, GENERIC_REVENUE_COST_CENTER)
        return CategorizationResult(
            category_id=category.id,
            cost_center_id=cost_center.id,
            confidence=MAX_CONFIDENCE,
            rule=GENERIC_CREDIT_RULE,
            source=SOURCE_HEURISTIC,
            transaction_type="venda",
            entry_kind=CREDIT,
        )
    return None


def categorize(company_id: int, transaction, *, cache: CategorizationCache | None = None) -> CategorizationResult | None:
    """
    Suggest a category / cost center for a transaction, or None.

    transaction is a MarketplaceTransaction, a StatementTransaction or a
    CategorizationInput. May create categories/cost centers named by the
    heuristic tables (flushed, not committed).
    """
    data = input_for(transaction)
    cache = cache or _default_cache()
    text = normalize_text(data.establishment or data.description)
    channel = normalize_channel(data.channel)
    learned = cache.rules_for(company_id)

    if text:
        exact = learned.by_pattern.get(text)
        if exact is not None:
            return _learned_result(exact, learned_confidence(exact.usage_count), exact.pattern)

    heuristic = _match_heuristic(company_id, channel, normalize_text(data.description), data)
    if heuristic is not None:
        return heuristic

    if text:
        for rule in learned.rules:
            if rule.pattern in text or text in rule.pattern:
                return _learned_result(rule, learned_confidence(rule.usage_count) // 2, rule.pattern)
    return None


# =============================================================================
# LEARNING
# =============================================================================

def _check_target(model, company_id: int, target_id: int | None, label: str) -> None:
    if target_id is None:
        return
    if db.session.query(model.id).filter_by(id=target_id, company_id=company_id).first() is None:
        raise ValidationError(f"{label} not found")


def learn_categorization(
    company_id: int,
    establishment: str,
    *,
    category_id: int | None = None,
    cost_center_id: int | None = None,
    responsible_id: int | None = None,
    cache: CategorizationCache | None = None,
) -> CategorizationRule:
    """
    Remember a person's categorization of an establishment.

    Upserts by normalized pattern: a new rule starts at usage 1, an existing
    one gains one use and takes the given targets (last write wins). Targets
    left out of a later choice are cleared, not kept from the earlier one.
    """
    pattern = normalize_text(establishment)
    if not pattern:
        raise ValidationError("establishment is required")
    if category_id is None and cost_center_id is None and responsible_id is None:
        raise ValidationError("at least one of category_id, cost_center_id or responsible_id is required")
    _check_target(Category, company_id, category_id, "category")
    _check_target(CostCenter, company_id, cost_center_id, "cost center")
    _check_target(Responsible, company_id, responsible_id, "responsible")

    def _fetch():
        return db.session.query(CategorizationRule).filter_by(company_id=company_id, pattern=pattern).first()

    created: list[CategorizationRule] = []

    def _create():
        rule = CategorizationRule(
            company_id=company_id,
            pattern=pattern,
            category_id=category_id,
            cost_center_id=cost_center_id,
            responsible_id=responsible_id,
            usage_count=1,
            is_active=True,
        )
        db.session.add(rule)
        db.session.flush()
        created.append(rule)
        return rule

    rule = _fetch()
    if rule is None:
        rule = insert_or_fetch(_create, _fetch)

    if rule not in created:
        rule.usage_count = (rule.usage_count or 0) + 1
        rule.category_id = category_id
        rule.cost_center_id = cost_center_id
        rule.responsible_id = responsible_id
        rule.is_active = True

    db.session.commit()
    if cache is not None:
        cache.clear(company_id)
    return rule


# =============================================================================
# BATCH APPLICATION
# =============================================================================

def _apply_result(record, result: CategorizationResult, min_confidence: int) -> tuple[bool, bool]:
    """Write changed fields only. Returns (changed, reconciled)."""
    changes = {
        "category_id": result.category_id,
        "cost_center_id": result.cost_center_id,
        "applied_rule": result.rule[:128],
        "confidence": result.confidence,
    }
    if result.responsible_id is not None:
        changes["responsible_id"] = result.responsible_id
    if isinstance(record, MarketplaceTransaction) and result.transaction_type:
        changes["transaction_type"] = result.transaction_type

    reconciled = (
        result.category_id is not None
        and result.cost_center_id is not None
        and result.confidence >= min_confidence
    )
    if reconciled:
        changes["status"] = STATUS_RECONCILED

    changed = False
    for name, value in changes.items():
        if getattr(record, name) != value:
            setattr(record, name, value)
            changed = True
    return changed, reconciled


def apply_categorization_batch(
    company_id: int,
    records,
    *,
    cache: CategorizationCache | None = None,
    on_progress=None,
    should_cancel=None,
    chunk_size: int = 100,
) -> dict:
    """
    Categorize and update a batch of marketplace/statement records.

    Records already RECONCILED are left alone. Each record is isolated on a
    savepoint and the batch commits every chunk_size records, so a cancelled
    or interrupted run keeps its finished chunks and can simply be re-run.

    on_progress(processed, total) is called after each chunk;
    should_cancel() is checked before each record.
    """
    cache = cache or _default_cache()
    min_confidence = current_app.config.get("CATEGORIZATION_MIN_CONFIDENCE", 60)
    records = list(records)
    total = len(records)

    processed = 0
    categorized = 0
    updated = 0
    reconciled = 0
    errors: list[dict] = []
    cancelled = False

    for record in records:
        if should_cancel is not None and should_cancel():
            cancelled = True
            break

        processed += 1
        if record.status == STATUS_RECONCILED:
            continue

        nested = db.session.begin_nested()
        try:
            result = categorize(company_id, record, cache=cache)
            if result is not None:
                categorized += 1
                changed, is_reconciled = _apply_result(record, result, min_confidence)
                if changed:
                    updated += 1
                if is_reconciled:
                    reconciled += 1
            nested.commit()
        except Exception as exc:  # noqa: BLE001
            nested.rollback()
            errors.append({"record_id": record.id, "error": str(exc)})
            current_app.logger.warning("Categorization failed for %s %s: %s", type(record).__name__, record.id, exc)

        if processed % chunk_size == 0:
            db.session.commit()
            if on_progress is not None:
                on_progress(processed, total)

    db.session.commit()
    if on_progress is not None:
        on_progress(processed, total)

    summary = {
        "total": total,
        "processed": processed,
        "categorized": categorized,
        "updated": updated,
        "reconciled": reconciled,
        "errors": errors,
        "cancelled": cancelled,
    }
    current_app.logger.info(
        "Categorization batch for company %s: %s/%s processed, %s updated, %s reconciled, %s errors%s",
        company_id, processed, total, updated, reconciled, len(errors), " (cancelled)" if cancelled else "",
    )
    categorization_applied.send(
        current_app._get_current_object(),
        company_id=company_id,
        updated=updated,
        reconciled=reconciled,
    )
    return summary


def reprocess_uncategorized(
    company_id: int,
    *,
    cache: CategorizationCache | None = None,
    on_progress=None,
    should_cancel=None,
    limit: int = 50000,
) -> dict:
    """
    Re-run categorization over every record not yet reconciled.

    The learned-rule cache is cleared first so rules learned since the last
    run are used. Re-running with no new rules changes nothing.
    """
    cache = cache or _default_cache()
    cache.clear(company_id)

    marketplace = (
        db.session.query(MarketplaceTransaction)
        .filter(
            MarketplaceTransaction.company_id == company_id,
            MarketplaceTransaction.status != STATUS_RECONCILED,
        )
        .order_by(MarketplaceTransaction.id)
        .limit(limit)
        .all()
    )
    statements = (
        db.session.query(StatementTransaction)
        .filter(
            StatementTransaction.company_id == company_id,
            StatementTransaction.status != STATUS_RECONCILED,
        )
        .order_by(StatementTransaction.id)
        .limit(limit)
        .all()
    )

    return apply_categorization_batch(
        company_id,
        marketplace + statements,
        cache=cache,
        on_progress=on_progress,
        should_cancel=should_cancel,
        chunk_size=current_app.config.get("SYNC_CHUNK_SIZE", 100),
    )
