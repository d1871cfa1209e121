"""
Marketplace SKU Resolver

Maps the SKU text a channel sends (plus listing/variant ids when present) to
an internal product or SKU.

RESOLUTION ORDER:
1. Active mapping for (company, channel, normalized external SKU), then by
   listing id + variant id, then by listing id alone.
2. Heuristic match: an internal SKU code or product code equal to the
   external SKU, else a unique product whose name is similar enough to the
   item description (difflib ratio >= SKU_MATCH_MIN_SIMILARITY).
   Heuristic hits are saved as automatic mappings.
3. Unresolved: None. Callers flag the item, they never raise.

PRECEDENCE:
- A manual mapping always replaces an automatic one for the same key.
- An automatic match never overwrites an existing mapping (manual or not).

A product that tracks stock by SKU only resolves when it has exactly one
active SKU; otherwise the item stays unresolved until mapped to a SKU.
"""

from __future__ import annotations

import difflib
import time
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..models import (
    MarketplaceProductMapping,
    MarketplaceTransaction,
    MarketplaceTransactionItem,
    Product,
    ProductSku,
)
from ..text_utils import normalize_channel, normalize_key, normalize_text
from ..validation import ValidationError
from .concurrency import insert_or_fetch


ORIGIN_MAPPING = "MAPPING"
ORIGIN_HEURISTIC = "HEURISTIC"


@dataclass(frozen=True)
class ResolvedSku:
    product_id: int
    sku_id: int | None
    origin: str
    mapping_id: int | None = None
    is_automatic: bool = False


@dataclass(frozen=True)
class _MappingTarget:
    mapping_id: int
    product_id: int | None
    sku_id: int | None
    is_automatic: bool


@dataclass
class _ChannelIndex:
    loaded_at: float
    by_sku: dict = field(default_factory=dict)
    by_listing: dict = field(default_factory=dict)


class MappingCache:
    """
    Per (company, channel) index of active mappings for batch resolution.

    Entries expire after ttl_seconds; writers call invalidate() after saving
    mappings so a batch never resolves against a stale index for long.
    """

    def __init__(self, ttl_seconds: int = 300, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._indexes: dict[tuple[int, str], _ChannelIndex] = {}

    def get(self, company_id: int, channel: str) -> _ChannelIndex:
        key = (company_id, channel)
        index = self._indexes.get(key)
        if index is not None and self._clock() - index.loaded_at < self.ttl_seconds:
            return index
        index = self._load(company_id, channel)
        self._indexes[key] = index
        return index

    def _load(self, company_id: int, channel: str) -> _ChannelIndex:
        index = _ChannelIndex(loaded_at=self._clock())
        rows = db.session.query(MarketplaceProductMapping).filter_by(
            company_id=company_id, channel=channel, is_active=True
        ).all()
        for m in rows:
            target = _MappingTarget(m.id, m.product_id, m.sku_id, m.is_automatic)
            index.by_sku[m.external_sku_key] = target
            if m.listing_id:
                listing_key = (normalize_key(m.listing_id), normalize_key(m.variant_id))
                index.by_listing.setdefault(listing_key, target)
                if m.variant_id:
                    index.by_listing.setdefault((normalize_key(m.listing_id), ""), target)
        return index

    def invalidate(self, company_id: int | None = None, channel: str | None = None) -> None:
        if company_id is None:
            self._indexes.clear()
            return
        for key in list(self._indexes):
            if key[0] == company_id and (channel is None or key[1] == channel):
                del self._indexes[key]

    def clear(self) -> None:
        self._indexes.clear()


def _target_to_resolution(company_id: int, target: _MappingTarget) -> ResolvedSku | None:
    if target.sku_id is not None:
        sku = db.session.query(ProductSku).filter_by(id=target.sku_id, company_id=company_id).first()
        if sku is None or not sku.is_active:
            return None
        return ResolvedSku(
            product_id=sku.product_id,
            sku_id=sku.id,
            origin=ORIGIN_MAPPING,
            mapping_id=target.mapping_id,
            is_automatic=target.is_automatic,
        )
    if target.product_id is None:
        return None
    product = db.session.query(Product).filter_by(id=target.product_id, company_id=company_id).first()
    if product is None:
        return None
    sku_id = _stock_sku_for(product)
    if product.track_by_sku and sku_id is None:
        return None
    return ResolvedSku(
        product_id=product.id,
        sku_id=sku_id,
        origin=ORIGIN_MAPPING,
        mapping_id=target.mapping_id,
        is_automatic=target.is_automatic,
    )


def _stock_sku_for(product: Product) -> int | None:
    """SKU that receives stock postings for a product-level match, if determinable."""
    if not product.track_by_sku:
        return None
    active = [s for s in product.skus if s.is_active]
    if len(active) == 1:
        return active[0].id
    return None


def _lookup_mapping(company_id: int, channel: str, sku_key: str, listing_id, variant_id, cache: MappingCache | None):
    if cache is not None:
        index = cache.get(company_id, channel)
        if sku_key and sku_key in index.by_sku:
            return index.by_sku[sku_key]
        listing_key = normalize_key(listing_id)
        if listing_key:
            return (
                index.by_listing.get((listing_key, normalize_key(variant_id)))
                or index.by_listing.get((listing_key, ""))
            )
        return None

    base = db.session.query(MarketplaceProductMapping).filter_by(
        company_id=company_id, channel=channel, is_active=True
    )
    mapping = None
    if sku_key:
        mapping = base.filter(MarketplaceProductMapping.external_sku_key == sku_key).first()
    if mapping is None and listing_id:
        by_listing = base.filter(MarketplaceProductMapping.listing_id == str(listing_id).strip())
        mapping = None
        if variant_id:
            mapping = by_listing.filter(MarketplaceProductMapping.variant_id == str(variant_id).strip()).first()
        if mapping is None:
            mapping = by_listing.order_by(MarketplaceProductMapping.id).first()
    if mapping is None:
        return None
    return _MappingTarget(mapping.id, mapping.product_id, mapping.sku_id, mapping.is_automatic)


def _heuristic_match(company_id: int, sku_key: str, description: str | None) -> tuple[int, int | None] | None:
    """Return (product_id, sku_id) for a code or name match, or None."""
    if sku_key:
        sku = (
            db.session.query(ProductSku)
            .filter(
                ProductSku.company_id == company_id,
                ProductSku.is_active.is_(True),
                db.func.upper(ProductSku.sku_code) == sku_key,
            )
            .first()
        )
        if sku is not None:
            return sku.product_id, sku.id

        product = (
            db.session.query(Product)
            .filter(
                Product.company_id == company_id,
                Product.is_active.is_(True),
                db.func.upper(Product.code) == sku_key,
            )
            .first()
        )
        if product is not None:
            return _product_match(product)

    wanted = normalize_text(description)
    if not wanted:
        return None

    threshold = current_app.config.get("SKU_MATCH_MIN_SIMILARITY", 0.85)
    scored = []
    for product in db.session.query(Product).filter_by(company_id=company_id, is_active=True).all():
        ratio = difflib.SequenceMatcher(None, wanted, normalize_text(product.name)).ratio()
        if ratio >= threshold:
            scored.append((ratio, product))
    if not scored:
        return None

    scored.sort(key=lambda pair: pair[0], reverse=True)
    # Two equally good names are ambiguous; leave it for a person to map
    if len(scored) > 1 and scored[0][0] == scored[1][0]:
        return None
    return _product_match(scored[0][1])


def _product_match(product: Product) -> tuple[int, int | None] | None:
    sku_id = _stock_sku_for(product)
    if product.track_by_sku and sku_id is None:
        return None
    return product.id, sku_id


def resolve(
    company_id: int,
    channel: str,
    external_sku: str | None,
    *,
    description: str | None = None,
    listing_id: str | None = None,
    variant_id: str | None = None,
    cache: MappingCache | None = None,
    persist: bool = True,
) -> ResolvedSku | None:
    """
    Resolve a channel SKU to an internal product/SKU, or None.

    persist=False skips saving heuristic hits (used for previews).
    Misses are normal and never raise.
    """
    channel_key = normalize_channel(channel)
    sku_key = normalize_key(external_sku)
    if not channel_key or not (sku_key or listing_id or description):
        return None

    target = _lookup_mapping(company_id, channel_key, sku_key, listing_id, variant_id, cache)
    if target is not None:
        return _target_to_resolution(company_id, target)

    match = _heuristic_match(company_id, sku_key, description)
    if match is None:
        return None

    product_id, sku_id = match
    mapping_id = None
    if persist and sku_key:
        mapping = save_mapping(
            company_id=company_id,
            channel=channel_key,
            external_sku=external_sku,
            product_id=product_id,
            sku_id=sku_id,
            listing_id=listing_id,
            variant_id=variant_id,
            listing_title=description,
            is_automatic=True,
            cache=cache,
        )
        # A mapping saved concurrently by someone else wins over this match
        if mapping.is_active and (mapping.product_id != product_id or mapping.sku_id != sku_id):
            return _target_to_resolution(
                company_id,
                _MappingTarget(mapping.id, mapping.product_id, mapping.sku_id, mapping.is_automatic),
            )
        mapping_id = mapping.id

    return ResolvedSku(
        product_id=product_id,
        sku_id=sku_id,
        origin=ORIGIN_HEURISTIC,
        mapping_id=mapping_id,
        is_automatic=True,
    )


# =============================================================================
# MAPPING MAINTENANCE
# =============================================================================

def save_mapping(
    *,
    company_id: int,
    channel: str,
    external_sku: str,
    product_id: int | None = None,
    sku_id: int | None = None,
    listing_id: str | None = None,
    variant_id: str | None = None,
    listing_title: str | None = None,
    is_automatic: bool = False,
    cache: MappingCache | None = None,
) -> MarketplaceProductMapping:
    """
    Create or update the mapping for (company, channel, external SKU).

    Manual saves overwrite whatever exists. Automatic saves only create;
    an existing mapping is returned untouched. Flushes, does not commit.
    """
    channel_key = normalize_channel(channel)
    sku_key = normalize_key(external_sku)
    if not channel_key:
        raise ValidationError("channel is required")
    if not sku_key:
        raise ValidationError("external_sku is required")
    if product_id is None and sku_id is None:
        raise ValidationError("product_id or sku_id is required")

    if sku_id is not None:
        sku = db.session.query(ProductSku).filter_by(id=sku_id, company_id=company_id).first()
        if sku is None:
            raise ValidationError("sku not found")
        if product_id is not None and sku.product_id != product_id:
            raise ValidationError("sku does not belong to product")
        product_id = sku.product_id
    elif db.session.query(Product.id).filter_by(id=product_id, company_id=company_id).first() is None:
        raise ValidationError("product not found")

    def _fetch():
        return db.session.query(MarketplaceProductMapping).filter_by(
            company_id=company_id, channel=channel_key, external_sku_key=sku_key
        ).first()

    def _create():
        mapping = MarketplaceProductMapping(
            company_id=company_id,
            channel=channel_key,
            external_sku=str(external_sku).strip(),
            external_sku_key=sku_key,
            listing_id=str(listing_id).strip() if listing_id else None,
            variant_id=str(variant_id).strip() if variant_id else None,
            listing_title=listing_title[:255] if listing_title else None,
            product_id=product_id,
            sku_id=sku_id,
            is_automatic=is_automatic,
            is_active=True,
        )
        db.session.add(mapping)
        db.session.flush()
        return mapping

    existing = _fetch()
    if existing is None:
        mapping = insert_or_fetch(_create, _fetch)
        if mapping.is_automatic == is_automatic and mapping.product_id == product_id and mapping.sku_id == sku_id:
            if cache is not None:
                cache.invalidate(company_id, channel_key)
            return mapping
        existing = mapping

    if is_automatic:
        return existing

    existing.product_id = product_id
    existing.sku_id = sku_id
    existing.is_automatic = False
    existing.is_active = True
    if listing_id:
        existing.listing_id = str(listing_id).strip()
    if variant_id:
        existing.variant_id = str(variant_id).strip()
    if listing_title:
        existing.listing_title = listing_title[:255]
    db.session.flush()
    if cache is not None:
        cache.invalidate(company_id, channel_key)
    return existing


def deactivate_mapping(company_id: int, mapping_id: int, cache: MappingCache | None = None) -> MarketplaceProductMapping | None:
    mapping = db.session.query(MarketplaceProductMapping).filter_by(id=mapping_id, company_id=company_id).first()
    if mapping is None:
        return None
    mapping.is_active = False
    db.session.commit()
    if cache is not None:
        cache.invalidate(company_id, mapping.channel)
    return mapping


def list_mappings(company_id: int, channel: str | None = None, include_inactive: bool = False):
    q = db.session.query(MarketplaceProductMapping).filter_by(company_id=company_id)
    if channel:
        q = q.filter(MarketplaceProductMapping.channel == normalize_channel(channel))
    if not include_inactive:
        q = q.filter(MarketplaceProductMapping.is_active.is_(True))
    return q.order_by(MarketplaceProductMapping.channel, MarketplaceProductMapping.external_sku_key).all()


def backfill_unmapped_items(company_id: int, channel: str, *, limit: int = 5000, cache: MappingCache | None = None) -> dict:
    """
    Link items imported before their mapping existed.

    Only touches items still without a product; items already costed are left alone.
    """
    channel_key = normalize_channel(channel)
    cache = cache or MappingCache(ttl_seconds=current_app.config.get("SKU_MAPPING_CACHE_TTL", 300))

    items = (
        db.session.query(MarketplaceTransactionItem)
        .join(MarketplaceTransaction, MarketplaceTransaction.id == MarketplaceTransactionItem.transaction_id)
        .filter(
            MarketplaceTransactionItem.company_id == company_id,
            MarketplaceTransaction.channel == channel_key,
            MarketplaceTransactionItem.product_id.is_(None),
        )
        .limit(limit)
        .all()
    )

    updated = 0
    unmapped = 0
    for item in items:
        resolved = resolve(
            company_id,
            channel_key,
            item.external_sku,
            listing_id=item.listing_id,
            variant_id=item.variant_id,
            cache=cache,
            persist=False,
        )
        if resolved is None:
            unmapped += 1
            continue
        item.product_id = resolved.product_id
        item.sku_id = resolved.sku_id
        if item.cost_status == "NO_PRODUCT":
            item.cost_status = "PENDING"
            item.cost_message = None
        updated += 1

    db.session.commit()
    current_app.logger.info(
        "Backfill %s/%s: %s items linked, %s still unmapped", company_id, channel_key, updated, unmapped
    )
    return {"updated": updated, "unmapped": unmapped}
