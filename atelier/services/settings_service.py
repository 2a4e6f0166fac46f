from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.errors import NotFoundError
from atelier.models import (
    ColorMapping,
    Location,
    MetafieldDisplayRule,
    Shop,
    SupplierPricingRule,
    SupplierPricingRuleType,
)
from atelier.services.color_service import COLOR_MAPPINGS


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_shop(db: Session, *, shop_id: int) -> Shop:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise NotFoundError('Shop not found')
    return shop


def update_shop_settings(
    db: Session,
    *,
    shop_id: int,
    name: str | None = None,
    handling_fee: Decimal | None = None,
    clear_handling_fee: bool = False,
    shopify_location_id: str | None = None,
) -> Shop:
    shop = get_shop(db, shop_id=shop_id)
    if name is not None:
        if not name.strip():
            raise ValueError('Shop name is required')
        shop.name = name.strip()
    if clear_handling_fee:
        shop.handling_fee = None
    elif handling_fee is not None:
        if handling_fee < 0:
            raise ValueError('Handling fee cannot be negative')
        shop.handling_fee = handling_fee
    if shopify_location_id is not None:
        shop.shopify_location_id = shopify_location_id.strip() or None
    shop.updated_at = _now()
    db.flush()
    return shop


def serialize_shop(shop: Shop) -> dict:
    return {
        'id': shop.id,
        'name': shop.name,
        'shopify_url': shop.shopify_url,
        'shopify_location_id': shop.shopify_location_id,
        'handling_fee': shop.handling_fee,
    }


def list_locations(db: Session, *, shop_id: int, active_only: bool = True) -> list[Location]:
    stmt = select(Location).where(Location.shop_id == shop_id)
    if active_only:
        stmt = stmt.where(Location.active.is_(True))
    return db.execute(stmt.order_by(Location.name.asc())).scalars().all()


def color_overrides(db: Session, *, shop_id: int) -> dict[str, str]:
    return {
        row.source_name: row.canonical_name
        for row in db.execute(
            select(ColorMapping).where(ColorMapping.shop_id == shop_id).order_by(ColorMapping.id.asc())
        ).scalars()
    }


def list_color_mappings(db: Session, *, shop_id: int) -> list[dict]:
    overrides = color_overrides(db, shop_id=shop_id)
    rows = [
        {'source_name': source, 'canonical_name': overrides.get(source, target), 'builtin': True}
        for source, target in COLOR_MAPPINGS.items()
    ]
    rows.extend(
        {'source_name': source, 'canonical_name': target, 'builtin': False}
        for source, target in overrides.items()
        if source not in COLOR_MAPPINGS
    )
    return rows


def set_color_mapping(db: Session, *, shop_id: int, source_name: str, canonical_name: str) -> ColorMapping:
    source = (source_name or '').strip()
    target = (canonical_name or '').strip()
    if not source or not target:
        raise ValueError('Both color names are required')
    row = db.execute(
        select(ColorMapping).where(ColorMapping.shop_id == shop_id, ColorMapping.source_name == source)
    ).scalar_one_or_none()
    if row is None:
        row = ColorMapping(shop_id=shop_id, source_name=source, canonical_name=target)
        db.add(row)
    else:
        row.canonical_name = target
        row.updated_at = _now()
    db.flush()
    return row


def delete_color_mapping(db: Session, *, shop_id: int, source_name: str) -> None:
    row = db.execute(
        select(ColorMapping).where(ColorMapping.shop_id == shop_id, ColorMapping.source_name == source_name.strip())
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError('Color mapping not found')
    db.delete(row)
    db.flush()


def list_metafield_rules(db: Session, *, shop_id: int) -> list[MetafieldDisplayRule]:
    return db.execute(
        select(MetafieldDisplayRule)
        .where(MetafieldDisplayRule.shop_id == shop_id)
        .order_by(MetafieldDisplayRule.display_order.asc(), MetafieldDisplayRule.id.asc())
    ).scalars().all()


def upsert_metafield_rule(
    db: Session,
    *,
    shop_id: int,
    metafield_key: str,
    display_name: str,
    display_order: int = 0,
    is_active: bool = True,
) -> MetafieldDisplayRule:
    key = (metafield_key or '').strip()
    if not key:
        raise ValueError('Metafield key is required')
    row = db.execute(
        select(MetafieldDisplayRule).where(
            MetafieldDisplayRule.shop_id == shop_id,
            MetafieldDisplayRule.metafield_key == key,
        )
    ).scalar_one_or_none()
    if row is None:
        row = MetafieldDisplayRule(shop_id=shop_id, metafield_key=key)
        db.add(row)
    row.display_name = (display_name or '').strip() or key
    row.display_order = display_order
    row.is_active = is_active
    db.flush()
    return row


def delete_metafield_rule(db: Session, *, shop_id: int, rule_id: int) -> None:
    row = db.execute(
        select(MetafieldDisplayRule).where(MetafieldDisplayRule.id == rule_id, MetafieldDisplayRule.shop_id == shop_id)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError('Metafield rule not found')
    db.delete(row)
    db.flush()


def serialize_metafield_rule(row: MetafieldDisplayRule) -> dict:
    return {
        'id': row.id,
        'metafield_key': row.metafield_key,
        'display_name': row.display_name,
        'display_order': row.display_order,
        'is_active': row.is_active,
    }


def list_supplier_pricing_rules(db: Session, *, shop_id: int) -> list[SupplierPricingRule]:
    return db.execute(
        select(SupplierPricingRule)
        .where(SupplierPricingRule.shop_id == shop_id)
        .order_by(SupplierPricingRule.priority.asc(), SupplierPricingRule.id.asc())
    ).scalars().all()


def create_supplier_pricing_rule(
    db: Session,
    *,
    shop_id: int,
    rule_type: SupplierPricingRuleType,
    price_value: Decimal,
    condition_value: str | None = None,
    is_percentage: bool = False,
    priority: int = 0,
) -> SupplierPricingRule:
    condition = (condition_value or '').strip() or None
    if rule_type == SupplierPricingRuleType.SURCHARGE and not condition:
        raise ValueError('Surcharge rules need a condition')
    if rule_type == SupplierPricingRuleType.BASE_PRICE and is_percentage:
        raise ValueError('Base price cannot be a percentage')
    row = SupplierPricingRule(
        shop_id=shop_id,
        rule_type=rule_type,
        condition_value=condition,
        price_value=price_value,
        is_percentage=is_percentage,
        priority=priority,
    )
    db.add(row)
    db.flush()
    return row


def set_supplier_pricing_rule_active(db: Session, *, shop_id: int, rule_id: int, is_active: bool) -> SupplierPricingRule:
    row = db.execute(
        select(SupplierPricingRule).where(SupplierPricingRule.id == rule_id, SupplierPricingRule.shop_id == shop_id)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError('Pricing rule not found')
    row.is_active = is_active
    db.flush()
    return row


def delete_supplier_pricing_rule(db: Session, *, shop_id: int, rule_id: int) -> None:
    row = db.execute(
        select(SupplierPricingRule).where(SupplierPricingRule.id == rule_id, SupplierPricingRule.shop_id == shop_id)
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError('Pricing rule not found')
    db.delete(row)
    db.flush()


def serialize_supplier_pricing_rule(row: SupplierPricingRule) -> dict:
    return {
        'id': row.id,
        'rule_type': row.rule_type.value,
        'condition_value': row.condition_value,
        'price_value': row.price_value,
        'is_percentage': row.is_percentage,
        'priority': row.priority,
        'is_active': row.is_active,
    }
