from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.errors import NotFoundError
from atelier.models import PriceRule, SupplierPricingRuleType
from atelier.services.color_service import extract_color, extract_size, strip_parenthetical, transform_color
from atelier.services.line_items import LineItem

CENT = Decimal('0.01')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class SearchRule(Protocol):
    search_string: str
    price: Decimal


@dataclass(frozen=True)
class PriceMatch:
    descriptor: str
    total: Decimal
    matched: list = field(default_factory=list)


@dataclass(frozen=True)
class CostLine:
    label: str
    amount: Decimal


@dataclass(frozen=True)
class CostBreakdown:
    base_price: Decimal
    modifiers: tuple[CostLine, ...]

    @property
    def total(self) -> Decimal:
        return self.base_price + sum((line.amount for line in self.modifiers), Decimal('0'))


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _is_active(rule) -> bool:
    return bool(getattr(rule, 'is_active', True))


def format_item_descriptor(item: LineItem, color_overrides: Mapping[str, str] | None = None) -> str:
    color = transform_color(strip_parenthetical(extract_color(item)), color_overrides)
    parts = [item.sku or '', color, extract_size(item) or '', item.print_file or '', item.verso_file or '']
    return ' - '.join(part.strip() for part in parts if part and part.strip())


def _rule_matches(descriptor: str, rule) -> bool:
    needle = (rule.search_string or '').strip().lower()
    return bool(needle) and needle in descriptor.lower()


def match_price_rules(descriptor: str, rules: Iterable[SearchRule]) -> PriceMatch:
    matched = [rule for rule in rules if _is_active(rule) and _rule_matches(descriptor, rule)]
    total = sum((_to_decimal(rule.price) for rule in matched), Decimal('0'))
    return PriceMatch(descriptor=descriptor, total=total, matched=matched)


def calculate_item_price(descriptor: str, rules: Iterable[SearchRule]) -> Decimal:
    return match_price_rules(descriptor, rules).total


def compute_variant_cost(
    rule,
    *,
    metafields: Mapping[tuple[str, str], str],
    options: Mapping[str, str],
) -> CostBreakdown:
    lowered_options = {name.strip().lower(): (value or '').strip().lower() for name, value in options.items()}
    modifiers: list[CostLine] = []
    for modifier in getattr(rule, 'metafield_modifiers', None) or []:
        value = metafields.get((modifier.namespace, modifier.key))
        if value is not None and value == modifier.value:
            modifiers.append(
                CostLine(
                    label=f'{modifier.namespace}.{modifier.key}={modifier.value}',
                    amount=_to_decimal(modifier.amount),
                )
            )
    for modifier in getattr(rule, 'option_modifiers', None) or []:
        name = (modifier.option_name or '').strip().lower()
        wanted = (modifier.option_value or '').strip().lower()
        # Orders synced without option names only carry the variant title parts.
        matched = lowered_options.get(name) == wanted if name in lowered_options else wanted in lowered_options.values()
        if matched:
            modifiers.append(
                CostLine(
                    label=f'{modifier.option_name}={modifier.option_value}',
                    amount=_to_decimal(modifier.amount),
                )
            )
    return CostBreakdown(base_price=_to_decimal(rule.base_price), modifiers=tuple(modifiers))


def supplier_rule_sort_key(rule) -> tuple[int, int]:
    return (int(getattr(rule, 'priority', 0) or 0), int(getattr(rule, 'id', 0) or 0))


def calculate_supplier_unit_price(pricing_string: str, rules: Sequence) -> Decimal:
    active = sorted((rule for rule in rules if _is_active(rule)), key=supplier_rule_sort_key)
    haystack = (pricing_string or '').lower()

    price = Decimal('0')
    for rule in active:
        if rule.rule_type == SupplierPricingRuleType.BASE_PRICE:
            price = _to_decimal(rule.price_value)
            break

    for rule in active:
        if rule.rule_type != SupplierPricingRuleType.SURCHARGE:
            continue
        condition = (rule.condition_value or '').strip().lower()
        if not condition or condition not in haystack:
            continue
        amount = _to_decimal(rule.price_value)
        if rule.is_percentage:
            price += price * amount / Decimal('100')
        else:
            price += amount
    return price.quantize(CENT, rounding=ROUND_HALF_UP)


def build_pricing_string(
    *,
    product_title: str | None,
    sku: str | None,
    options: Iterable[str | None] = (),
    metafield_values: Iterable[str | None] = (),
) -> str:
    parts = [product_title, sku, *options, *metafield_values]
    return ', '.join(part.strip() for part in parts if part and part.strip())


def list_price_rules(db: Session, *, shop_id: int, active_only: bool = False) -> list[PriceRule]:
    stmt = select(PriceRule).where(PriceRule.shop_id == shop_id)
    if active_only:
        stmt = stmt.where(PriceRule.is_active.is_(True))
    return db.execute(stmt.order_by(PriceRule.priority.asc(), PriceRule.id.asc())).scalars().all()


def _clean_search_string(value: str | None) -> str:
    cleaned = (value or '').strip()
    if not cleaned:
        raise ValueError('Search string is required')
    return cleaned


def create_price_rule(
    db: Session,
    *,
    shop_id: int,
    search_string: str,
    price: Decimal,
    priority: int = 0,
    is_active: bool = True,
) -> PriceRule:
    rule = PriceRule(
        shop_id=shop_id,
        search_string=_clean_search_string(search_string),
        price=_to_decimal(price),
        priority=priority,
        is_active=is_active,
    )
    db.add(rule)
    db.flush()
    return rule


def _get_price_rule(db: Session, *, shop_id: int, rule_id: int) -> PriceRule:
    rule = db.execute(
        select(PriceRule).where(PriceRule.id == rule_id, PriceRule.shop_id == shop_id)
    ).scalar_one_or_none()
    if rule is None:
        raise NotFoundError('Price rule not found')
    return rule


def update_price_rule(
    db: Session,
    *,
    shop_id: int,
    rule_id: int,
    search_string: str | None = None,
    price: Decimal | None = None,
    priority: int | None = None,
    is_active: bool | None = None,
) -> PriceRule:
    rule = _get_price_rule(db, shop_id=shop_id, rule_id=rule_id)
    if search_string is not None:
        rule.search_string = _clean_search_string(search_string)
    if price is not None:
        rule.price = _to_decimal(price)
    if priority is not None:
        rule.priority = priority
    if is_active is not None:
        rule.is_active = is_active
    rule.updated_at = _now()
    db.flush()
    return rule


def delete_price_rule(db: Session, *, shop_id: int, rule_id: int) -> None:
    rule = _get_price_rule(db, shop_id=shop_id, rule_id=rule_id)
    db.delete(rule)
    db.flush()


def serialize_price_rule(rule: PriceRule) -> dict:
    return {
        'id': rule.id,
        'search_string': rule.search_string,
        'price': rule.price,
        'priority': rule.priority,
        'is_active': rule.is_active,
    }
