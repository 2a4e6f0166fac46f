from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.errors import NotFoundError
from atelier.logging import get_logger
from atelier.models import CostRule, CostRuleMetafieldModifier, CostRuleOptionModifier, Order, Shop
from atelier.services import stream_events as events
from atelier.services.batch_result import BatchResult
from atelier.services.line_items import LineItem, line_item_from_payload, metafields_from_payload
from atelier.services.price_rule_service import CostBreakdown, compute_variant_cost
from atelier.services.shopify_client import ShopifyApiError, ShopifyClient, client_for_shop

logger = get_logger(__name__)

ClientFactory = Callable[[Shop], ShopifyClient]

VARIANTS_BY_SKU_QUERY = '''
query VariantsBySku($query: String!, $cursor: String) {
  productVariants(first: 100, query: $query, after: $cursor) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      sku
      title
      selectedOptions {
        name
        value
      }
      inventoryItem {
        id
      }
      metafields(first: 20) {
        nodes {
          namespace
          key
          value
        }
      }
    }
  }
}
'''

UPDATE_COST_MUTATION = '''
mutation UpdateInventoryCost($id: ID!, $input: InventoryItemInput!) {
  inventoryItemUpdate(id: $id, input: $input) {
    inventoryItem {
      id
    }
    userErrors {
      field
      message
    }
  }
}
'''


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class MetafieldModifierInput:
    namespace: str
    key: str
    value: str
    amount: Decimal


@dataclass(frozen=True)
class OptionModifierInput:
    option_name: str
    option_value: str
    amount: Decimal


def list_cost_rules(db: Session, *, shop_id: int) -> list[CostRule]:
    return db.execute(
        select(CostRule).where(CostRule.shop_id == shop_id).order_by(CostRule.sku.asc(), CostRule.id.asc())
    ).scalars().all()


def get_cost_rule(db: Session, *, shop_id: int, rule_id: int) -> CostRule:
    rule = db.execute(
        select(CostRule).where(CostRule.id == rule_id, CostRule.shop_id == shop_id)
    ).scalar_one_or_none()
    if rule is None:
        raise NotFoundError('Cost rule not found')
    return rule


def _replace_modifiers(
    rule: CostRule,
    *,
    metafield_modifiers: list[MetafieldModifierInput] | None,
    option_modifiers: list[OptionModifierInput] | None,
) -> None:
    if metafield_modifiers is not None:
        rule.metafield_modifiers = [
            CostRuleMetafieldModifier(
                namespace=row.namespace.strip(),
                key=row.key.strip(),
                value=row.value,
                amount=row.amount,
            )
            for row in metafield_modifiers
            if row.namespace.strip() and row.key.strip()
        ]
    if option_modifiers is not None:
        rule.option_modifiers = [
            CostRuleOptionModifier(
                option_name=row.option_name.strip(),
                option_value=row.option_value.strip(),
                amount=row.amount,
            )
            for row in option_modifiers
            if row.option_value.strip()
        ]


def create_cost_rule(
    db: Session,
    *,
    shop_id: int,
    sku: str,
    base_price: Decimal,
    description: str | None = None,
    product_type: str | None = None,
    metafield_modifiers: list[MetafieldModifierInput] | None = None,
    option_modifiers: list[OptionModifierInput] | None = None,
) -> CostRule:
    cleaned_sku = (sku or '').strip()
    if not cleaned_sku:
        raise ValueError('SKU is required')
    if base_price < 0:
        raise ValueError('Base price cannot be negative')
    rule = CostRule(
        shop_id=shop_id,
        sku=cleaned_sku,
        base_price=base_price,
        description=(description or '').strip() or None,
        product_type=(product_type or '').strip() or None,
    )
    _replace_modifiers(rule, metafield_modifiers=metafield_modifiers or [], option_modifiers=option_modifiers or [])
    db.add(rule)
    db.flush()
    return rule


def update_cost_rule(
    db: Session,
    *,
    shop_id: int,
    rule_id: int,
    sku: str | None = None,
    base_price: Decimal | None = None,
    description: str | None = None,
    product_type: str | None = None,
    is_active: bool | None = None,
    metafield_modifiers: list[MetafieldModifierInput] | None = None,
    option_modifiers: list[OptionModifierInput] | None = None,
) -> CostRule:
    rule = get_cost_rule(db, shop_id=shop_id, rule_id=rule_id)
    if sku is not None:
        if not sku.strip():
            raise ValueError('SKU is required')
        rule.sku = sku.strip()
    if base_price is not None:
        if base_price < 0:
            raise ValueError('Base price cannot be negative')
        rule.base_price = base_price
    if description is not None:
        rule.description = description.strip() or None
    if product_type is not None:
        rule.product_type = product_type.strip() or None
    if is_active is not None:
        rule.is_active = is_active
    _replace_modifiers(rule, metafield_modifiers=metafield_modifiers, option_modifiers=option_modifiers)
    rule.updated_at = _now()
    db.flush()
    return rule


def delete_cost_rule(db: Session, *, shop_id: int, rule_id: int) -> None:
    db.delete(get_cost_rule(db, shop_id=shop_id, rule_id=rule_id))
    db.flush()


def serialize_cost_rule(rule: CostRule) -> dict:
    return {
        'id': rule.id,
        'sku': rule.sku,
        'base_price': rule.base_price,
        'description': rule.description,
        'product_type': rule.product_type,
        'is_active': rule.is_active,
        'last_applied_at': rule.last_applied_at,
        'metafield_modifiers': [
            {'namespace': row.namespace, 'key': row.key, 'value': row.value, 'amount': row.amount}
            for row in rule.metafield_modifiers
        ],
        'option_modifiers': [
            {'option_name': row.option_name, 'option_value': row.option_value, 'amount': row.amount}
            for row in rule.option_modifiers
        ],
    }


def line_item_options(item: LineItem) -> dict[str, str]:
    if item.selected_options:
        return {option.name: option.value for option in item.selected_options}
    parts = [part.strip() for part in (item.variant_title or '').split('/') if part.strip()]
    return {f'option{index + 1}': part for index, part in enumerate(parts)}


def rule_applies_to_sku(rule: CostRule, sku: str | None) -> bool:
    return bool(sku) and sku.upper().startswith(rule.sku.upper())


def line_item_cost(rule: CostRule, item: LineItem) -> CostBreakdown:
    return compute_variant_cost(rule, metafields=item.metafields, options=line_item_options(item))


def fetch_variants_by_sku(client: ShopifyClient, sku: str) -> list[dict]:
    variants: list[dict] = []
    cursor: str | None = None
    while True:
        data = client.graphql(VARIANTS_BY_SKU_QUERY, {'query': f'sku:{sku}', 'cursor': cursor})
        connection = data.get('productVariants') or {}
        variants.extend(connection.get('nodes') or [])
        page_info = connection.get('pageInfo') or {}
        cursor = page_info.get('endCursor')
        if not page_info.get('hasNextPage') or not cursor:
            break
    return variants


def _describe(breakdown: CostBreakdown) -> str:
    if not breakdown.modifiers:
        return ''
    parts = ' '.join(f'{line.amount:+} ({line.label})' for line in breakdown.modifiers)
    return f' [{breakdown.base_price} {parts}]'


def apply_rule_to_variants(
    client: ShopifyClient,
    rule: CostRule,
    variants: list[dict],
    result: BatchResult[str],
) -> Iterator[events.StreamEvent]:
    total = len(variants)
    for index, variant in enumerate(variants, start=1):
        label = f"{variant.get('sku')} - {variant.get('title')}"
        inventory_item_id = (variant.get('inventoryItem') or {}).get('id')
        if not inventory_item_id:
            result.fail(label, 'missing inventory item')
            yield events.error(f'[{index}/{total}] {label}: missing inventory item')
            continue
        options = {
            str(option.get('name') or ''): str(option.get('value') or '')
            for option in variant.get('selectedOptions') or []
        }
        breakdown = compute_variant_cost(rule, metafields=metafields_from_payload(variant.get('metafields')), options=options)
        try:
            data = client.graphql(
                UPDATE_COST_MUTATION,
                {'id': inventory_item_id, 'input': {'cost': f'{breakdown.total:.2f}'}},
            )
        except ShopifyApiError as exc:
            result.fail(label, exc)
            yield events.error(f'[{index}/{total}] {label}: {exc}')
            continue
        user_errors = (data.get('inventoryItemUpdate') or {}).get('userErrors') or []
        if user_errors:
            message = user_errors[0].get('message') or 'rejected'
            result.fail(label, message)
            yield events.error(f'[{index}/{total}] {label}: {message}')
            continue
        result.ok(label)
        yield events.progress(f'[{index}/{total}] {label} -> {breakdown.total:.2f}{_describe(breakdown)}')


def run_cost_rule_application(
    db: Session,
    *,
    shop_id: int,
    rule_id: int,
    client_factory: ClientFactory = client_for_shop,
) -> Iterator[events.StreamEvent]:
    yield events.info('Applying cost rule to Shopify')
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise NotFoundError('Shop not found')
    rule = get_cost_rule(db, shop_id=shop_id, rule_id=rule_id)
    yield events.success(f'Rule: {rule.sku} (base {rule.base_price})')

    client = client_factory(shop)
    variants = fetch_variants_by_sku(client, rule.sku)
    if not variants:
        yield events.error(f'No Shopify variant found for SKU {rule.sku}')
        return
    yield events.success(f'{len(variants)} variant(s) found')

    result: BatchResult[str] = BatchResult()
    yield from apply_rule_to_variants(client, rule, variants, result)

    rule.last_applied_at = _now()
    db.flush()
    logger.info('cost_rule_applied', shop_id=shop_id, rule_id=rule_id, **result.summary())
    yield events.success(f'Finished: {len(result.succeeded)} updated, {len(result.failed)} failed')


def stream_cost_rule_application(
    shop_id: int,
    rule_id: int,
    *,
    session_factory,
    client_factory: ClientFactory = client_for_shop,
) -> Iterator[str]:
    return events.run_stream(
        lambda db: run_cost_rule_application(db, shop_id=shop_id, rule_id=rule_id, client_factory=client_factory),
        session_factory=session_factory,
        logger=logger,
    )


def apply_cost_rules_locally(db: Session, *, shop_id: int, rule_id: int | None = None) -> tuple[int, int]:
    if rule_id is not None:
        rules = [get_cost_rule(db, shop_id=shop_id, rule_id=rule_id)]
    else:
        rules = [rule for rule in list_cost_rules(db, shop_id=shop_id) if rule.is_active]
    if not rules:
        return 0, 0
    # Longest prefix wins.
    rules = sorted(rules, key=lambda row: len(row.sku), reverse=True)

    updated_items = 0
    updated_orders = 0
    orders = db.execute(select(Order).where(Order.shop_id == shop_id)).scalars().all()
    for order in orders:
        payloads = [dict(payload) for payload in order.line_items or []]
        changed = False
        for payload in payloads:
            item = line_item_from_payload(payload)
            rule = next((row for row in rules if rule_applies_to_sku(row, item.sku)), None)
            if rule is None:
                continue
            unit_cost = line_item_cost(rule, item).total
            if payload.get('unitCost') == str(unit_cost):
                continue
            payload['unitCost'] = str(unit_cost)
            payload['totalCost'] = str(unit_cost * max(item.quantity, 1))
            changed = True
            updated_items += 1
        if changed:
            order.line_items = payloads
            updated_orders += 1

    now = _now()
    for rule in rules:
        rule.last_applied_at = now
    db.flush()
    logger.info('cost_rules_applied_locally', shop_id=shop_id, items=updated_items, orders=updated_orders)
    return updated_items, updated_orders
