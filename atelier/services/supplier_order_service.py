from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.errors import NotFoundError
from atelier.logging import get_logger
from atelier.models import (
    InventoryLevel,
    MetafieldDisplayRule,
    Product,
    ProductVariant,
    Shop,
    SupplierOrder,
    SupplierOrderItem,
    SupplierOrderStatus,
    SupplierPricingRule,
    VariantMetafield,
)
from atelier.services.batch_result import BatchResult
from atelier.services.price_rule_service import build_pricing_string, calculate_supplier_unit_price
from atelier.services.shopify_client import ShopifyApiError, ShopifyClient, client_for_shop

logger = get_logger(__name__)

CENT = Decimal('0.01')
ORDER_NUMBER_PREFIX = 'BATCH-'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class SupplierTotals:
    subtotal: Decimal
    balance_adjustment: Decimal
    total_ht: Decimal
    total_ttc: Decimal


@dataclass(frozen=True)
class NewItem:
    variant_id: int
    quantity: int


def compute_totals(
    subtotal: Decimal,
    balance_adjustment: Decimal,
    *,
    vat_multiplier: Decimal | None = None,
) -> SupplierTotals:
    multiplier = settings.vat_multiplier if vat_multiplier is None else vat_multiplier
    total_ht = subtotal + balance_adjustment
    return SupplierTotals(
        subtotal=subtotal,
        balance_adjustment=balance_adjustment,
        total_ht=total_ht,
        total_ttc=(total_ht * multiplier).quantize(CENT, rounding=ROUND_HALF_UP),
    )


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)


def _next_order_number(db: Session, *, shop_id: int) -> str:
    count = db.execute(
        select(func.count(SupplierOrder.id)).where(SupplierOrder.shop_id == shop_id)
    ).scalar_one()
    number = int(count or 0) + 1
    while True:
        candidate = f'{ORDER_NUMBER_PREFIX}{number:04d}'
        taken = db.execute(
            select(SupplierOrder.id).where(
                SupplierOrder.shop_id == shop_id,
                SupplierOrder.order_number == candidate,
            )
        ).first()
        if not taken:
            return candidate
        number += 1


def create_supplier_order(
    db: Session,
    *,
    shop_id: int,
    note: str | None = None,
    location_id: str | None = None,
) -> SupplierOrder:
    order = SupplierOrder(
        shop_id=shop_id,
        order_number=_next_order_number(db, shop_id=shop_id),
        status=SupplierOrderStatus.DRAFT,
        note=(note or '').strip() or None,
        location_id=(location_id or '').strip() or None,
        subtotal=Decimal('0'),
        balance_adjustment=Decimal('0'),
        total_ht=Decimal('0'),
        total_ttc=Decimal('0'),
    )
    db.add(order)
    db.flush()
    return order


def get_supplier_order(db: Session, *, shop_id: int, order_id: int) -> SupplierOrder:
    order = db.execute(
        select(SupplierOrder).where(SupplierOrder.id == order_id, SupplierOrder.shop_id == shop_id)
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError('Supplier order not found')
    return order


def list_supplier_orders(db: Session, *, shop_id: int) -> list[dict]:
    counts = {
        order_id: (int(total or 0), int(validated or 0))
        for order_id, total, validated in db.execute(
            select(
                SupplierOrderItem.order_id,
                func.count(SupplierOrderItem.id),
                func.sum(case((SupplierOrderItem.is_validated.is_(True), 1), else_=0)),
            )
            .join(SupplierOrder, SupplierOrder.id == SupplierOrderItem.order_id)
            .where(SupplierOrder.shop_id == shop_id)
            .group_by(SupplierOrderItem.order_id)
        ).all()
    }
    orders = db.execute(
        select(SupplierOrder)
        .where(SupplierOrder.shop_id == shop_id)
        .order_by(SupplierOrder.created_at.desc(), SupplierOrder.id.desc())
    ).scalars().all()
    return [
        {
            **serialize_supplier_order(order),
            'items_count': counts.get(order.id, (0, 0))[0],
            'validated_count': counts.get(order.id, (0, 0))[1],
        }
        for order in orders
    ]


def recalculate_totals(order: SupplierOrder) -> SupplierTotals:
    subtotal = sum((Decimal(item.line_total) for item in order.items), Decimal('0'))
    totals = compute_totals(subtotal, Decimal(order.balance_adjustment or 0))
    order.subtotal = totals.subtotal
    order.total_ht = totals.total_ht
    order.total_ttc = totals.total_ttc
    order.updated_at = _now()
    return totals


def _ensure_editable(order: SupplierOrder) -> None:
    if order.status == SupplierOrderStatus.COMPLETED:
        raise ValueError('Completed supplier orders cannot be modified')


def _displayed_metafields(db: Session, *, shop_id: int, variant_ids: list[int]) -> dict[int, list[tuple[str, str]]]:
    rules = db.execute(
        select(MetafieldDisplayRule)
        .where(MetafieldDisplayRule.shop_id == shop_id, MetafieldDisplayRule.is_active.is_(True))
        .order_by(MetafieldDisplayRule.display_order.asc(), MetafieldDisplayRule.id.asc())
    ).scalars().all()
    if not rules or not variant_ids:
        return {}
    by_variant: dict[int, dict[str, str]] = {}
    for row in db.execute(select(VariantMetafield).where(VariantMetafield.variant_id.in_(variant_ids))).scalars():
        values = by_variant.setdefault(row.variant_id, {})
        values[f'{row.namespace}.{row.key}'] = row.value
        values.setdefault(row.key, row.value)

    displayed: dict[int, list[tuple[str, str]]] = {}
    for variant_id, values in by_variant.items():
        displayed[variant_id] = [
            (rule.display_name, values[rule.metafield_key])
            for rule in rules
            if values.get(rule.metafield_key)
        ]
    return displayed


def _shop_variants(db: Session, *, shop_id: int, variant_ids: list[int]) -> dict[int, tuple[ProductVariant, Product]]:
    if not variant_ids:
        return {}
    rows = db.execute(
        select(ProductVariant, Product)
        .join(Product, Product.id == ProductVariant.product_id)
        .where(ProductVariant.id.in_(variant_ids), Product.shop_id == shop_id)
    ).all()
    return {variant.id: (variant, product) for variant, product in rows}


def add_items(db: Session, *, shop_id: int, order_id: int, items: list[NewItem]) -> list[SupplierOrderItem]:
    if not items:
        raise ValueError('Select at least one item')
    order = get_supplier_order(db, shop_id=shop_id, order_id=order_id)
    _ensure_editable(order)

    variant_ids = [item.variant_id for item in items]
    variants = _shop_variants(db, shop_id=shop_id, variant_ids=variant_ids)
    metafields = _displayed_metafields(db, shop_id=shop_id, variant_ids=variant_ids)
    rules = db.execute(
        select(SupplierPricingRule).where(
            SupplierPricingRule.shop_id == shop_id,
            SupplierPricingRule.is_active.is_(True),
        )
    ).scalars().all()

    created: list[SupplierOrderItem] = []
    for item in items:
        if item.quantity <= 0:
            raise ValueError('Quantity must be at least 1')
        found = variants.get(item.variant_id)
        if found is None:
            raise NotFoundError(f'Variant {item.variant_id} not found')
        variant, product = found
        pricing_string = build_pricing_string(
            product_title=product.title,
            sku=variant.sku,
            options=(variant.option1, variant.option2, variant.option3),
            metafield_values=[value for _, value in metafields.get(variant.id, [])],
        )
        unit_price = calculate_supplier_unit_price(pricing_string, rules)
        row = SupplierOrderItem(
            variant_id=variant.id,
            sku=variant.sku,
            product_title=product.title,
            variant_title=variant.title,
            quantity=item.quantity,
            unit_price=unit_price,
            line_total=line_total(unit_price, item.quantity),
            pricing_string=pricing_string,
            is_validated=False,
        )
        order.items.append(row)
        created.append(row)

    recalculate_totals(order)
    db.flush()
    return created


def _get_item(order: SupplierOrder, item_id: int) -> SupplierOrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise NotFoundError('Supplier order item not found')


def update_item(
    db: Session,
    *,
    shop_id: int,
    order_id: int,
    item_id: int,
    quantity: int | None = None,
    unit_price: Decimal | None = None,
) -> SupplierOrderItem:
    order = get_supplier_order(db, shop_id=shop_id, order_id=order_id)
    _ensure_editable(order)
    item = _get_item(order, item_id)
    if quantity is not None:
        if quantity <= 0:
            raise ValueError('Quantity must be at least 1')
        item.quantity = quantity
    if unit_price is not None:
        if unit_price < 0:
            raise ValueError('Unit price cannot be negative')
        item.unit_price = unit_price
    item.line_total = line_total(Decimal(item.unit_price), item.quantity)
    recalculate_totals(order)
    db.flush()
    return item


def set_item_validated(db: Session, *, shop_id: int, order_id: int, item_id: int, validated: bool) -> SupplierOrderItem:
    order = get_supplier_order(db, shop_id=shop_id, order_id=order_id)
    item = _get_item(order, item_id)
    item.is_validated = validated
    order.updated_at = _now()
    db.flush()
    return item


def remove_item(db: Session, *, shop_id: int, order_id: int, item_id: int) -> None:
    order = get_supplier_order(db, shop_id=shop_id, order_id=order_id)
    _ensure_editable(order)
    order.items.remove(_get_item(order, item_id))
    recalculate_totals(order)
    db.flush()


def _complete(
    db: Session,
    order: SupplierOrder,
    *,
    shop: Shop,
    client: ShopifyClient | None,
) -> BatchResult[str]:
    location_id = order.location_id or shop.shopify_location_id
    if not location_id:
        raise ValueError('A location is required to complete a supplier order')

    variants = _shop_variants(db, shop_id=shop.id, variant_ids=[item.variant_id for item in order.items if item.variant_id])
    levels = {
        row.variant_id: row
        for row in db.execute(
            select(InventoryLevel).where(
                InventoryLevel.location_id == str(location_id),
                InventoryLevel.variant_id.in_(list(variants)),
            )
        ).scalars().all()
    } if variants else {}

    client = client or client_for_shop(shop)
    result: BatchResult[str] = BatchResult()
    for item in order.items:
        label = item.sku or item.variant_title or str(item.id)
        found = variants.get(item.variant_id) if item.variant_id else None
        if found is None:
            result.fail(label, 'variant no longer exists')
            continue
        variant, _ = found
        level = levels.get(variant.id)
        if level is None:
            level = InventoryLevel(variant_id=variant.id, location_id=str(location_id), quantity=0)
            db.add(level)
            levels[variant.id] = level
        level.quantity = (level.quantity or 0) + item.quantity
        level.synced_at = _now()

        if not variant.inventory_item_id:
            result.fail(label, 'variant has no inventory item')
            continue
        try:
            client.post(
                'inventory_levels/adjust.json',
                {
                    'location_id': int(location_id),
                    'inventory_item_id': int(variant.inventory_item_id),
                    'available_adjustment': item.quantity,
                },
            )
        except (ShopifyApiError, ValueError) as exc:
            result.fail(label, exc)
            continue
        result.ok(label)

    order.status = SupplierOrderStatus.COMPLETED
    order.closed_at = _now()
    logger.info('supplier_order_completed', order_id=order.id, **result.summary())
    return result


def update_supplier_order(
    db: Session,
    *,
    shop: Shop,
    order_id: int,
    status: SupplierOrderStatus | None = None,
    note: str | None = None,
    balance_adjustment: Decimal | None = None,
    location_id: str | None = None,
    client: ShopifyClient | None = None,
) -> tuple[SupplierOrder, BatchResult[str] | None]:
    order = get_supplier_order(db, shop_id=shop.id, order_id=order_id)
    _ensure_editable(order)

    if note is not None:
        order.note = note.strip() or None
    if location_id is not None:
        order.location_id = location_id.strip() or None
    if balance_adjustment is not None:
        order.balance_adjustment = balance_adjustment
    recalculate_totals(order)

    completion: BatchResult[str] | None = None
    if status is not None and status != order.status:
        if status == SupplierOrderStatus.COMPLETED:
            completion = _complete(db, order, shop=shop, client=client)
        else:
            order.status = status
    order.updated_at = _now()
    db.flush()
    return order, completion


def delete_supplier_order(db: Session, *, shop_id: int, order_id: int) -> None:
    order = get_supplier_order(db, shop_id=shop_id, order_id=order_id)
    db.delete(order)
    db.flush()


def serialize_item(item: SupplierOrderItem) -> dict:
    return {
        'id': item.id,
        'variant_id': item.variant_id,
        'sku': item.sku,
        'product_title': item.product_title,
        'variant_title': item.variant_title,
        'quantity': item.quantity,
        'unit_price': item.unit_price,
        'line_total': item.line_total,
        'pricing_string': item.pricing_string,
        'is_validated': item.is_validated,
    }


def serialize_supplier_order(order: SupplierOrder) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'status': order.status.value,
        'note': order.note,
        'location_id': order.location_id,
        'subtotal': order.subtotal,
        'balance_adjustment': order.balance_adjustment,
        'total_ht': order.total_ht,
        'total_ttc': order.total_ttc,
        'created_at': order.created_at,
        'updated_at': order.updated_at,
        'closed_at': order.closed_at,
    }


def get_detail(db: Session, *, shop_id: int, order_id: int) -> dict:
    order = get_supplier_order(db, shop_id=shop_id, order_id=order_id)
    metafields = _displayed_metafields(
        db,
        shop_id=shop_id,
        variant_ids=[item.variant_id for item in order.items if item.variant_id],
    )
    return {
        **serialize_supplier_order(order),
        'items': [
            {
                **serialize_item(item),
                'metafields': [
                    {'label': label, 'value': value} for label, value in metafields.get(item.variant_id, [])
                ],
            }
            for item in order.items
        ],
    }
