from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from atelier.errors import NotFoundError
from atelier.logging import get_logger
from atelier.models import LineItemCheck, Order
from atelier.services.line_items import line_items_from_payload
from atelier.services.progress_service import ProgressCount, order_progress
from atelier.services.sort_utils import variant_sort_key
from atelier.services.variant_identity import VariantKey, VariantUnit, expand_order_units, item_keys

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_order(db: Session, *, shop_id: int, order_id: str) -> Order:
    order = db.execute(
        select(Order).where(Order.shop_id == shop_id, Order.shopify_id == order_id)
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError('Order not found')
    return order


def order_units(order: Order) -> list[VariantUnit]:
    return expand_order_units(order.shopify_id, line_items_from_payload(order.line_items))


def _unit_key(order: Order, *, product_index: int, unit_index: int) -> VariantKey:
    items = line_items_from_payload(order.line_items)
    if product_index < 0 or product_index >= len(items):
        raise ValueError('Line item index out of range')
    item = items[product_index]
    if not item.sku:
        raise ValueError('SKU cannot be empty')
    if item.is_cancelled:
        raise ValueError('Line item is cancelled')
    keys = item_keys(order.shopify_id, item, product_index)
    if unit_index < 0 or unit_index >= len(keys):
        raise ValueError('Unit index out of range')
    return keys[unit_index]


def _check_row(*, shop_id: int, key: VariantKey, checked: bool) -> LineItemCheck:
    return LineItemCheck(
        id=key.digest,
        legacy_id=key.legacy_id,
        shop_id=shop_id,
        order_id=key.order_id,
        sku=key.sku,
        color=key.color,
        size=key.size,
        product_index=key.product_index,
        unit_index=key.unit_index,
        checked=checked,
        updated_at=_now(),
    )


def upsert_check(db: Session, *, shop_id: int, key: VariantKey, checked: bool) -> LineItemCheck:
    row = db.get(LineItemCheck, key.digest)
    if row is None:
        row = _check_row(shop_id=shop_id, key=key, checked=checked)
        db.add(row)
    elif row.shop_id != shop_id:
        raise ValueError('Checklist entry belongs to another shop')
    else:
        row.checked = checked
        row.updated_at = _now()
    db.flush()
    return row


def is_unit_checked(db: Session, *, shop_id: int, key: VariantKey) -> bool:
    row = db.get(LineItemCheck, key.digest)
    return bool(row is not None and row.shop_id == shop_id and row.checked)


def checked_digests(db: Session, *, shop_id: int, order_id: str) -> set[str]:
    return set(
        db.execute(
            select(LineItemCheck.id).where(
                LineItemCheck.shop_id == shop_id,
                LineItemCheck.order_id == order_id,
                LineItemCheck.checked.is_(True),
            )
        ).scalars().all()
    )


def checked_lookup(db: Session, *, shop_id: int, order_id: str) -> Callable[[VariantKey], bool]:
    digests = checked_digests(db, shop_id=shop_id, order_id=order_id)
    return lambda key: key.digest in digests


def set_unit_checked(
    db: Session,
    *,
    shop_id: int,
    order: Order,
    product_index: int,
    unit_index: int,
    checked: bool,
) -> LineItemCheck:
    key = _unit_key(order, product_index=product_index, unit_index=unit_index)
    return upsert_check(db, shop_id=shop_id, key=key, checked=checked)


def toggle_unit(db: Session, *, shop_id: int, order: Order, product_index: int, unit_index: int) -> LineItemCheck:
    key = _unit_key(order, product_index=product_index, unit_index=unit_index)
    current = is_unit_checked(db, shop_id=shop_id, key=key)
    return upsert_check(db, shop_id=shop_id, key=key, checked=not current)


def init_checks_for_order(db: Session, *, shop_id: int, order: Order) -> int:
    existing = set(
        db.execute(
            select(LineItemCheck.id).where(
                LineItemCheck.shop_id == shop_id,
                LineItemCheck.order_id == order.shopify_id,
            )
        ).scalars().all()
    )
    created = 0
    for unit in order_units(order):
        if unit.key.digest in existing:
            continue
        db.add(_check_row(shop_id=shop_id, key=unit.key, checked=False))
        existing.add(unit.key.digest)
        created += 1
    db.flush()
    return created


def set_all_checked(db: Session, *, shop_id: int, order: Order, checked: bool) -> int:
    units = order_units(order)
    for unit in units:
        upsert_check(db, shop_id=shop_id, key=unit.key, checked=checked)
    return len(units)


def list_unit_states(db: Session, *, shop_id: int, order: Order) -> list[dict]:
    digests = checked_digests(db, shop_id=shop_id, order_id=order.shopify_id)
    return [
        {
            'id': unit.key.digest,
            'legacy_id': unit.key.legacy_id,
            'sku': unit.key.sku,
            'color': unit.key.color,
            'size': unit.key.size,
            'product_index': unit.key.product_index,
            'unit_index': unit.key.unit_index,
            'title': unit.item.title,
            'checked': unit.key.digest in digests,
        }
        for unit in order_units(order)
    ]


def list_unchecked_grouped(db: Session, *, shop_id: int, orders: Sequence[Order]) -> list[dict]:
    grouped: dict[tuple[str, str, str], dict] = {}
    for order in orders:
        digests = checked_digests(db, shop_id=shop_id, order_id=order.shopify_id)
        for unit in order_units(order):
            if unit.key.digest in digests:
                continue
            entry = grouped.setdefault(
                unit.key.group,
                {
                    'sku': unit.key.sku,
                    'color': unit.key.color,
                    'size': unit.key.size,
                    'title': unit.item.title,
                    'quantity': 0,
                    'orders': [],
                },
            )
            entry['quantity'] += 1
            if order.name not in entry['orders']:
                entry['orders'].append(order.name)
    return sorted(
        grouped.values(),
        key=lambda row: variant_sort_key(sku=row['sku'], color=row['color'], size=row['size']),
    )


def delete_checks_for_order(db: Session, *, shop_id: int, order_id: str) -> int:
    result = db.execute(
        delete(LineItemCheck).where(
            LineItemCheck.shop_id == shop_id,
            LineItemCheck.order_id == order_id,
        )
    )
    db.flush()
    return result.rowcount or 0


def purge_and_recalculate(db: Session, *, shop_id: int, order: Order) -> ProgressCount:
    rows = db.execute(
        select(LineItemCheck).where(
            LineItemCheck.shop_id == shop_id,
            LineItemCheck.order_id == order.shopify_id,
        )
    ).scalars().all()
    checked_by_group: dict[tuple[str, str, str], int] = {}
    for row in rows:
        if row.checked:
            group = (row.sku, row.color, row.size)
            checked_by_group[group] = checked_by_group.get(group, 0) + 1

    for row in rows:
        db.delete(row)
    db.flush()
    removed = len(rows)

    remaining = dict(checked_by_group)
    for unit in order_units(order):
        group = unit.key.group
        checked = remaining.get(group, 0) > 0
        if checked:
            remaining[group] -= 1
        db.add(_check_row(shop_id=shop_id, key=unit.key, checked=checked))
    db.flush()

    dropped = sum(count for count in remaining.values() if count > 0)
    logger.info(
        'checklist_recalculated',
        order_id=order.shopify_id,
        removed=removed,
        dropped_checked=dropped,
    )
    return order_progress(db, shop_id=shop_id, order=order)
