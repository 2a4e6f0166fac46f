from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.models import LineItemCheck, Order
from atelier.services.line_items import LineItem, line_items_from_payload
from atelier.services.sort_utils import variant_sort_key
from atelier.services.variant_identity import VariantUnit, expand_order_units


@dataclass(frozen=True)
class ProgressCount:
    checked_count: int
    total_count: int

    @property
    def label(self) -> str:
        return f'{self.checked_count}/{self.total_count}'

    @property
    def is_complete(self) -> bool:
        return self.total_count > 0 and self.checked_count >= self.total_count

    def as_dict(self) -> dict:
        return {
            'checked_count': self.checked_count,
            'total_count': self.total_count,
            'label': self.label,
            'is_complete': self.is_complete,
        }


@dataclass(frozen=True)
class GroupProgress:
    sku: str
    color: str
    size: str
    progress: ProgressCount

    def as_dict(self) -> dict:
        return {'sku': self.sku, 'color': self.color, 'size': self.size, **self.progress.as_dict()}


def total_unit_count(line_items: Iterable[LineItem]) -> int:
    """Units that carry a checkbox: every quantity of a non-cancelled line item with a SKU."""
    return sum(max(item.quantity, 0) for item in line_items if item.sku and not item.is_cancelled)


def _current_units(order: Order) -> list[VariantUnit]:
    return expand_order_units(order.shopify_id, line_items_from_payload(order.line_items))


def _checked_ids(db: Session, *, shop_id: int, order_ids: Sequence[str]) -> dict[str, set[str]]:
    checked: dict[str, set[str]] = {}
    for order_id, digest in db.execute(
        select(LineItemCheck.order_id, LineItemCheck.id).where(
            LineItemCheck.shop_id == shop_id,
            LineItemCheck.order_id.in_(order_ids),
            LineItemCheck.checked.is_(True),
        )
    ).all():
        checked.setdefault(order_id, set()).add(digest)
    return checked


def _progress(units: Sequence[VariantUnit], checked: set[str]) -> ProgressCount:
    # Rows of cancelled or removed units no longer match a current unit.
    return ProgressCount(
        checked_count=sum(1 for unit in units if unit.key.digest in checked),
        total_count=len(units),
    )


def order_progress(db: Session, *, shop_id: int, order: Order) -> ProgressCount:
    checked = _checked_ids(db, shop_id=shop_id, order_ids=[order.shopify_id])
    return _progress(_current_units(order), checked.get(order.shopify_id, set()))


def orders_progress(db: Session, *, shop_id: int, orders: Sequence[Order]) -> dict[str, ProgressCount]:
    if not orders:
        return {}
    checked = _checked_ids(db, shop_id=shop_id, order_ids=[order.shopify_id for order in orders])
    return {
        order.shopify_id: _progress(_current_units(order), checked.get(order.shopify_id, set()))
        for order in orders
    }


def group_progress(db: Session, *, shop_id: int, order: Order) -> list[GroupProgress]:
    checked = _checked_ids(db, shop_id=shop_id, order_ids=[order.shopify_id]).get(order.shopify_id, set())
    units_by_group: dict[tuple[str, str, str], list[VariantUnit]] = {}
    for unit in _current_units(order):
        units_by_group.setdefault(unit.key.group, []).append(unit)
    groups = [
        GroupProgress(sku=sku, color=color, size=size, progress=_progress(units, checked))
        for (sku, color, size), units in units_by_group.items()
    ]
    groups.sort(key=lambda row: variant_sort_key(sku=row.sku, color=row.color, size=row.size))
    return groups
