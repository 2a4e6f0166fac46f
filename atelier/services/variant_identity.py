from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass

from atelier.services.color_service import extract_color, extract_size
from atelier.services.line_items import LineItem

ID_DELIMITER = '--'
NO_COLOR = 'no-color'
NO_SIZE = 'no-size'


@dataclass(frozen=True)
class VariantKey:
    order_id: str
    sku: str
    color: str
    size: str
    product_index: int
    unit_index: int

    def __post_init__(self) -> None:
        if not (self.order_id or '').strip():
            raise ValueError('Order id cannot be empty')
        if not (self.sku or '').strip():
            raise ValueError('SKU cannot be empty')
        if self.product_index < 0 or self.unit_index < 0:
            raise ValueError('Indexes must be non-negative')

    @classmethod
    def build(
        cls,
        order_id: str,
        sku: str | None,
        color: str | None,
        size: str | None,
        product_index: int,
        unit_index: int,
    ) -> VariantKey:
        return cls(
            order_id=(order_id or '').strip(),
            sku=(sku or '').strip(),
            color=(color or '').strip() or NO_COLOR,
            size=(size or '').strip() or NO_SIZE,
            product_index=product_index,
            unit_index=unit_index,
        )

    def parts(self) -> tuple[str, str, str, str, int, int]:
        return (self.order_id, self.sku, self.color, self.size, self.product_index, self.unit_index)

    @property
    def legacy_id(self) -> str:
        return ID_DELIMITER.join(str(part) for part in self.parts())

    @property
    def digest(self) -> str:
        encoded = json.dumps(list(self.parts()), ensure_ascii=False, separators=(',', ':'))
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    @property
    def group(self) -> tuple[str, str, str]:
        return (self.sku, self.color, self.size)


@dataclass(frozen=True)
class VariantUnit:
    key: VariantKey
    item: LineItem


def generate_variant_id(
    order_id: str,
    sku: str | None,
    color: str | None,
    size: str | None,
    product_index: int,
    unit_index: int,
) -> str:
    return VariantKey.build(order_id, sku, color, size, product_index, unit_index).legacy_id


def item_group(item: LineItem) -> tuple[str, str, str]:
    return (
        (item.sku or '').strip(),
        (extract_color(item) or '').strip() or NO_COLOR,
        (extract_size(item) or '').strip() or NO_SIZE,
    )


def item_keys(order_id: str, item: LineItem, product_index: int) -> list[VariantKey]:
    if not item.sku or item.is_cancelled:
        return []
    color = extract_color(item)
    size = extract_size(item)
    return [
        VariantKey.build(order_id, item.sku, color, size, product_index, unit_index)
        for unit_index in range(max(item.quantity, 0))
    ]


def expand_order_units(order_id: str, line_items: Sequence[LineItem]) -> list[VariantUnit]:
    units: list[VariantUnit] = []
    for product_index, item in enumerate(line_items):
        units.extend(VariantUnit(key=key, item=item) for key in item_keys(order_id, item, product_index))
    return units


def global_unit_index(line_items: Sequence[LineItem], product_index: int) -> int:
    if product_index < 0 or product_index >= len(line_items):
        raise ValueError('Line item index out of range')
    current = line_items[product_index]
    if not current.sku:
        return 0
    target = item_group(current)
    return sum(
        max(item.quantity, 0)
        for item in line_items[:product_index]
        if item.sku and not item.is_cancelled and item_group(item) == target
    )
