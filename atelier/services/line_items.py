from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

PRINT_FILE_METAFIELD = ('custom', 'fichier_d_impression')
VERSO_METAFIELD = ('custom', 'verso_impression')


@dataclass(frozen=True)
class SelectedOption:
    name: str
    value: str


@dataclass(frozen=True)
class LineItem:
    sku: str | None
    title: str
    variant_title: str | None
    quantity: int
    refundable_quantity: int | None = None
    unit_price: Decimal = Decimal('0')
    selected_options: tuple[SelectedOption, ...] = ()
    metafields: Mapping[tuple[str, str], str] = field(default_factory=dict)
    product_type: str | None = None
    variant_id: str | None = None

    @property
    def is_cancelled(self) -> bool:
        if self.refundable_quantity is None:
            return False
        return self.quantity > self.refundable_quantity

    def metafield(self, namespace: str, key: str) -> str | None:
        value = self.metafields.get((namespace, key))
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def option(self, *names: str) -> str | None:
        wanted = {name.lower() for name in names}
        for option in self.selected_options:
            if option.name.strip().lower() in wanted and option.value.strip():
                return option.value.strip()
        return None

    @property
    def print_file(self) -> str | None:
        return self.metafield(*PRINT_FILE_METAFIELD)

    @property
    def verso_file(self) -> str | None:
        return self.metafield(*VERSO_METAFIELD)


def _to_int(value, default: int | None = 0) -> int | None:
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_decimal(value) -> Decimal:
    if isinstance(value, Mapping):
        value = value.get('amount')
    if value is None or value == '':
        return Decimal('0')
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal('0')


def metafields_from_payload(raw) -> dict[tuple[str, str], str]:
    if isinstance(raw, Mapping):
        raw = raw.get('nodes') or [edge.get('node') for edge in raw.get('edges') or []]
    metafields: dict[tuple[str, str], str] = {}
    for entry in raw or []:
        if not isinstance(entry, Mapping):
            continue
        namespace = str(entry.get('namespace') or '').strip()
        key = str(entry.get('key') or '').strip()
        value = entry.get('value')
        if not namespace or not key or value is None:
            continue
        metafields[(namespace, key)] = str(value)
    return metafields


def metafields_to_payload(metafields: Mapping[tuple[str, str], str]) -> list[dict]:
    return [
        {'namespace': namespace, 'key': key, 'value': value}
        for (namespace, key), value in metafields.items()
    ]


def line_item_from_payload(payload: Mapping) -> LineItem:
    options = tuple(
        SelectedOption(name=str(opt.get('name') or ''), value=str(opt.get('value') or ''))
        for opt in payload.get('selectedOptions') or []
        if isinstance(opt, Mapping)
    )
    sku = (payload.get('sku') or '').strip() or None
    return LineItem(
        sku=sku,
        title=str(payload.get('title') or ''),
        variant_title=payload.get('variantTitle'),
        quantity=_to_int(payload.get('quantity')) or 0,
        refundable_quantity=_to_int(payload.get('refundableQuantity'), default=None),
        unit_price=_to_decimal(payload.get('price')),
        selected_options=options,
        metafields=metafields_from_payload(payload.get('metafields')),
        product_type=payload.get('productType'),
        variant_id=payload.get('variantId'),
    )


def line_items_from_payload(payloads: Iterable[Mapping] | None) -> list[LineItem]:
    return [line_item_from_payload(payload) for payload in payloads or [] if isinstance(payload, Mapping)]
