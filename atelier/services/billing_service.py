from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.logging import get_logger
from atelier.models import BillingBalance, BillingInvoice, BillingNote, BillingScope, Order, Shop
from atelier.services.checklist_service import checked_lookup
from atelier.services.line_items import LineItem, line_items_from_payload
from atelier.services.price_rule_service import SearchRule, calculate_item_price, format_item_descriptor, list_price_rules
from atelier.services.variant_identity import VariantKey, item_keys

logger = get_logger(__name__)

ZERO = Decimal('0')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class OrderTotal:
    order_id: str
    subtotal: Decimal
    handling_fee: Decimal
    balance: Decimal

    @property
    def total(self) -> Decimal:
        if self.subtotal <= ZERO:
            return self.balance
        return self.subtotal + self.handling_fee + self.balance

    def as_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'subtotal': self.subtotal,
            'handling_fee': self.handling_fee if self.subtotal > ZERO else ZERO,
            'balance': self.balance,
            'total': self.total,
        }


@dataclass(frozen=True)
class PeriodTotal:
    scope: BillingScope
    period_key: str
    orders_total: Decimal
    balance: Decimal
    order_count: int

    @property
    def total(self) -> Decimal:
        return self.orders_total + self.balance

    def as_dict(self) -> dict:
        return {
            'scope': self.scope.value,
            'period_key': self.period_key,
            'orders_total': self.orders_total,
            'balance': self.balance,
            'order_count': self.order_count,
            'total': self.total,
        }


def week_key(value: date | datetime) -> str:
    year, week, _ = value.isocalendar()
    return f'{year}-W{week:02d}'


def month_key(value: date | datetime) -> str:
    return f'{value.year:04d}-{value.month:02d}'


def parse_week_key(key: str) -> tuple[datetime, datetime]:
    try:
        year_raw, week_raw = key.split('-W', 1)
        start = date.fromisocalendar(int(year_raw), int(week_raw), 1)
    except ValueError as exc:
        raise ValueError('Invalid week key, expected YYYY-Www') from exc
    begin = datetime.combine(start, time.min, tzinfo=timezone.utc)
    return begin, begin + timedelta(days=7)


def parse_month_key(key: str) -> tuple[datetime, datetime]:
    try:
        year_raw, month_raw = key.split('-', 1)
        start = date(int(year_raw), int(month_raw), 1)
    except ValueError as exc:
        raise ValueError('Invalid month key, expected YYYY-MM') from exc
    end = date(start.year + 1, 1, 1) if start.month == 12 else date(start.year, start.month + 1, 1)
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.min, tzinfo=timezone.utc),
    )


def shop_handling_fee(shop: Shop | None) -> Decimal:
    if shop is not None and shop.handling_fee is not None:
        return Decimal(shop.handling_fee)
    return settings.handling_fee


def _checked_units(order_id: str, item: LineItem, product_index: int, is_checked: Callable[[VariantKey], bool]) -> int:
    count = 0
    for key in item_keys(order_id, item, product_index):
        try:
            if is_checked(key):
                count += 1
        except Exception:
            logger.warning('checked_lookup_failed', variant_id=key.legacy_id, exc_info=True)
    return count


def calculate_subtotal(
    order_id: str,
    line_items: Sequence[LineItem],
    rules: Iterable[SearchRule],
    *,
    is_checked: Callable[[VariantKey], bool],
    color_overrides: Mapping[str, str] | None = None,
) -> Decimal:
    rules = list(rules)
    subtotal = ZERO
    for product_index, item in enumerate(line_items):
        if not item.sku or item.is_cancelled:
            continue
        checked = _checked_units(order_id, item, product_index, is_checked)
        if checked == 0:
            continue
        unit_price = calculate_item_price(format_item_descriptor(item, color_overrides), rules)
        subtotal += unit_price * checked
    return subtotal


def calculate_order_total(
    order_id: str,
    line_items: Sequence[LineItem],
    rules: Iterable[SearchRule],
    *,
    is_checked: Callable[[VariantKey], bool],
    handling_fee: Decimal,
    color_overrides: Mapping[str, str] | None = None,
) -> Decimal:
    subtotal = calculate_subtotal(
        order_id,
        line_items,
        rules,
        is_checked=is_checked,
        color_overrides=color_overrides,
    )
    if subtotal <= ZERO:
        return ZERO
    return subtotal + handling_fee


def order_total_breakdown(
    order_id: str,
    line_items: Sequence[LineItem],
    rules: Iterable[SearchRule],
    *,
    is_checked: Callable[[VariantKey], bool],
    handling_fee: Decimal,
    balance: Decimal = ZERO,
    color_overrides: Mapping[str, str] | None = None,
) -> OrderTotal:
    return OrderTotal(
        order_id=order_id,
        subtotal=calculate_subtotal(
            order_id,
            line_items,
            rules,
            is_checked=is_checked,
            color_overrides=color_overrides,
        ),
        handling_fee=handling_fee,
        balance=balance,
    )


def period_total(order_totals: Iterable[Decimal], balance: Decimal = ZERO) -> Decimal:
    return sum(order_totals, ZERO) + balance


def _balances(db: Session, *, shop_id: int, scope: BillingScope, keys: Sequence[str]) -> dict[str, Decimal]:
    if not keys:
        return {}
    rows = db.execute(
        select(BillingBalance.period_key, BillingBalance.amount).where(
            BillingBalance.shop_id == shop_id,
            BillingBalance.scope == scope,
            BillingBalance.period_key.in_(list(keys)),
        )
    ).all()
    return {key: Decimal(amount) for key, amount in rows}


def compute_order_totals(
    db: Session,
    *,
    shop: Shop,
    orders: Sequence[Order],
    color_overrides: Mapping[str, str] | None = None,
) -> dict[str, OrderTotal]:
    rules = list_price_rules(db, shop_id=shop.id, active_only=True)
    fee = shop_handling_fee(shop)
    balances = _balances(db, shop_id=shop.id, scope=BillingScope.ORDER, keys=[order.shopify_id for order in orders])
    totals: dict[str, OrderTotal] = {}
    for order in orders:
        totals[order.shopify_id] = order_total_breakdown(
            order.shopify_id,
            line_items_from_payload(order.line_items),
            rules,
            is_checked=checked_lookup(db, shop_id=shop.id, order_id=order.shopify_id),
            handling_fee=fee,
            balance=balances.get(order.shopify_id, ZERO),
            color_overrides=color_overrides,
        )
    return totals


def orders_in_range(db: Session, *, shop_id: int, start: datetime, end: datetime) -> list[Order]:
    return db.execute(
        select(Order)
        .where(Order.shop_id == shop_id, Order.created_at >= start, Order.created_at < end)
        .order_by(Order.created_at.asc())
    ).scalars().all()


def _period_total(
    db: Session,
    *,
    shop: Shop,
    scope: BillingScope,
    period_key: str,
    start: datetime,
    end: datetime,
    color_overrides: Mapping[str, str] | None,
) -> PeriodTotal:
    orders = orders_in_range(db, shop_id=shop.id, start=start, end=end)
    totals = compute_order_totals(db, shop=shop, orders=orders, color_overrides=color_overrides)
    balance = _balances(db, shop_id=shop.id, scope=scope, keys=[period_key]).get(period_key, ZERO)
    return PeriodTotal(
        scope=scope,
        period_key=period_key,
        orders_total=period_total(row.total for row in totals.values()),
        balance=balance,
        order_count=len(orders),
    )


def week_total(
    db: Session,
    *,
    shop: Shop,
    period_key: str,
    color_overrides: Mapping[str, str] | None = None,
) -> PeriodTotal:
    start, end = parse_week_key(period_key)
    return _period_total(
        db,
        shop=shop,
        scope=BillingScope.WEEK,
        period_key=period_key,
        start=start,
        end=end,
        color_overrides=color_overrides,
    )


def month_total(
    db: Session,
    *,
    shop: Shop,
    period_key: str,
    color_overrides: Mapping[str, str] | None = None,
) -> PeriodTotal:
    start, end = parse_month_key(period_key)
    return _period_total(
        db,
        shop=shop,
        scope=BillingScope.MONTH,
        period_key=period_key,
        start=start,
        end=end,
        color_overrides=color_overrides,
    )


def _validate_period_key(scope: BillingScope, period_key: str) -> str:
    key = (period_key or '').strip()
    if not key:
        raise ValueError('Period key is required')
    if scope == BillingScope.WEEK:
        parse_week_key(key)
    elif scope == BillingScope.MONTH:
        parse_month_key(key)
    return key


def set_billing_note(db: Session, *, shop_id: int, scope: BillingScope, period_key: str, note: str) -> BillingNote | None:
    key = _validate_period_key(scope, period_key)
    row = db.execute(
        select(BillingNote).where(
            BillingNote.shop_id == shop_id,
            BillingNote.scope == scope,
            BillingNote.period_key == key,
        )
    ).scalar_one_or_none()
    text = (note or '').strip()
    if not text:
        if row is not None:
            db.delete(row)
            db.flush()
        return None
    if row is None:
        row = BillingNote(shop_id=shop_id, scope=scope, period_key=key, note=text)
        db.add(row)
    else:
        row.note = text
        row.updated_at = _now()
    db.flush()
    return row


def set_invoiced(db: Session, *, shop_id: int, scope: BillingScope, period_key: str, invoiced: bool) -> BillingInvoice:
    key = _validate_period_key(scope, period_key)
    row = db.execute(
        select(BillingInvoice).where(
            BillingInvoice.shop_id == shop_id,
            BillingInvoice.scope == scope,
            BillingInvoice.period_key == key,
        )
    ).scalar_one_or_none()
    if row is None:
        row = BillingInvoice(shop_id=shop_id, scope=scope, period_key=key, invoiced=invoiced)
        db.add(row)
    else:
        row.invoiced = invoiced
        row.updated_at = _now()
    db.flush()
    return row


def set_balance(db: Session, *, shop_id: int, scope: BillingScope, period_key: str, amount: Decimal) -> BillingBalance:
    key = _validate_period_key(scope, period_key)
    row = db.execute(
        select(BillingBalance).where(
            BillingBalance.shop_id == shop_id,
            BillingBalance.scope == scope,
            BillingBalance.period_key == key,
        )
    ).scalar_one_or_none()
    if row is None:
        row = BillingBalance(shop_id=shop_id, scope=scope, period_key=key, amount=amount)
        db.add(row)
    else:
        row.amount = amount
        row.updated_at = _now()
    db.flush()
    return row


def billing_status(db: Session, *, shop_id: int, scope: BillingScope, period_keys: Sequence[str]) -> dict[str, dict]:
    keys = list(period_keys)
    status = {key: {'note': None, 'invoiced': False, 'balance': ZERO} for key in keys}
    if not keys:
        return status
    for row in db.execute(
        select(BillingNote).where(
            BillingNote.shop_id == shop_id, BillingNote.scope == scope, BillingNote.period_key.in_(keys)
        )
    ).scalars():
        status[row.period_key]['note'] = row.note
    for row in db.execute(
        select(BillingInvoice).where(
            BillingInvoice.shop_id == shop_id, BillingInvoice.scope == scope, BillingInvoice.period_key.in_(keys)
        )
    ).scalars():
        status[row.period_key]['invoiced'] = row.invoiced
    for key, amount in _balances(db, shop_id=shop_id, scope=scope, keys=keys).items():
        status[key]['balance'] = amount
    return status
