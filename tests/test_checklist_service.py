from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from atelier.errors import NotFoundError
from atelier.models import Base, LineItemCheck, Order, Shop
from atelier.services.checklist_service import (
    delete_checks_for_order,
    get_order,
    init_checks_for_order,
    list_unchecked_grouped,
    list_unit_states,
    purge_and_recalculate,
    set_all_checked,
    set_unit_checked,
    toggle_unit,
    upsert_check,
)
from atelier.services.line_items import line_items_from_payload
from atelier.services.order_sync_service import cleanup_old_orders
from atelier.services.progress_service import group_progress, order_progress, orders_progress, total_unit_count
from atelier.services.variant_identity import VariantKey

ORDER_ID = 'gid://shopify/Order/3003'


def _line(sku: str | None, variant_title: str, quantity: int, refundable: int | None = None) -> dict:
    return {
        'sku': sku,
        'title': f'{sku} tee',
        'variantTitle': variant_title,
        'quantity': quantity,
        'refundableQuantity': quantity if refundable is None else refundable,
    }


class ChecklistServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
        self.addCleanup(engine.dispose)
        self.addCleanup(self.db.close)

        self.shop = Shop(name='Atelier', shopify_url='atelier.myshopify.com', shopify_token='token')
        self.db.add(self.shop)
        self.db.flush()
        self.order = self._order(ORDER_ID, [_line('A', 'Black / M', 2)])

    def _order(self, shopify_id: str, lines: list[dict], *, created_at: datetime | None = None) -> Order:
        order = Order(
            shop_id=self.shop.id,
            shopify_id=shopify_id,
            name=f"#{shopify_id.rsplit('/', 1)[-1]}",
            order_number=shopify_id.rsplit('/', 1)[-1],
            created_at=created_at or datetime.now(tz=timezone.utc),
            line_items=lines,
        )
        self.db.add(order)
        self.db.flush()
        return order

    def test_get_order_unknown_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            get_order(self.db, shop_id=self.shop.id, order_id='gid://shopify/Order/404')

    def test_toggle_creates_then_flips(self) -> None:
        first = toggle_unit(self.db, shop_id=self.shop.id, order=self.order, product_index=0, unit_index=1)
        self.assertTrue(first.checked)

        second = toggle_unit(self.db, shop_id=self.shop.id, order=self.order, product_index=0, unit_index=1)

        self.assertIs(first, second)
        self.assertFalse(second.checked)
        self.assertEqual(first.legacy_id, f'{ORDER_ID}--A--Black--M--0--1')

    def test_out_of_range_unit_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, 'Unit index out of range'):
            set_unit_checked(self.db, shop_id=self.shop.id, order=self.order, product_index=0, unit_index=2, checked=True)
        with self.assertRaisesRegex(ValueError, 'Line item index out of range'):
            set_unit_checked(self.db, shop_id=self.shop.id, order=self.order, product_index=3, unit_index=0, checked=True)

    def test_cancelled_item_cannot_be_checked(self) -> None:
        order = self._order('gid://shopify/Order/3010', [_line('B', 'White / S', 2, refundable=1)])

        with self.assertRaisesRegex(ValueError, 'cancelled'):
            toggle_unit(self.db, shop_id=self.shop.id, order=order, product_index=0, unit_index=0)

    def test_init_is_idempotent(self) -> None:
        self.assertEqual(init_checks_for_order(self.db, shop_id=self.shop.id, order=self.order), 2)
        self.assertEqual(init_checks_for_order(self.db, shop_id=self.shop.id, order=self.order), 0)

        progress = order_progress(self.db, shop_id=self.shop.id, order=self.order)
        self.assertEqual(progress.label, '0/2')

    def test_progress_ignores_cancelled_items(self) -> None:
        order = self._order(
            'gid://shopify/Order/3011',
            [_line('A', 'Black / M', 2), _line('B', 'White / S', 3, refundable=0)],
        )
        set_all_checked(self.db, shop_id=self.shop.id, order=order, checked=True)
        self.db.flush()

        progress = order_progress(self.db, shop_id=self.shop.id, order=order)

        self.assertEqual(progress.label, '2/2')
        self.assertTrue(progress.is_complete)

    def test_group_progress_and_unit_states(self) -> None:
        order = self._order(
            'gid://shopify/Order/3012',
            [_line('A', 'Black / L', 1), _line('A', 'Black / S', 2)],
        )
        set_unit_checked(self.db, shop_id=self.shop.id, order=order, product_index=1, unit_index=0, checked=True)
        self.db.flush()

        groups = group_progress(self.db, shop_id=self.shop.id, order=order)
        states = list_unit_states(self.db, shop_id=self.shop.id, order=order)

        self.assertEqual([(row.size, row.progress.label) for row in groups], [('S', '1/2'), ('L', '0/1')])
        self.assertEqual([row['checked'] for row in states], [False, True, False])

    def test_purge_keeps_checked_count_per_group(self) -> None:
        stale = VariantKey.build(ORDER_ID, 'A', 'Black', 'M', 7, 4)
        upsert_check(self.db, shop_id=self.shop.id, key=stale, checked=True)
        self.db.flush()

        progress = purge_and_recalculate(self.db, shop_id=self.shop.id, order=self.order)

        self.assertEqual(progress.label, '1/2')
        rows = self.db.execute(
            select(LineItemCheck).where(LineItemCheck.order_id == ORDER_ID).order_by(LineItemCheck.unit_index)
        ).scalars().all()
        self.assertEqual([(row.product_index, row.unit_index, row.checked) for row in rows], [(0, 0, True), (0, 1, False)])

    def test_purge_drops_checks_for_vanished_groups(self) -> None:
        gone = VariantKey.build(ORDER_ID, 'Z', 'Red', 'XL', 0, 0)
        upsert_check(self.db, shop_id=self.shop.id, key=gone, checked=True)
        self.db.flush()

        progress = purge_and_recalculate(self.db, shop_id=self.shop.id, order=self.order)

        self.assertEqual(progress.label, '0/2')

    def test_production_list_groups_unchecked_units(self) -> None:
        other = self._order('gid://shopify/Order/3013', [_line('A', 'Black / M', 1), _line(None, 'Gift', 1)])
        set_unit_checked(self.db, shop_id=self.shop.id, order=self.order, product_index=0, unit_index=0, checked=True)
        self.db.flush()

        rows = list_unchecked_grouped(self.db, shop_id=self.shop.id, orders=[self.order, other])

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['quantity'], 2)
        self.assertEqual(rows[0]['orders'], ['#3003', '#3013'])

    def test_items_without_sku_carry_no_checkbox(self) -> None:
        order = self._order('gid://shopify/Order/3014', [_line('A', 'Black / M', 1), _line(None, 'Black / S', 1)])

        touched = set_all_checked(self.db, shop_id=self.shop.id, order=order, checked=True)
        self.db.flush()

        self.assertEqual(touched, 1)
        self.assertEqual(total_unit_count(line_items_from_payload(order.line_items)), 1)
        progress = order_progress(self.db, shop_id=self.shop.id, order=order)
        self.assertEqual(progress.label, '1/1')
        self.assertTrue(progress.is_complete)
        self.assertEqual(purge_and_recalculate(self.db, shop_id=self.shop.id, order=order).label, '1/1')

    def test_refunded_units_leave_progress(self) -> None:
        set_all_checked(self.db, shop_id=self.shop.id, order=self.order, checked=True)
        self.db.flush()
        self.assertEqual(order_progress(self.db, shop_id=self.shop.id, order=self.order).label, '2/2')

        self.order.line_items = [_line('A', 'Black / M', 2, refundable=0)]
        self.db.flush()

        progress = order_progress(self.db, shop_id=self.shop.id, order=self.order)
        self.assertEqual(progress.label, '0/0')
        self.assertFalse(progress.is_complete)
        self.assertEqual(orders_progress(self.db, shop_id=self.shop.id, orders=[self.order])[ORDER_ID].label, '0/0')
        self.assertEqual(group_progress(self.db, shop_id=self.shop.id, order=self.order), [])

    def test_removed_line_items_leave_progress(self) -> None:
        order = self._order('gid://shopify/Order/3015', [_line('A', 'Black / M', 1), _line('B', 'White / S', 1)])
        set_all_checked(self.db, shop_id=self.shop.id, order=order, checked=True)
        self.db.flush()

        order.line_items = [_line('B', 'White / S', 1)]
        self.db.flush()

        self.assertEqual(order_progress(self.db, shop_id=self.shop.id, order=order).label, '0/1')
        self.assertEqual(purge_and_recalculate(self.db, shop_id=self.shop.id, order=order).label, '1/1')

    def test_delete_checks_for_order(self) -> None:
        init_checks_for_order(self.db, shop_id=self.shop.id, order=self.order)

        self.assertEqual(delete_checks_for_order(self.db, shop_id=self.shop.id, order_id=ORDER_ID), 2)

    def test_cleanup_removes_old_orders_and_checks(self) -> None:
        now = datetime(2024, 9, 1, tzinfo=timezone.utc)
        old = self._order('gid://shopify/Order/1', [_line('A', 'Black / M', 1)], created_at=now - timedelta(days=200))
        init_checks_for_order(self.db, shop_id=self.shop.id, order=old)
        self.order.created_at = now - timedelta(days=10)
        self.db.flush()

        removed = cleanup_old_orders(self.db, shop_id=self.shop.id, now=now)

        self.assertEqual(removed, 1)
        remaining = self.db.execute(select(Order.shopify_id)).scalars().all()
        self.assertEqual(remaining, [ORDER_ID])
        self.assertEqual(
            self.db.execute(select(LineItemCheck).where(LineItemCheck.order_id == old.shopify_id)).scalars().all(),
            [],
        )


if __name__ == '__main__':
    unittest.main()
