from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from atelier.db import get_db
from atelier.dependencies import get_session_factory
from atelier.main import app
from atelier.models import AuditLog, Base, Order, Shop
from atelier.services.shopify_client import ShopifyApiError
from atelier.services.stream_events import DONE_MESSAGE, parse_event_line


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        self.addCleanup(self.engine.dispose)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        def override_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_session_factory] = lambda: self.session_factory
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

        with self.session_factory() as db:
            shop = Shop(name='Atelier', shopify_url='atelier.myshopify.com', shopify_token='token')
            db.add(shop)
            db.flush()
            db.add(
                Order(
                    shop_id=shop.id,
                    shopify_id='gid://shopify/Order/501',
                    name='#501',
                    order_number='501',
                    created_at=datetime.now(tz=timezone.utc),
                    line_items=[
                        {
                            'sku': 'CREATOR',
                            'title': 'Creator Tee',
                            'variantTitle': 'Terra Cotta / M',
                            'quantity': 3,
                            'refundableQuantity': 3,
                        }
                    ],
                )
            )
            db.commit()
            self.shop_id = shop.id

    def test_missing_shop_id_is_rejected(self) -> None:
        response = self.client.get('/orders')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'Shop ID is required'})

    def test_unknown_shop_is_not_found(self) -> None:
        response = self.client.get('/orders', params={'shopId': 999})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'Shop not found'})

    def test_orders_list_includes_progress(self) -> None:
        response = self.client.get('/orders', params={'shopId': self.shop_id})

        self.assertEqual(response.status_code, 200)
        (row,) = response.json()['data']
        self.assertEqual(row['id'], 'gid://shopify/Order/501')
        self.assertEqual(row['progress']['label'], '0/3')
        self.assertEqual(response.headers['X-Robots-Tag'], 'noindex, nofollow, noarchive')
        self.assertTrue(response.headers['X-Request-ID'])

    def test_request_id_is_echoed(self) -> None:
        response = self.client.get('/health', headers={'X-Request-ID': 'abc123'})

        self.assertEqual(response.json(), {'data': {'status': 'ok'}})
        self.assertEqual(response.headers['X-Request-ID'], 'abc123')

    def test_unknown_order_is_not_found(self) -> None:
        response = self.client.get('/checklist/404', params={'shopId': self.shop_id})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'Order not found'})

    def test_checking_units_drives_billing(self) -> None:
        created = self.client.post(
            '/price-rules',
            params={'shopId': self.shop_id},
            json={'search_string': 'CREATOR - Heritage Brown - M', 'price': '12'},
        )
        self.assertEqual(created.status_code, 200)

        empty = self.client.get('/billing/orders/501', params={'shopId': self.shop_id})
        self.assertEqual(empty.json()['data']['total'], 0)

        checked = self.client.post('/checklist/501/all', params={'shopId': self.shop_id}, json={'checked': True})
        self.assertEqual(checked.json()['data']['progress']['label'], '3/3')

        billed = self.client.get('/billing/orders/501', params={'shopId': self.shop_id})
        self.assertEqual(billed.json()['data']['subtotal'], 36)
        self.assertEqual(billed.json()['data']['total'], 40.5)

        toggled = self.client.post(
            '/checklist/501/units',
            params={'shopId': self.shop_id},
            json={'product_index': 0, 'unit_index': 2},
        )
        self.assertFalse(toggled.json()['data']['checked'])
        self.assertEqual(toggled.json()['data']['progress']['label'], '2/3')

    def test_bad_unit_index_is_a_client_error(self) -> None:
        response = self.client.post(
            '/checklist/501/units',
            params={'shopId': self.shop_id},
            json={'product_index': 0, 'unit_index': 7, 'checked': True},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'Unit index out of range'})

    def test_purge_is_audited(self) -> None:
        response = self.client.post('/checklist/501/purge', params={'shopId': self.shop_id})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['label'], '0/3')
        with self.session_factory() as db:
            actions = db.execute(select(AuditLog.action)).scalars().all()
        self.assertEqual(actions, ['CHECKLIST_RECALCULATED'])

    def test_invalid_week_key(self) -> None:
        response = self.client.get('/billing/weeks/last-week', params={'shopId': self.shop_id})

        self.assertEqual(response.status_code, 400)

    def test_unknown_price_rule_update_is_not_found(self) -> None:
        response = self.client.patch('/price-rules/42', params={'shopId': self.shop_id}, json={'price': '3'})

        self.assertEqual(response.status_code, 404)

    @patch('atelier.services.shopify_client.ShopifyClient.graphql')
    def test_cost_rule_stream_reports_shopify_errors(self, graphql_mock) -> None:
        graphql_mock.side_effect = ShopifyApiError('Shopify API error 401: invalid token', status=401)
        created = self.client.post(
            '/cost-rules',
            params={'shopId': self.shop_id},
            json={'sku': 'CREATOR', 'base_price': '8.50'},
        )
        rule_id = created.json()['data']['id']

        response = self.client.get(f'/cost-rules/{rule_id}/apply-stream', params={'shopId': self.shop_id})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers['content-type'].startswith('text/event-stream'))
        records = [parse_event_line(line) for line in response.text.split('\n\n') if line.strip()]
        self.assertEqual(records[-2]['type'], 'error')
        self.assertIn('invalid token', records[-2]['message'])
        self.assertEqual(records[-1]['message'], DONE_MESSAGE)

    def test_supplier_order_lifecycle(self) -> None:
        created = self.client.post('/suppliers/orders', params={'shopId': self.shop_id}, json={'note': 'spring'})
        order_id = created.json()['data']['id']
        self.assertEqual(created.json()['data']['order_number'], 'BATCH-0001')

        patched = self.client.patch(
            f'/suppliers/orders/{order_id}',
            params={'shopId': self.shop_id},
            json={'status': 'REQUESTED', 'balance_adjustment': '10'},
        )
        self.assertEqual(patched.json()['data']['status'], 'REQUESTED')
        self.assertEqual(patched.json()['data']['total_ttc'], 12.0)

        missing = self.client.post(
            f'/suppliers/orders/{order_id}/items',
            params={'shopId': self.shop_id},
            json={'items': [{'variant_id': 12345, 'quantity': 1}]},
        )
        self.assertEqual(missing.status_code, 404)

        listed = self.client.get('/suppliers/orders', params={'shopId': self.shop_id})
        self.assertEqual(listed.json()['data'][0]['items_count'], 0)

    def test_settings_round_trip(self) -> None:
        updated = self.client.patch('/settings/shop', params={'shopId': self.shop_id}, json={'handling_fee': '5.00'})
        self.assertEqual(updated.json()['data']['handling_fee'], 5.0)

        colors = self.client.put(
            '/settings/colors',
            params={'shopId': self.shop_id},
            json={'source_name': 'Terra Cotta', 'canonical_name': 'Rust'},
        )
        self.assertEqual(colors.status_code, 200)

        listed = self.client.get('/settings/colors', params={'shopId': self.shop_id}).json()['data']
        self.assertIn({'source_name': 'Terra Cotta', 'canonical_name': 'Rust', 'builtin': True}, listed)

        rule = self.client.post(
            '/settings/pricing-rules',
            params={'shopId': self.shop_id},
            json={'rule_type': 'SURCHARGE', 'price_value': '2'},
        )
        self.assertEqual(rule.status_code, 400)
        self.assertEqual(rule.json(), {'error': 'Surcharge rules need a condition'})


class MissingTableTests(unittest.TestCase):
    def test_list_endpoints_tolerate_missing_tables(self) -> None:
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        self.addCleanup(engine.dispose)
        Shop.__table__.create(engine)
        session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        with session_factory() as db:
            shop = Shop(name='Atelier', shopify_url='atelier.myshopify.com', shopify_token='token')
            db.add(shop)
            db.commit()
            shop_id = shop.id

        def override_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_db
        self.addCleanup(app.dependency_overrides.clear)
        client = TestClient(app)

        for path in ('/orders', '/price-rules', '/cost-rules', '/suppliers/orders', '/inventory'):
            response = client.get(path, params={'shopId': shop_id})
            self.assertEqual(response.status_code, 200, path)
            self.assertEqual(response.json(), {'data': []}, path)


if __name__ == '__main__':
    unittest.main()
