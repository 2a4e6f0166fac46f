from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import Mock

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from atelier.errors import NotFoundError
from atelier.models import Base, InventoryLevel, MetafieldDisplayRule, Product, ProductVariant, Shop, VariantMetafield
from atelier.services.inventory_sync_service import (
    list_inventory,
    push_inventory_levels,
    run_inventory_sync,
    set_local_quantity,
)
from atelier.services.shopify_client import ShopifyApiError

LOCATION_ID = '777'

PRODUCT = {
    'id': 10,
    'title': 'Creator Tee',
    'status': 'active',
    'options': [{'name': 'Couleur'}, {'name': 'Taille'}],
    'variants': [
        {'id': 101, 'title': 'Noir / M', 'sku': 'CREATOR', 'option1': 'Noir', 'option2': 'M', 'inventory_item_id': 9001, 'price': '25.00'},
        {'id': 102, 'title': 'Noir / L', 'sku': 'CREATOR', 'option1': 'Noir', 'option2': 'L', 'inventory_item_id': 9002, 'price': '25.00'},
    ],
}


def _fake_get(path: str, params: dict | None = None) -> dict:
    if path == 'inventory_items.json':
        return {'inventory_items': [{'id': 9001, 'cost': '8.40'}, {'id': 9002, 'cost': '8.90'}]}
    if path == 'inventory_levels.json':
        return {
            'inventory_levels': [
                {'inventory_item_id': 9001, 'location_id': 777, 'available': 4},
                {'inventory_item_id': 9002, 'location_id': 777, 'available': 2},
            ]
        }
    if path == 'variants/101/metafields.json':
        return {
            'metafields': [
                {'namespace': 'custom', 'key': 'fichier_d_impression', 'value': 'logo.png'},
                {'namespace': 'custom', 'key': 'internal', 'value': 'skip'},
            ]
        }
    if path == 'variants/102/metafields.json':
        raise ShopifyApiError('Shopify API error 500: boom', status=500)
    raise AssertionError(f'unexpected path {path}')


class InventorySyncTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        self.addCleanup(engine.dispose)
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
        self.addCleanup(self.db.close)
        self.shop = Shop(name='Atelier', shopify_url='atelier.myshopify.com', shopify_token='token')
        self.db.add(self.shop)
        self.db.flush()

    def _client(self) -> Mock:
        client = Mock()
        client.iter_pages.return_value = iter([[PRODUCT]])
        client.get.side_effect = _fake_get
        return client

    def test_full_sync_saves_catalog_costs_levels_and_displayed_metafields(self) -> None:
        self.db.add(MetafieldDisplayRule(shop_id=self.shop.id, metafield_key='custom.fichier_d_impression', display_name='Print'))
        self.db.flush()
        client = self._client()

        records = list(run_inventory_sync(self.db, shop_id=self.shop.id, location_id=LOCATION_ID, client_factory=lambda _shop: client))

        variants = {row.shopify_id: row for row in self.db.execute(select(ProductVariant)).scalars()}
        self.assertEqual(set(variants), {'101', '102'})
        self.assertEqual(variants['101'].cost, Decimal('8.40'))
        levels = {row.variant_id: row.quantity for row in self.db.execute(select(InventoryLevel)).scalars()}
        self.assertEqual(levels, {variants['101'].id: 4, variants['102'].id: 2})
        metafields = self.db.execute(select(VariantMetafield.key, VariantMetafield.value)).all()
        self.assertEqual([tuple(row) for row in metafields], [('fichier_d_impression', 'logo.png')])
        messages = [record.message for record in records]
        self.assertIn('1 variant metafields failed', messages)
        self.assertTrue(messages[-1].startswith('Sync finished: 1 products, 2 variants'))

    def test_failed_product_page_is_reported(self) -> None:
        client = Mock()

        def pages(*_args, **_kwargs):
            raise ShopifyApiError('Shopify API error 401: denied', status=401)
            yield []

        client.iter_pages.side_effect = pages
        records = list(run_inventory_sync(self.db, shop_id=self.shop.id, location_id=LOCATION_ID, client_factory=lambda _shop: client))

        self.assertEqual(records[3].type.value, 'error')
        self.assertIn('products page 1', records[3].message)
        self.assertEqual(self.db.execute(select(Product)).scalars().all(), [])

    def test_unknown_shop(self) -> None:
        with self.assertRaises(NotFoundError):
            list(run_inventory_sync(self.db, shop_id=999, location_id=LOCATION_ID, client_factory=lambda _shop: Mock()))

    def test_local_quantity_and_push(self) -> None:
        client = self._client()
        list(run_inventory_sync(self.db, shop_id=self.shop.id, location_id=LOCATION_ID, client_factory=lambda _shop: client))
        variant = self.db.execute(select(ProductVariant).where(ProductVariant.shopify_id == '101')).scalar_one()

        set_local_quantity(self.db, shop_id=self.shop.id, variant_id=variant.id, location_id=LOCATION_ID, quantity=11)
        rows = {row['sku'] + row['variant_title']: row['quantity'] for row in list_inventory(self.db, shop_id=self.shop.id, location_id=LOCATION_ID)}
        self.assertEqual(rows, {'CREATORNoir / L': 2, 'CREATORNoir / M': 11})

        push_client = Mock()
        push_client.post.side_effect = [{}, ShopifyApiError('Shopify API error 422: bad', status=422)]
        result = push_inventory_levels(self.db, shop=self.shop, location_id=LOCATION_ID, client=push_client)

        self.assertEqual(len(result.succeeded), 1)
        self.assertEqual(len(result.failed), 1)
        first_payload = push_client.post.call_args_list[0].args[1]
        self.assertEqual(first_payload['location_id'], 777)
        self.assertIn(first_payload['available'], (11, 2))

    def test_local_quantity_validation(self) -> None:
        with self.assertRaises(ValueError):
            set_local_quantity(self.db, shop_id=self.shop.id, variant_id=1, location_id=LOCATION_ID, quantity=-1)
        with self.assertRaises(NotFoundError):
            set_local_quantity(self.db, shop_id=self.shop.id, variant_id=999, location_id=LOCATION_ID, quantity=1)


if __name__ == '__main__':
    unittest.main()
