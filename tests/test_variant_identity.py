from __future__ import annotations

import unittest

from atelier.services.line_items import LineItem, SelectedOption, line_item_from_payload
from atelier.services.variant_identity import (
    VariantKey,
    expand_order_units,
    generate_variant_id,
    global_unit_index,
    item_keys,
)

ORDER_ID = 'gid://shopify/Order/1001'


def _item(sku: str | None, variant_title: str | None, quantity: int, refundable: int | None = None) -> LineItem:
    return LineItem(
        sku=sku,
        title='Tee',
        variant_title=variant_title,
        quantity=quantity,
        refundable_quantity=quantity if refundable is None else refundable,
    )


class VariantKeyTests(unittest.TestCase):
    def test_legacy_id_joins_parts(self) -> None:
        value = generate_variant_id(ORDER_ID, 'CREATOR', 'Terra Cotta', 'M', 0, 2)

        self.assertEqual(value, f'{ORDER_ID}--CREATOR--Terra Cotta--M--0--2')

    def test_missing_color_and_size_use_placeholders(self) -> None:
        key = VariantKey.build(ORDER_ID, 'CAP', None, '  ', 1, 0)

        self.assertEqual(key.color, 'no-color')
        self.assertEqual(key.size, 'no-size')
        self.assertEqual(key.group, ('CAP', 'no-color', 'no-size'))

    def test_digest_is_stable_and_unambiguous(self) -> None:
        first = VariantKey.build(ORDER_ID, 'A--B', 'Black', 'M', 0, 0)
        second = VariantKey.build(ORDER_ID, 'A', 'B--Black', 'M', 0, 0)

        self.assertEqual(first.legacy_id, second.legacy_id)
        self.assertNotEqual(first.digest, second.digest)
        self.assertEqual(first.digest, VariantKey.build(ORDER_ID, 'A--B', 'Black', 'M', 0, 0).digest)
        self.assertEqual(len(first.digest), 64)

    def test_empty_sku_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, 'SKU cannot be empty'):
            VariantKey.build(ORDER_ID, '  ', 'Black', 'M', 0, 0)

    def test_empty_order_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, 'Order id cannot be empty'):
            VariantKey.build('', 'TEE', 'Black', 'M', 0, 0)


class UnitExpansionTests(unittest.TestCase):
    def test_one_unit_per_quantity(self) -> None:
        keys = item_keys(ORDER_ID, _item('TEE', 'Black / M', 3), 4)

        self.assertEqual([key.unit_index for key in keys], [0, 1, 2])
        self.assertTrue(all(key.product_index == 4 for key in keys))
        self.assertEqual(len({key.digest for key in keys}), 3)

    def test_cancelled_and_skuless_items_have_no_units(self) -> None:
        items = [
            _item('TEE', 'Black / M', 2),
            _item('TEE', 'Black / L', 3, refundable=1),
            _item(None, 'Black / S', 5),
        ]

        units = expand_order_units(ORDER_ID, items)

        self.assertEqual(len(units), 2)
        self.assertTrue(all(unit.key.size == 'M' for unit in units))

    def test_explicit_options_win_over_title(self) -> None:
        item = LineItem(
            sku='HOOD',
            title='Hoodie',
            variant_title='Something / Else',
            quantity=1,
            selected_options=(SelectedOption('Couleur', 'Noir'), SelectedOption('Taille', 'XL')),
        )

        (key,) = item_keys(ORDER_ID, item, 0)

        self.assertEqual((key.color, key.size), ('Noir', 'XL'))

    def test_global_unit_index_counts_matching_predecessors(self) -> None:
        items = [
            _item('TEE', 'Black / M', 2),
            _item('TEE', 'White / M', 4),
            _item('TEE', 'Black / M', 1, refundable=0),
            _item('TEE', 'Black / M', 1),
        ]

        self.assertEqual(global_unit_index(items, 0), 0)
        self.assertEqual(global_unit_index(items, 3), 2)
        with self.assertRaises(ValueError):
            global_unit_index(items, 9)

    def test_payload_reads_shopify_keys(self) -> None:
        item = line_item_from_payload(
            {
                'sku': ' TEE ',
                'title': 'Tee',
                'variantTitle': 'Noir / M',
                'quantity': '2',
                'refundableQuantity': 1,
                'price': {'amount': '19.90'},
                'metafields': {'nodes': [{'namespace': 'custom', 'key': 'fichier_d_impression', 'value': 'front.png'}]},
            }
        )

        self.assertEqual(item.sku, 'TEE')
        self.assertEqual(item.quantity, 2)
        self.assertTrue(item.is_cancelled)
        self.assertEqual(str(item.unit_price), '19.90')
        self.assertEqual(item.print_file, 'front.png')
        self.assertIsNone(item.verso_file)


if __name__ == '__main__':
    unittest.main()
