from __future__ import annotations

import unittest

from atelier.services.color_service import (
    extract_color,
    extract_size,
    format_color_label,
    reverse_transform_color,
    strip_parenthetical,
    transform_color,
)
from atelier.services.line_items import LineItem
from atelier.services.sort_utils import compare_sizes, size_sort_key, variant_sort_key


def _item(variant_title: str | None) -> LineItem:
    return LineItem(sku='TEE', title='Tee', variant_title=variant_title, quantity=1)


class ColorTransformTests(unittest.TestCase):
    def test_known_colors_map_to_supplier_names(self) -> None:
        self.assertEqual(transform_color('Terra Cotta'), 'Heritage Brown')
        self.assertEqual(transform_color('Noir'), 'Black')

    def test_parenthetical_and_accents_are_ignored(self) -> None:
        self.assertEqual(transform_color('Creme (edition limitee)'), 'Cream')
        self.assertEqual(strip_parenthetical('Noir (mat)'), 'Noir')

    def test_unknown_colors_pass_through(self) -> None:
        self.assertEqual(transform_color('Fuchsia'), 'Fuchsia')
        self.assertEqual(transform_color(None), '')

    def test_overrides_take_precedence(self) -> None:
        self.assertEqual(transform_color('Noir', {'Noir': 'Jet Black'}), 'Jet Black')
        self.assertEqual(transform_color('Fuchsia', {'Fuchsia': 'Hot Pink'}), 'Hot Pink')

    def test_reverse_round_trip(self) -> None:
        self.assertEqual(reverse_transform_color(transform_color('Bleu Marine')), 'Bleu Marine')
        self.assertEqual(reverse_transform_color('black'), 'Noir')

    def test_many_to_one_reverse_is_lossy(self) -> None:
        self.assertEqual(transform_color('Chocolat'), 'Mocha')
        self.assertEqual(reverse_transform_color('Mocha'), 'Mocha')

    def test_label_shows_both_names(self) -> None:
        self.assertEqual(format_color_label('Noir'), 'Noir (Black)')
        self.assertEqual(format_color_label('Fuchsia'), 'Fuchsia')


class OptionExtractionTests(unittest.TestCase):
    def test_positional_color_and_size(self) -> None:
        item = _item('Terra Cotta / M')

        self.assertEqual(extract_color(item), 'Terra Cotta')
        self.assertEqual(extract_size(item), 'M')

    def test_three_part_titles_use_last_two(self) -> None:
        item = _item('Bio / Noir / XL')

        self.assertEqual(extract_color(item), 'Noir')
        self.assertEqual(extract_size(item), 'XL')

    def test_single_part_is_size_when_known(self) -> None:
        self.assertEqual(extract_size(_item('L')), 'L')
        self.assertIsNone(extract_color(_item('L')))
        self.assertEqual(extract_color(_item('Noir')), 'Noir')
        self.assertIsNone(extract_size(_item('Noir')))

    def test_default_title_has_no_options(self) -> None:
        self.assertIsNone(extract_color(_item('Default Title')))
        self.assertIsNone(extract_size(_item('Default Title')))


class SizeOrderingTests(unittest.TestCase):
    def test_known_sizes_sort_before_unknown(self) -> None:
        sizes = ['XL', 'One Size', 'S', '2XL', 'xs', 'M']

        self.assertEqual(sorted(sizes, key=size_sort_key), ['xs', 'S', 'M', 'XL', '2XL', 'One Size'])

    def test_compare_sizes(self) -> None:
        self.assertEqual(compare_sizes('S', 'M'), -1)
        self.assertEqual(compare_sizes('5XL', '3XL'), 1)
        self.assertEqual(compare_sizes('m', 'M'), 0)

    def test_variant_sort_key_orders_by_sku_color_size(self) -> None:
        rows = [
            {'sku': 'TEE', 'color': 'Black', 'size': 'L'},
            {'sku': 'CAP', 'color': 'Black', 'size': 'M'},
            {'sku': 'TEE', 'color': 'Black', 'size': 'S'},
        ]

        ordered = sorted(rows, key=lambda row: variant_sort_key(**row))

        self.assertEqual([(row['sku'], row['size']) for row in ordered], [('CAP', 'M'), ('TEE', 'S'), ('TEE', 'L')])


if __name__ == '__main__':
    unittest.main()
