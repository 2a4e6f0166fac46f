from __future__ import annotations

import unittest
from decimal import Decimal
from types import SimpleNamespace

from atelier.models import SupplierPricingRuleType
from atelier.services.billing_service import (
    OrderTotal,
    calculate_order_total,
    calculate_subtotal,
    month_key,
    parse_month_key,
    parse_week_key,
    period_total,
    week_key,
)
from atelier.services.line_items import LineItem
from atelier.services.price_rule_service import (
    build_pricing_string,
    calculate_item_price,
    calculate_supplier_unit_price,
    compute_variant_cost,
    format_item_descriptor,
    match_price_rules,
)
from atelier.services.supplier_order_service import compute_totals

ORDER_ID = 'gid://shopify/Order/2002'


def _rule(search_string: str, price: str, is_active: bool = True) -> SimpleNamespace:
    return SimpleNamespace(search_string=search_string, price=Decimal(price), is_active=is_active)


def _creator(quantity: int = 3, refundable: int | None = 3) -> LineItem:
    return LineItem(
        sku='CREATOR',
        title='Creator Tee',
        variant_title='Terra Cotta / M',
        quantity=quantity,
        refundable_quantity=refundable,
    )


class PriceRuleTests(unittest.TestCase):
    def test_descriptor_uses_supplier_color(self) -> None:
        self.assertEqual(format_item_descriptor(_creator()), 'CREATOR - Heritage Brown - M')

    def test_descriptor_appends_print_files(self) -> None:
        item = LineItem(
            sku='CREATOR',
            title='Creator Tee',
            variant_title='Noir / L',
            quantity=1,
            metafields={('custom', 'fichier_d_impression'): 'logo.png', ('custom', 'verso_impression'): 'back.png'},
        )

        self.assertEqual(format_item_descriptor(item), 'CREATOR - Black - L - logo.png - back.png')

    def test_matching_is_case_insensitive_substring_and_sums(self) -> None:
        rules = [_rule('creator', '10'), _rule('Heritage Brown - M', '2'), _rule('HOODIE', '30'), _rule('CREATOR', '99', False)]

        match = match_price_rules('CREATOR - Heritage Brown - M', rules)

        self.assertEqual(match.total, Decimal('12'))
        self.assertEqual(len(match.matched), 2)

    def test_no_match_prices_zero(self) -> None:
        self.assertEqual(calculate_item_price('CAP - Black', [_rule('HOODIE', '30')]), Decimal('0'))


class BillingTests(unittest.TestCase):
    rules = [_rule('CREATOR - Heritage Brown - M', '12')]

    def test_all_units_checked(self) -> None:
        total = calculate_order_total(
            ORDER_ID,
            [_creator()],
            self.rules,
            is_checked=lambda _key: True,
            handling_fee=Decimal('4.50'),
        )

        self.assertEqual(total, Decimal('40.50'))

    def test_nothing_checked_withholds_handling_fee(self) -> None:
        total = calculate_order_total(
            ORDER_ID,
            [_creator()],
            self.rules,
            is_checked=lambda _key: False,
            handling_fee=Decimal('4.50'),
        )

        self.assertEqual(total, Decimal('0'))

    def test_negative_subtotal_withholds_handling_fee(self) -> None:
        discount = [_rule('CREATOR', '-2')]

        total = calculate_order_total(
            ORDER_ID,
            [_creator()],
            discount,
            is_checked=lambda _key: True,
            handling_fee=Decimal('4.50'),
        )
        breakdown = OrderTotal(order_id=ORDER_ID, subtotal=Decimal('-6'), handling_fee=Decimal('4.50'), balance=Decimal('1'))

        self.assertEqual(total, Decimal('0'))
        self.assertEqual(breakdown.total, Decimal('1'))
        self.assertEqual(breakdown.as_dict()['handling_fee'], Decimal('0'))

    def test_subtotal_counts_only_checked_units(self) -> None:
        subtotal = calculate_subtotal(ORDER_ID, [_creator()], self.rules, is_checked=lambda key: key.unit_index == 0)

        self.assertEqual(subtotal, Decimal('12'))

    def test_cancelled_items_never_bill(self) -> None:
        subtotal = calculate_subtotal(
            ORDER_ID,
            [_creator(quantity=3, refundable=2)],
            self.rules,
            is_checked=lambda _key: True,
        )

        self.assertEqual(subtotal, Decimal('0'))

    def test_failed_lookup_counts_as_unchecked(self) -> None:
        def flaky(key):
            if key.unit_index == 1:
                raise RuntimeError('row unreadable')
            return True

        subtotal = calculate_subtotal(ORDER_ID, [_creator()], self.rules, is_checked=flaky)

        self.assertEqual(subtotal, Decimal('24'))

    def test_color_overrides_change_descriptor(self) -> None:
        subtotal = calculate_subtotal(
            ORDER_ID,
            [_creator(quantity=1)],
            [_rule('CREATOR - Rust - M', '15')],
            is_checked=lambda _key: True,
            color_overrides={'Terra Cotta': 'Rust'},
        )

        self.assertEqual(subtotal, Decimal('15'))

    def test_order_total_balance(self) -> None:
        billed = OrderTotal(order_id=ORDER_ID, subtotal=Decimal('36'), handling_fee=Decimal('4.50'), balance=Decimal('-5'))
        empty = OrderTotal(order_id=ORDER_ID, subtotal=Decimal('0'), handling_fee=Decimal('4.50'), balance=Decimal('3'))

        self.assertEqual(billed.total, Decimal('35.50'))
        self.assertEqual(empty.total, Decimal('3'))
        self.assertEqual(empty.as_dict()['handling_fee'], Decimal('0'))

    def test_period_total_adds_balance(self) -> None:
        self.assertEqual(period_total([Decimal('40.50'), Decimal('16.50')], Decimal('-7')), Decimal('50.00'))

    def test_period_keys(self) -> None:
        start, end = parse_week_key('2024-W01')

        self.assertEqual(start.date().isoformat(), '2024-01-01')
        self.assertEqual((end - start).days, 7)
        self.assertEqual(week_key(start), '2024-W01')
        start, end = parse_month_key('2024-12')
        self.assertEqual((start.date().isoformat(), end.date().isoformat()), ('2024-12-01', '2025-01-01'))
        self.assertEqual(month_key(start), '2024-12')
        with self.assertRaises(ValueError):
            parse_month_key('December')


class CostRuleTests(unittest.TestCase):
    def _rule(self) -> SimpleNamespace:
        return SimpleNamespace(
            base_price=Decimal('8.00'),
            metafield_modifiers=[
                SimpleNamespace(namespace='custom', key='print', value='DTF', amount=Decimal('2.50')),
                SimpleNamespace(namespace='custom', key='print', value='Brodé', amount=Decimal('6.00')),
            ],
            option_modifiers=[
                SimpleNamespace(option_name='Size', option_value='2XL', amount=Decimal('1.50')),
                SimpleNamespace(option_name='', option_value='noir', amount=Decimal('0.50')),
            ],
        )

    def test_modifiers_add_to_base(self) -> None:
        breakdown = compute_variant_cost(
            self._rule(),
            metafields={('custom', 'print'): 'DTF'},
            options={'Couleur': 'Noir', 'size': '2xl'},
        )

        self.assertEqual(breakdown.base_price, Decimal('8.00'))
        self.assertEqual(len(breakdown.modifiers), 3)
        self.assertEqual(breakdown.total, Decimal('12.50'))

    def test_metafield_values_match_exactly(self) -> None:
        breakdown = compute_variant_cost(self._rule(), metafields={('custom', 'print'): 'dtf'}, options={})

        self.assertEqual(breakdown.total, Decimal('8.00'))


class SupplierPricingTests(unittest.TestCase):
    def _rules(self) -> list[SimpleNamespace]:
        return [
            SimpleNamespace(id=1, rule_type=SupplierPricingRuleType.BASE_PRICE, price_value=Decimal('9'), condition_value=None, is_percentage=False, priority=1, is_active=True),
            SimpleNamespace(id=2, rule_type=SupplierPricingRuleType.BASE_PRICE, price_value=Decimal('5'), condition_value=None, is_percentage=False, priority=2, is_active=True),
            SimpleNamespace(id=3, rule_type=SupplierPricingRuleType.SURCHARGE, price_value=Decimal('2'), condition_value='hoodie', is_percentage=False, priority=0, is_active=True),
            SimpleNamespace(id=4, rule_type=SupplierPricingRuleType.SURCHARGE, price_value=Decimal('10'), condition_value='2XL', is_percentage=True, priority=0, is_active=True),
            SimpleNamespace(id=5, rule_type=SupplierPricingRuleType.SURCHARGE, price_value=Decimal('50'), condition_value='Hoodie', is_percentage=False, priority=0, is_active=False),
        ]

    def test_base_then_surcharges(self) -> None:
        pricing = build_pricing_string(product_title='Hoodie Bio', sku='HOOD', options=['Noir', '2XL', None], metafield_values=[' DTF '])

        self.assertEqual(pricing, 'Hoodie Bio, HOOD, Noir, 2XL, DTF')
        self.assertEqual(calculate_supplier_unit_price(pricing, self._rules()), Decimal('12.10'))

    def test_no_base_rule_prices_zero(self) -> None:
        self.assertEqual(calculate_supplier_unit_price('Cap', []), Decimal('0.00'))

    def test_compute_totals(self) -> None:
        totals = compute_totals(Decimal('100'), Decimal('-10'))

        self.assertEqual(totals.total_ht, Decimal('90'))
        self.assertEqual(totals.total_ttc, Decimal('108.00'))


if __name__ == '__main__':
    unittest.main()
