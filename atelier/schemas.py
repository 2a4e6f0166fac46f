from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from atelier.models import BillingScope, SupplierOrderStatus, SupplierPricingRuleType


class UnitCheckIn(BaseModel):
    product_index: int = Field(ge=0)
    unit_index: int = Field(ge=0)
    checked: bool | None = None


class BulkCheckIn(BaseModel):
    checked: bool = True


class PriceRuleIn(BaseModel):
    search_string: str = Field(min_length=1)
    price: Decimal
    priority: int = 0
    is_active: bool = True


class PriceRulePatch(BaseModel):
    search_string: str | None = None
    price: Decimal | None = None
    priority: int | None = None
    is_active: bool | None = None


class MetafieldModifierIn(BaseModel):
    namespace: str
    key: str
    value: str
    amount: Decimal


class OptionModifierIn(BaseModel):
    option_name: str = ''
    option_value: str
    amount: Decimal


class CostRuleIn(BaseModel):
    sku: str = Field(min_length=1)
    base_price: Decimal = Field(ge=0)
    description: str | None = None
    product_type: str | None = None
    metafield_modifiers: list[MetafieldModifierIn] = []
    option_modifiers: list[OptionModifierIn] = []


class CostRulePatch(BaseModel):
    sku: str | None = None
    base_price: Decimal | None = None
    description: str | None = None
    product_type: str | None = None
    is_active: bool | None = None
    metafield_modifiers: list[MetafieldModifierIn] | None = None
    option_modifiers: list[OptionModifierIn] | None = None


class SupplierOrderIn(BaseModel):
    note: str | None = None
    location_id: str | None = None


class SupplierOrderPatch(BaseModel):
    status: SupplierOrderStatus | None = None
    note: str | None = None
    balance_adjustment: Decimal | None = None
    location_id: str | None = None


class SupplierItemIn(BaseModel):
    variant_id: int
    quantity: int = Field(gt=0)


class SupplierItemsIn(BaseModel):
    items: list[SupplierItemIn] = Field(min_length=1)


class SupplierItemPatch(BaseModel):
    quantity: int | None = Field(default=None, gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)
    is_validated: bool | None = None


class BillingNoteIn(BaseModel):
    scope: BillingScope
    period_key: str
    note: str = ''


class BillingInvoiceIn(BaseModel):
    scope: BillingScope
    period_key: str
    invoiced: bool


class BillingBalanceIn(BaseModel):
    scope: BillingScope
    period_key: str
    amount: Decimal


class ShopSettingsPatch(BaseModel):
    name: str | None = None
    handling_fee: Decimal | None = None
    clear_handling_fee: bool = False
    shopify_location_id: str | None = None


class ColorMappingIn(BaseModel):
    source_name: str
    canonical_name: str


class MetafieldRuleIn(BaseModel):
    metafield_key: str
    display_name: str = ''
    display_order: int = 0
    is_active: bool = True


class SupplierPricingRuleIn(BaseModel):
    rule_type: SupplierPricingRuleType
    price_value: Decimal
    condition_value: str | None = None
    is_percentage: bool = False
    priority: int = 0


class InventoryQuantityIn(BaseModel):
    location_id: str
    quantity: int = Field(ge=0)


class ActiveIn(BaseModel):
    is_active: bool
