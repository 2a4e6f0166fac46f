from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys.
BigId = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class SyncStatus(str, Enum):
    RUNNING = 'RUNNING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'


class SupplierOrderStatus(str, Enum):
    DRAFT = 'DRAFT'
    REQUESTED = 'REQUESTED'
    PRODUCED = 'PRODUCED'
    COMPLETED = 'COMPLETED'


class SupplierPricingRuleType(str, Enum):
    BASE_PRICE = 'BASE_PRICE'
    SURCHARGE = 'SURCHARGE'


class BillingScope(str, Enum):
    ORDER = 'ORDER'
    WEEK = 'WEEK'
    MONTH = 'MONTH'


class Shop(Base):
    __tablename__ = 'shops'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    shopify_url: Mapped[str] = mapped_column(Text, nullable=False)
    shopify_token: Mapped[str] = mapped_column(Text, nullable=False)
    shopify_location_id: Mapped[str | None] = mapped_column(Text)
    handling_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Location(Base):
    __tablename__ = 'locations'
    __table_args__ = (
        UniqueConstraint('shop_id', 'shopify_id', name='locations_shop_shopify_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    shopify_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        UniqueConstraint('shop_id', 'shopify_id', name='orders_shop_shopify_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    shopify_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    display_fulfillment_status: Mapped[str] = mapped_column(Text, nullable=False, default='UNFULFILLED')
    display_financial_status: Mapped[str] = mapped_column(Text, nullable=False, default='PENDING')
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default='EUR')
    note: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class LineItemCheck(Base):
    __tablename__ = 'line_item_checks'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    legacy_id: Mapped[str] = mapped_column(Text, nullable=False)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    color: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[str] = mapped_column(Text, nullable=False)
    product_index: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_index: Mapped[int] = mapped_column(Integer, nullable=False)
    checked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PriceRule(Base):
    __tablename__ = 'price_rules'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    search_string: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CostRule(Base):
    __tablename__ = 'cost_rules'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    description: Mapped[str | None] = mapped_column(Text)
    product_type: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    last_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    metafield_modifiers: Mapped[list[CostRuleMetafieldModifier]] = relationship(
        cascade='all, delete-orphan', order_by='CostRuleMetafieldModifier.id', lazy='selectin'
    )
    option_modifiers: Mapped[list[CostRuleOptionModifier]] = relationship(
        cascade='all, delete-orphan', order_by='CostRuleOptionModifier.id', lazy='selectin'
    )


class CostRuleMetafieldModifier(Base):
    __tablename__ = 'cost_rule_metafield_modifiers'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    cost_rule_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('cost_rules.id', ondelete='CASCADE'), nullable=False)
    namespace: Mapped[str] = mapped_column(Text, nullable=False)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))


class CostRuleOptionModifier(Base):
    __tablename__ = 'cost_rule_option_modifiers'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    cost_rule_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('cost_rules.id', ondelete='CASCADE'), nullable=False)
    option_name: Mapped[str] = mapped_column(Text, nullable=False)
    option_value: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))


class SupplierPricingRule(Base):
    __tablename__ = 'supplier_pricing_rules'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    rule_type: Mapped[SupplierPricingRuleType] = mapped_column(
        SQLEnum(SupplierPricingRuleType, name='supplier_pricing_rule_type'), nullable=False
    )
    condition_value: Mapped[str | None] = mapped_column(Text)
    price_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MetafieldDisplayRule(Base):
    __tablename__ = 'metafield_display_rules'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    metafield_key: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class ColorMapping(Base):
    __tablename__ = 'color_mappings'
    __table_args__ = (
        UniqueConstraint('shop_id', 'source_name', name='color_mappings_shop_source_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    source_name: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_name: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Product(Base):
    __tablename__ = 'products'
    __table_args__ = (
        UniqueConstraint('shop_id', 'shopify_id', name='products_shop_shopify_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    shopify_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    handle: Mapped[str | None] = mapped_column(Text)
    image_url: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(Text)
    product_type: Mapped[str | None] = mapped_column(Text)
    option1_name: Mapped[str | None] = mapped_column(Text)
    option2_name: Mapped[str | None] = mapped_column(Text)
    option3_name: Mapped[str | None] = mapped_column(Text)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductVariant(Base):
    __tablename__ = 'product_variants'
    __table_args__ = (
        UniqueConstraint('product_id', 'shopify_id', name='product_variants_product_shopify_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('products.id', ondelete='CASCADE'), nullable=False)
    shopify_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    option1: Mapped[str | None] = mapped_column(Text)
    option2: Mapped[str | None] = mapped_column(Text)
    option3: Mapped[str | None] = mapped_column(Text)
    inventory_item_id: Mapped[str | None] = mapped_column(Text)
    cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))


class VariantMetafield(Base):
    __tablename__ = 'variant_metafields'
    __table_args__ = (
        UniqueConstraint('variant_id', 'namespace', 'key', name='variant_metafields_variant_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    variant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('product_variants.id', ondelete='CASCADE'), nullable=False)
    namespace: Mapped[str] = mapped_column(Text, nullable=False)
    key: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class InventoryLevel(Base):
    __tablename__ = 'inventory_levels'
    __table_args__ = (
        UniqueConstraint('variant_id', 'location_id', name='inventory_levels_variant_location_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    variant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('product_variants.id', ondelete='CASCADE'), nullable=False)
    location_id: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class SupplierOrder(Base):
    __tablename__ = 'supplier_orders'
    __table_args__ = (
        UniqueConstraint('shop_id', 'order_number', name='supplier_orders_shop_number_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[SupplierOrderStatus] = mapped_column(
        SQLEnum(SupplierOrderStatus, name='supplier_order_status'),
        nullable=False,
        default=SupplierOrderStatus.DRAFT,
        server_default='DRAFT',
    )
    note: Mapped[str | None] = mapped_column(Text)
    location_id: Mapped[str | None] = mapped_column(Text)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    balance_adjustment: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    total_ht: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    total_ttc: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items: Mapped[list[SupplierOrderItem]] = relationship(
        cascade='all, delete-orphan', order_by='SupplierOrderItem.sku', lazy='selectin'
    )


class SupplierOrderItem(Base):
    __tablename__ = 'supplier_order_items'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('supplier_orders.id', ondelete='CASCADE'), nullable=False)
    variant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('product_variants.id', ondelete='SET NULL'))
    sku: Mapped[str | None] = mapped_column(Text)
    product_title: Mapped[str | None] = mapped_column(Text)
    variant_title: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    pricing_string: Mapped[str | None] = mapped_column(Text)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BillingNote(Base):
    __tablename__ = 'billing_notes'
    __table_args__ = (
        UniqueConstraint('shop_id', 'scope', 'period_key', name='billing_notes_scope_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    scope: Mapped[BillingScope] = mapped_column(SQLEnum(BillingScope, name='billing_scope'), nullable=False)
    period_key: Mapped[str] = mapped_column(Text, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BillingInvoice(Base):
    __tablename__ = 'billing_invoices'
    __table_args__ = (
        UniqueConstraint('shop_id', 'scope', 'period_key', name='billing_invoices_scope_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    scope: Mapped[BillingScope] = mapped_column(SQLEnum(BillingScope, name='billing_scope'), nullable=False)
    period_key: Mapped[str] = mapped_column(Text, nullable=False)
    invoiced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BillingBalance(Base):
    __tablename__ = 'billing_balances'
    __table_args__ = (
        UniqueConstraint('shop_id', 'scope', 'period_key', name='billing_balances_scope_key'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    scope: Mapped[BillingScope] = mapped_column(SQLEnum(BillingScope, name='billing_scope'), nullable=False)
    period_key: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0'))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SyncRun(Base):
    __tablename__ = 'sync_runs'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    status: Mapped[SyncStatus] = mapped_column(
        SQLEnum(SyncStatus, name='sync_status'), nullable=False, default=SyncStatus.RUNNING, server_default='RUNNING'
    )
    orders_count: Mapped[int | None] = mapped_column(Integer)
    error: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    shop_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='SET NULL'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
