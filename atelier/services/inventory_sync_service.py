from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.errors import NotFoundError
from atelier.logging import get_logger
from atelier.models import (
    InventoryLevel,
    MetafieldDisplayRule,
    Product,
    ProductVariant,
    Shop,
    VariantMetafield,
)
from atelier.services import stream_events as events
from atelier.services.batch_result import BatchResult
from atelier.services.shopify_client import ShopifyApiError, ShopifyClient, client_for_shop

logger = get_logger(__name__)

ClientFactory = Callable[[Shop], ShopifyClient]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _chunks(values: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _decimal_or_zero(value) -> Decimal:
    if value in (None, ''):
        return Decimal('0')
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal('0')


def get_shop(db: Session, shop_id: int) -> Shop:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise NotFoundError('Shop not found')
    return shop


def fetch_products(client: ShopifyClient, result: BatchResult) -> Iterator[events.StreamEvent]:
    page = 0
    pages = client.iter_pages('products.json', 'products', {'status': 'active', 'limit': 250})
    while True:
        try:
            products = next(pages)
        except StopIteration:
            return
        except ShopifyApiError as exc:
            yield events.error(f'Shopify API error on products page {page + 1}: {exc}')
            return
        page += 1
        result.succeeded.extend(products)
        yield events.progress(f'Page {page}: {len(products)} products')


def upsert_products(db: Session, *, shop_id: int, products: Sequence[dict]) -> dict[str, Product]:
    by_shopify_id = {
        row.shopify_id: row
        for row in db.execute(select(Product).where(Product.shop_id == shop_id)).scalars().all()
    }
    for payload in products:
        shopify_id = str(payload.get('id') or '')
        if not shopify_id:
            continue
        options = payload.get('options') or []
        image = payload.get('image') or next(iter(payload.get('images') or []), None) or {}
        values = {
            'title': payload.get('title') or shopify_id,
            'handle': payload.get('handle'),
            'image_url': image.get('src'),
            'status': payload.get('status'),
            'product_type': payload.get('product_type'),
            'option1_name': options[0].get('name') if len(options) > 0 else None,
            'option2_name': options[1].get('name') if len(options) > 1 else None,
            'option3_name': options[2].get('name') if len(options) > 2 else None,
            'synced_at': _now(),
        }
        product = by_shopify_id.get(shopify_id)
        if product is None:
            product = Product(shop_id=shop_id, shopify_id=shopify_id, **values)
            db.add(product)
            by_shopify_id[shopify_id] = product
        else:
            for field_name, value in values.items():
                setattr(product, field_name, value)
    db.flush()
    return by_shopify_id


def upsert_variants(
    db: Session,
    *,
    products: Sequence[dict],
    product_rows: dict[str, Product],
    chunk_size: int | None = None,
) -> dict[str, ProductVariant]:
    product_ids = [row.id for row in product_rows.values()]
    existing = {
        (row.product_id, row.shopify_id): row
        for row in db.execute(select(ProductVariant).where(ProductVariant.product_id.in_(product_ids))).scalars().all()
    } if product_ids else {}

    rows: list[tuple[Product, dict]] = []
    for payload in products:
        product = product_rows.get(str(payload.get('id') or ''))
        if product is None:
            continue
        rows.extend((product, variant) for variant in payload.get('variants') or [])

    by_inventory_item: dict[str, ProductVariant] = {}
    for chunk in _chunks(rows, chunk_size or settings.variant_upsert_chunk_size):
        for product, payload in chunk:
            shopify_id = str(payload.get('id') or '')
            if not shopify_id:
                continue
            inventory_item_id = payload.get('inventory_item_id')
            values = {
                'title': payload.get('title') or '',
                'sku': (payload.get('sku') or '').strip() or None,
                'option1': payload.get('option1'),
                'option2': payload.get('option2'),
                'option3': payload.get('option3'),
                'inventory_item_id': str(inventory_item_id) if inventory_item_id else None,
                'price': _decimal_or_zero(payload.get('price')),
            }
            variant = existing.get((product.id, shopify_id))
            if variant is None:
                variant = ProductVariant(product_id=product.id, shopify_id=shopify_id, **values)
                db.add(variant)
                existing[(product.id, shopify_id)] = variant
            else:
                for field_name, value in values.items():
                    setattr(variant, field_name, value)
            if variant.inventory_item_id:
                by_inventory_item[variant.inventory_item_id] = variant
        db.flush()
        db.commit()
    return by_inventory_item


def sync_costs(
    db: Session,
    client: ShopifyClient,
    *,
    by_inventory_item: dict[str, ProductVariant],
    chunk_size: int | None = None,
) -> BatchResult[str]:
    result: BatchResult[str] = BatchResult()
    ids = list(by_inventory_item)
    for chunk in _chunks(ids, chunk_size or settings.inventory_item_chunk_size):
        try:
            items = client.get('inventory_items.json', {'ids': ','.join(chunk), 'limit': len(chunk)}).get(
                'inventory_items'
            ) or []
        except ShopifyApiError as exc:
            for inventory_item_id in chunk:
                result.fail(inventory_item_id, exc)
            continue
        for item in items:
            variant = by_inventory_item.get(str(item.get('id')))
            if variant is None or item.get('cost') in (None, ''):
                continue
            variant.cost = _decimal_or_zero(item.get('cost'))
            result.ok(variant.inventory_item_id)
        db.flush()
    db.commit()
    return result


def sync_levels(
    db: Session,
    client: ShopifyClient,
    *,
    by_inventory_item: dict[str, ProductVariant],
    location_id: str,
    chunk_size: int | None = None,
) -> BatchResult[str]:
    result: BatchResult[str] = BatchResult()
    variant_ids = [variant.id for variant in by_inventory_item.values()]
    existing = {
        row.variant_id: row
        for row in db.execute(
            select(InventoryLevel).where(
                InventoryLevel.location_id == location_id,
                InventoryLevel.variant_id.in_(variant_ids),
            )
        ).scalars().all()
    } if variant_ids else {}

    ids = list(by_inventory_item)
    for chunk in _chunks(ids, chunk_size or settings.inventory_item_chunk_size):
        try:
            levels = client.get(
                'inventory_levels.json',
                {'inventory_item_ids': ','.join(chunk), 'location_ids': location_id, 'limit': 250},
            ).get('inventory_levels') or []
        except ShopifyApiError as exc:
            for inventory_item_id in chunk:
                result.fail(inventory_item_id, exc)
            continue
        for level in levels:
            variant = by_inventory_item.get(str(level.get('inventory_item_id')))
            if variant is None or str(level.get('location_id')) != str(location_id):
                continue
            quantity = int(level.get('available') or 0)
            row = existing.get(variant.id)
            if row is None:
                row = InventoryLevel(variant_id=variant.id, location_id=str(location_id), quantity=quantity)
                db.add(row)
                existing[variant.id] = row
            else:
                row.quantity = quantity
            row.synced_at = _now()
            result.ok(variant.inventory_item_id)
        db.flush()
        db.commit()
    return result


def displayed_metafield_keys(db: Session, *, shop_id: int) -> set[str]:
    return set(
        db.execute(
            select(MetafieldDisplayRule.metafield_key).where(
                MetafieldDisplayRule.shop_id == shop_id,
                MetafieldDisplayRule.is_active.is_(True),
            )
        ).scalars().all()
    )


def sync_variant_metafields(
    db: Session,
    client: ShopifyClient,
    *,
    variants: Sequence[ProductVariant],
    keys: set[str],
) -> BatchResult[str]:
    result: BatchResult[str] = BatchResult()
    for variant in variants:
        try:
            remote = client.get(f'variants/{variant.shopify_id}/metafields.json').get('metafields') or []
        except ShopifyApiError as exc:
            result.fail(variant.shopify_id, exc)
            continue
        existing = {
            (row.namespace, row.key): row
            for row in db.execute(select(VariantMetafield).where(VariantMetafield.variant_id == variant.id)).scalars()
        }
        for payload in remote:
            namespace = payload.get('namespace') or ''
            key = payload.get('key') or ''
            if f'{namespace}.{key}' not in keys:
                continue
            value = '' if payload.get('value') is None else str(payload.get('value'))
            row = existing.get((namespace, key))
            if row is None:
                db.add(VariantMetafield(variant_id=variant.id, namespace=namespace, key=key, value=value))
            else:
                row.value = value
        result.ok(variant.shopify_id)
        db.flush()
    db.commit()
    return result


def _report(label: str, result: BatchResult) -> Iterator[events.StreamEvent]:
    yield events.success(f'{len(result.succeeded)} {label} updated')
    if result.failed:
        yield events.error(f'{len(result.failed)} {label} failed')
        for failure in result.failed[:10]:
            yield events.error(f'{failure.item}: {failure.error}')


def run_inventory_sync(
    db: Session,
    *,
    shop_id: int,
    location_id: str,
    client_factory: ClientFactory = client_for_shop,
) -> Iterator[events.StreamEvent]:
    yield events.info('Starting inventory sync')
    shop = get_shop(db, shop_id)
    yield events.success(f'Shop: {shop.name or shop.shopify_url}')
    client = client_factory(shop)

    yield events.info('Fetching products from Shopify')
    fetched: BatchResult[dict] = BatchResult()
    yield from fetch_products(client, fetched)
    products = fetched.succeeded
    yield events.success(f'{len(products)} products fetched')

    product_rows = upsert_products(db, shop_id=shop.id, products=products)
    db.commit()
    yield events.success(f'{len(product_rows)} products saved')

    by_inventory_item = upsert_variants(db, products=products, product_rows=product_rows)
    yield events.success(f'{len(by_inventory_item)} variants saved')

    yield events.info('Fetching costs')
    yield from _report('costs', sync_costs(db, client, by_inventory_item=by_inventory_item))

    yield events.info(f'Fetching inventory levels for location {location_id}')
    yield from _report(
        'inventory levels',
        sync_levels(db, client, by_inventory_item=by_inventory_item, location_id=location_id),
    )

    keys = displayed_metafield_keys(db, shop_id=shop.id)
    if keys:
        yield events.info('Fetching variant metafields')
        yield from _report(
            'variant metafields',
            sync_variant_metafields(db, client, variants=list(by_inventory_item.values()), keys=keys),
        )

    logger.info('inventory_sync_completed', shop_id=shop.id, products=len(products), variants=len(by_inventory_item))
    yield events.success(f'Sync finished: {len(products)} products, {len(by_inventory_item)} variants')


def stream_inventory_sync(
    shop_id: int,
    location_id: str,
    *,
    session_factory,
    client_factory: ClientFactory = client_for_shop,
) -> Iterator[str]:
    return events.run_stream(
        lambda db: run_inventory_sync(db, shop_id=shop_id, location_id=location_id, client_factory=client_factory),
        session_factory=session_factory,
        logger=logger,
    )


def push_inventory_levels(
    db: Session,
    *,
    shop: Shop,
    location_id: str,
    client: ShopifyClient | None = None,
) -> BatchResult[str]:
    client = client or client_for_shop(shop)
    rows = db.execute(
        select(InventoryLevel, ProductVariant)
        .join(ProductVariant, ProductVariant.id == InventoryLevel.variant_id)
        .join(Product, Product.id == ProductVariant.product_id)
        .where(
            Product.shop_id == shop.id,
            InventoryLevel.location_id == str(location_id),
            ProductVariant.inventory_item_id.is_not(None),
        )
    ).all()

    result: BatchResult[str] = BatchResult()
    for level, variant in rows:
        try:
            client.post(
                'inventory_levels/set.json',
                {
                    'location_id': int(location_id),
                    'inventory_item_id': int(variant.inventory_item_id),
                    'available': level.quantity,
                },
            )
        except (ShopifyApiError, ValueError) as exc:
            result.fail(variant.sku or variant.shopify_id, exc)
            continue
        level.synced_at = _now()
        result.ok(variant.sku or variant.shopify_id)
    db.flush()
    logger.info('inventory_pushed', shop_id=shop.id, **result.summary())
    return result


def list_inventory(db: Session, *, shop_id: int, location_id: str | None = None) -> list[dict]:
    stmt = (
        select(ProductVariant, Product, InventoryLevel)
        .join(Product, Product.id == ProductVariant.product_id)
        .outerjoin(
            InventoryLevel,
            (InventoryLevel.variant_id == ProductVariant.id) & (InventoryLevel.location_id == str(location_id or '')),
        )
        .where(Product.shop_id == shop_id)
        .order_by(Product.title.asc(), ProductVariant.title.asc())
    )
    return [
        {
            'variant_id': variant.id,
            'product_title': product.title,
            'variant_title': variant.title,
            'sku': variant.sku,
            'cost': variant.cost,
            'price': variant.price,
            'quantity': level.quantity if level is not None else 0,
        }
        for variant, product, level in db.execute(stmt).all()
    ]


def set_local_quantity(db: Session, *, shop_id: int, variant_id: int, location_id: str, quantity: int) -> InventoryLevel:
    if quantity < 0:
        raise ValueError('Quantity cannot be negative')
    variant = db.execute(
        select(ProductVariant)
        .join(Product, Product.id == ProductVariant.product_id)
        .where(ProductVariant.id == variant_id, Product.shop_id == shop_id)
    ).scalar_one_or_none()
    if variant is None:
        raise NotFoundError('Variant not found')
    level = db.execute(
        select(InventoryLevel).where(
            InventoryLevel.variant_id == variant.id,
            InventoryLevel.location_id == str(location_id),
        )
    ).scalar_one_or_none()
    if level is None:
        level = InventoryLevel(variant_id=variant.id, location_id=str(location_id), quantity=quantity)
        db.add(level)
    else:
        level.quantity = quantity
    db.flush()
    return level
