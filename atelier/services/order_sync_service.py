from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.errors import NotFoundError
from atelier.logging import get_logger
from atelier.models import LineItemCheck, Location, Order, Shop, SyncRun, SyncStatus
from atelier.services.line_items import metafields_from_payload, metafields_to_payload
from atelier.services.shopify_client import ShopifyApiError, ShopifyClient, client_for_shop, gid_to_id

logger = get_logger(__name__)

ORDERS_QUERY = '''
query SyncOrders($first: Int!, $cursor: String) {
  orders(first: $first, after: $cursor, sortKey: CREATED_AT, reverse: true) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      name
      tags
      note
      createdAt
      cancelledAt
      displayFulfillmentStatus
      displayFinancialStatus
      totalPriceSet {
        shopMoney {
          amount
          currencyCode
        }
      }
      lineItems(first: 100) {
        nodes {
          id
          title
          sku
          variantTitle
          quantity
          refundableQuantity
          originalUnitPriceSet {
            shopMoney {
              amount
            }
          }
          product {
            productType
          }
          variant {
            id
            selectedOptions {
              name
              value
            }
            metafields(first: 20) {
              nodes {
                namespace
                key
                value
              }
            }
          }
        }
      }
    }
  }
}
'''

FULFILL_QUERY = '''
query FulfillmentOrders($id: ID!) {
  order(id: $id) {
    fulfillmentOrders(first: 10) {
      nodes {
        id
        status
      }
    }
  }
}
'''

FULFILL_MUTATION = '''
mutation FulfillOrder($fulfillment: FulfillmentInput!) {
  fulfillmentCreate(fulfillment: $fulfillment) {
    fulfillment {
      id
      status
    }
    userErrors {
      field
      message
    }
  }
}
'''

OPEN_FULFILLMENT_STATUSES = {'OPEN', 'IN_PROGRESS'}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class OrderSyncResult:
    sync_run_id: int
    fetched: int
    upserted: int
    excluded: int
    pages: int
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            'sync_run_id': self.sync_run_id,
            'fetched': self.fetched,
            'upserted': self.upserted,
            'excluded': self.excluded,
            'pages': self.pages,
            'error': self.error,
        }


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _money(value: dict | None) -> tuple[Decimal, str | None]:
    shop_money = (value or {}).get('shopMoney') or {}
    amount = shop_money.get('amount')
    return Decimal(str(amount)) if amount is not None else Decimal('0'), shop_money.get('currencyCode')


def line_item_payload(node: dict) -> dict:
    variant = node.get('variant') or {}
    price, _ = _money(node.get('originalUnitPriceSet'))
    return {
        'id': node.get('id'),
        'title': node.get('title') or '',
        'sku': node.get('sku'),
        'variantTitle': node.get('variantTitle'),
        'quantity': node.get('quantity') or 0,
        'refundableQuantity': node.get('refundableQuantity'),
        'price': str(price),
        'productType': (node.get('product') or {}).get('productType'),
        'variantId': variant.get('id'),
        'selectedOptions': variant.get('selectedOptions') or [],
        'metafields': metafields_to_payload(metafields_from_payload(variant.get('metafields'))),
    }


def order_values(node: dict) -> dict:
    total, currency = _money(node.get('totalPriceSet'))
    name = node.get('name') or ''
    return {
        'name': name,
        'order_number': name.lstrip('#') or gid_to_id(node.get('id')),
        'created_at': _parse_datetime(node.get('createdAt')) or _now(),
        'cancelled_at': _parse_datetime(node.get('cancelledAt')),
        'display_fulfillment_status': node.get('displayFulfillmentStatus') or 'UNFULFILLED',
        'display_financial_status': node.get('displayFinancialStatus') or 'PENDING',
        'total_price': total,
        'currency': currency or 'EUR',
        'note': node.get('note'),
        'tags': list(node.get('tags') or []),
        'line_items': [line_item_payload(item) for item in ((node.get('lineItems') or {}).get('nodes') or [])],
    }


def is_excluded(tags: list[str] | None, excluded_tags: list[str] | None = None) -> bool:
    excluded = {tag.strip().lower() for tag in (excluded_tags or settings.excluded_order_tags)}
    return any((tag or '').strip().lower() in excluded for tag in tags or [])


def fetch_order_pages(client: ShopifyClient, *, page_size: int | None = None) -> tuple[list[dict], int, str | None]:
    nodes: list[dict] = []
    cursor: str | None = None
    pages = 0
    while True:
        try:
            data = client.graphql(
                ORDERS_QUERY,
                {'first': page_size or settings.shopify_orders_page_size, 'cursor': cursor},
            )
        except ShopifyApiError as exc:
            logger.warning('order_page_failed', page=pages + 1, error=str(exc))
            return nodes, pages, str(exc)
        connection = data.get('orders') or {}
        nodes.extend(connection.get('nodes') or [])
        pages += 1
        page_info = connection.get('pageInfo') or {}
        cursor = page_info.get('endCursor')
        if not page_info.get('hasNextPage') or not cursor:
            break
    return nodes, pages, None


def upsert_orders(db: Session, *, shop_id: int, nodes: list[dict]) -> tuple[int, int]:
    existing = {
        row.shopify_id: row
        for row in db.execute(select(Order).where(Order.shop_id == shop_id)).scalars().all()
    }
    upserted = 0
    excluded_ids: list[str] = []
    for node in nodes:
        shopify_id = (node.get('id') or '').strip()
        if not shopify_id:
            continue
        if is_excluded(node.get('tags')):
            excluded_ids.append(shopify_id)
            continue
        values = order_values(node)
        order = existing.get(shopify_id)
        if order is None:
            order = Order(shop_id=shop_id, shopify_id=shopify_id, **values)
            db.add(order)
            existing[shopify_id] = order
        else:
            for field_name, value in values.items():
                setattr(order, field_name, value)
        order.synced_at = _now()
        upserted += 1

    if excluded_ids:
        db.execute(
            delete(LineItemCheck).where(LineItemCheck.shop_id == shop_id, LineItemCheck.order_id.in_(excluded_ids))
        )
        db.execute(delete(Order).where(Order.shop_id == shop_id, Order.shopify_id.in_(excluded_ids)))
    db.flush()
    return upserted, len(excluded_ids)


def sync_orders(db: Session, *, shop: Shop, client: ShopifyClient | None = None) -> OrderSyncResult:
    run = SyncRun(shop_id=shop.id, status=SyncStatus.RUNNING, started_at=_now())
    db.add(run)
    db.flush()

    try:
        nodes, pages, page_error = fetch_order_pages(client or client_for_shop(shop))
        upserted, excluded = upsert_orders(db, shop_id=shop.id, nodes=nodes)
    except Exception as exc:
        run.status = SyncStatus.FAILED
        run.error = str(exc)
        run.completed_at = _now()
        db.flush()
        logger.exception('order_sync_failed', shop_id=shop.id)
        raise

    run.status = SyncStatus.COMPLETED if page_error is None else SyncStatus.FAILED
    run.error = page_error
    run.orders_count = upserted
    run.completed_at = _now()
    db.flush()
    logger.info(
        'order_sync_completed',
        shop_id=shop.id,
        fetched=len(nodes),
        upserted=upserted,
        excluded=excluded,
        pages=pages,
    )
    return OrderSyncResult(
        sync_run_id=run.id,
        fetched=len(nodes),
        upserted=upserted,
        excluded=excluded,
        pages=pages,
        error=page_error,
    )


def cleanup_old_orders(db: Session, *, shop_id: int, months: int | None = None, now: datetime | None = None) -> int:
    months = settings.order_retention_months if months is None else months
    if months <= 0:
        raise ValueError('Retention must be at least one month')
    cutoff = (now or _now()) - timedelta(days=30 * months)
    stale_ids = db.execute(
        select(Order.shopify_id).where(Order.shop_id == shop_id, Order.created_at < cutoff)
    ).scalars().all()
    if not stale_ids:
        return 0
    db.execute(delete(LineItemCheck).where(LineItemCheck.shop_id == shop_id, LineItemCheck.order_id.in_(stale_ids)))
    db.execute(delete(Order).where(Order.shop_id == shop_id, Order.shopify_id.in_(stale_ids)))
    db.flush()
    logger.info('orders_cleaned_up', shop_id=shop_id, removed=len(stale_ids), cutoff=cutoff.isoformat())
    return len(stale_ids)


def mark_order_fulfilled(
    db: Session,
    *,
    shop: Shop,
    order_id: str,
    client: ShopifyClient | None = None,
) -> Order:
    order = db.execute(
        select(Order).where(Order.shop_id == shop.id, Order.shopify_id == order_id)
    ).scalar_one_or_none()
    if order is None:
        raise NotFoundError('Order not found')
    if order.display_fulfillment_status == 'FULFILLED':
        return order

    client = client or client_for_shop(shop)
    data = client.graphql(FULFILL_QUERY, {'id': order.shopify_id})
    fulfillment_orders = (((data.get('order') or {}).get('fulfillmentOrders') or {}).get('nodes')) or []
    open_ids = [row['id'] for row in fulfillment_orders if row.get('status') in OPEN_FULFILLMENT_STATUSES]
    if open_ids:
        result = client.graphql(
            FULFILL_MUTATION,
            {
                'fulfillment': {
                    'lineItemsByFulfillmentOrder': [{'fulfillmentOrderId': fid} for fid in open_ids],
                    'notifyCustomer': False,
                }
            },
        )
        user_errors = (result.get('fulfillmentCreate') or {}).get('userErrors') or []
        if user_errors:
            raise ValueError(f"Shopify refused fulfillment: {user_errors[0].get('message')}")

    order.display_fulfillment_status = 'FULFILLED'
    order.synced_at = _now()
    db.flush()
    return order


def sync_locations(db: Session, *, shop: Shop, client: ShopifyClient | None = None) -> tuple[int, int, int]:
    client = client or client_for_shop(shop)
    remote = client.get('locations.json').get('locations') or []
    by_shopify_id = {
        row.shopify_id: row
        for row in db.execute(select(Location).where(Location.shop_id == shop.id)).scalars().all()
    }

    created = 0
    updated = 0
    deactivated = 0
    seen: set[str] = set()
    for payload in remote:
        shopify_id = str(payload.get('id') or '').strip()
        if not shopify_id:
            continue
        seen.add(shopify_id)
        name = (payload.get('name') or '').strip() or shopify_id
        active = bool(payload.get('active', True))
        existing = by_shopify_id.get(shopify_id)
        if existing is None:
            db.add(Location(shop_id=shop.id, shopify_id=shopify_id, name=name, active=active, synced_at=_now()))
            created += 1
            continue
        if existing.name != name or existing.active != active:
            existing.name = name
            existing.active = active
            updated += 1
        existing.synced_at = _now()

    for existing in by_shopify_id.values():
        if existing.shopify_id not in seen and existing.active:
            existing.active = False
            existing.synced_at = _now()
            deactivated += 1

    db.flush()
    return created, updated, deactivated


def list_orders(
    db: Session,
    *,
    shop_id: int,
    fulfillment_status: str | None = None,
    limit: int = 200,
) -> list[Order]:
    stmt = select(Order).where(Order.shop_id == shop_id)
    if fulfillment_status:
        stmt = stmt.where(Order.display_fulfillment_status == fulfillment_status.upper())
    return db.execute(stmt.order_by(Order.created_at.desc()).limit(limit)).scalars().all()


def serialize_order(order: Order) -> dict:
    return {
        'id': order.shopify_id,
        'name': order.name,
        'order_number': order.order_number,
        'created_at': order.created_at,
        'cancelled_at': order.cancelled_at,
        'display_fulfillment_status': order.display_fulfillment_status,
        'display_financial_status': order.display_financial_status,
        'total_price': order.total_price,
        'currency': order.currency,
        'note': order.note,
        'tags': order.tags or [],
        'line_items': order.line_items or [],
    }
