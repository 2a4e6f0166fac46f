from __future__ import annotations

import argparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.config import settings
from atelier.db import SessionLocal
from atelier.logging import configure_logging
from atelier.models import Shop
from atelier.services.order_sync_service import OrderSyncResult, cleanup_old_orders, sync_orders
from atelier.services.shopify_client import legacy_client, normalize_shop_domain


def legacy_shop(db: Session) -> Shop:
    if not settings.shopify_url or not settings.shopify_token:
        raise RuntimeError('SHOPIFY_URL and SHOPIFY_TOKEN are required')
    domain = normalize_shop_domain(settings.shopify_url)
    for shop in db.execute(select(Shop)).scalars().all():
        if normalize_shop_domain(shop.shopify_url) == domain:
            shop.shopify_token = settings.shopify_token
            if settings.shopify_location_id and not shop.shopify_location_id:
                shop.shopify_location_id = settings.shopify_location_id
            return shop

    shop = Shop(
        name=domain.split('.', 1)[0],
        shopify_url=domain,
        shopify_token=settings.shopify_token,
        shopify_location_id=settings.shopify_location_id,
    )
    db.add(shop)
    db.flush()
    return shop


def run(*, shop_id: int | None = None, cleanup: bool = False) -> tuple[OrderSyncResult, int]:
    with SessionLocal() as db:
        if shop_id is None:
            shop = legacy_shop(db)
            client = legacy_client()
        else:
            shop = db.get(Shop, shop_id)
            if shop is None:
                raise RuntimeError(f'Shop {shop_id} not found')
            client = None

        result = sync_orders(db, shop=shop, client=client)
        removed = cleanup_old_orders(db, shop_id=shop.id) if cleanup else 0
        db.commit()
    return result, removed


def main() -> None:
    parser = argparse.ArgumentParser(description='Sync recent orders from Shopify.')
    parser.add_argument(
        '--shop-id',
        type=int,
        default=None,
        help='Shop to sync. Without it the SHOPIFY_URL / SHOPIFY_TOKEN store is used.',
    )
    parser.add_argument(
        '--cleanup',
        action='store_true',
        help='Delete stored orders older than the retention window after syncing.',
    )
    args = parser.parse_args()

    configure_logging()
    result, removed = run(shop_id=args.shop_id, cleanup=args.cleanup)
    print(
        'Shopify order sync complete: '
        f'fetched={result.fetched}, upserted={result.upserted}, excluded={result.excluded}, '
        f'pages={result.pages}, removed={removed}'
    )
    if result.error:
        print(f'Sync stopped early: {result.error}')


if __name__ == '__main__':
    main()
