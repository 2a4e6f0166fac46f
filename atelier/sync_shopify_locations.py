from __future__ import annotations

import argparse

from sqlalchemy import select

from atelier.db import SessionLocal
from atelier.logging import configure_logging
from atelier.models import Shop
from atelier.services.order_sync_service import sync_locations


def sync_all(*, shop_id: int | None = None) -> dict[int, tuple[int, int, int]]:
    results: dict[int, tuple[int, int, int]] = {}
    with SessionLocal() as db:
        stmt = select(Shop).order_by(Shop.id.asc())
        if shop_id is not None:
            stmt = stmt.where(Shop.id == shop_id)
        for shop in db.execute(stmt).scalars().all():
            results[shop.id] = sync_locations(db, shop=shop)
        db.commit()
    return results


def main() -> None:
    parser = argparse.ArgumentParser(description='Sync locations from Shopify for every shop.')
    parser.add_argument('--shop-id', type=int, default=None, help='Only sync this shop.')
    args = parser.parse_args()

    configure_logging()
    results = sync_all(shop_id=args.shop_id)
    if not results:
        print('No shops to sync')
    for shop_id, (created, updated, deactivated) in results.items():
        print(
            f'Shopify location sync complete for shop {shop_id}: '
            f'created={created}, updated={updated}, deactivated={deactivated}'
        )


if __name__ == '__main__':
    main()
