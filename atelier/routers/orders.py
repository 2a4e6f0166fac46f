from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from atelier.db import get_db, is_missing_table
from atelier.dependencies import get_client_ip, get_shop
from atelier.errors import NotFoundError
from atelier.models import Shop
from atelier.services.audit_service import log_audit
from atelier.services.checklist_service import get_order
from atelier.services.order_sync_service import (
    cleanup_old_orders,
    list_orders,
    mark_order_fulfilled,
    serialize_order,
    sync_locations,
    sync_orders,
)
from atelier.services.progress_service import group_progress, order_progress, orders_progress
from atelier.services.shopify_client import ShopifyApiError, to_gid

router = APIRouter(prefix='/orders', tags=['orders'])


def order_gid(order_id: str) -> str:
    return to_gid('Order', order_id)


@router.get('')
def orders_index(
    status: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        orders = list_orders(db, shop_id=shop.id, fulfillment_status=status, limit=limit)
        progress = orders_progress(db, shop_id=shop.id, orders=orders)
    except DBAPIError as exc:
        if not is_missing_table(exc):
            raise
        db.rollback()
        return {'data': []}
    return {
        'data': [
            {**serialize_order(order), 'progress': progress[order.shopify_id].as_dict()}
            for order in orders
        ]
    }


@router.post('/sync')
def orders_sync(request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        result = sync_orders(db, shop=shop)
    except ShopifyApiError as exc:
        db.commit()
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='ORDERS_SYNCED',
        ip=get_client_ip(request),
        metadata=result.as_dict(),
    )
    db.commit()
    return {'data': result.as_dict()}


@router.post('/cleanup')
def orders_cleanup(
    request: Request,
    months: int | None = Query(default=None, ge=1),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        removed = cleanup_old_orders(db, shop_id=shop.id, months=months)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='ORDERS_CLEANED_UP',
        ip=get_client_ip(request),
        metadata={'removed': removed, 'months': months},
    )
    db.commit()
    return {'data': {'removed': removed}}


@router.post('/locations/sync')
def locations_sync(request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        created, updated, deactivated = sync_locations(db, shop=shop)
    except ShopifyApiError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='LOCATIONS_SYNCED',
        ip=get_client_ip(request),
        metadata={'created': created, 'updated': updated, 'deactivated': deactivated},
    )
    db.commit()
    return {'data': {'created': created, 'updated': updated, 'deactivated': deactivated}}


@router.get('/{order_id}')
def order_detail(order_id: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        order = get_order(db, shop_id=shop.id, order_id=order_gid(order_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        'data': {
            **serialize_order(order),
            'progress': order_progress(db, shop_id=shop.id, order=order).as_dict(),
            'groups': [row.as_dict() for row in group_progress(db, shop_id=shop.id, order=order)],
        }
    }


@router.post('/{order_id}/fulfill')
def order_fulfill(order_id: str, request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        order = mark_order_fulfilled(db, shop=shop, order_id=order_gid(order_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ShopifyApiError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='ORDER_FULFILLED',
        ip=get_client_ip(request),
        metadata={'order_id': order.shopify_id},
    )
    db.commit()
    return {'data': serialize_order(order)}
