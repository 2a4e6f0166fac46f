from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from atelier.db import get_db
from atelier.dependencies import get_client_ip, get_shop
from atelier.errors import NotFoundError
from atelier.models import Order, Shop
from atelier.routers.orders import order_gid
from atelier.schemas import BulkCheckIn, UnitCheckIn
from atelier.services.audit_service import log_audit
from atelier.services.checklist_service import (
    delete_checks_for_order,
    get_order,
    init_checks_for_order,
    list_unchecked_grouped,
    list_unit_states,
    purge_and_recalculate,
    set_all_checked,
    set_unit_checked,
    toggle_unit,
)
from atelier.services.order_sync_service import list_orders
from atelier.services.progress_service import group_progress, order_progress

router = APIRouter(prefix='/checklist', tags=['checklist'])


def _load_order(db: Session, shop: Shop, order_id: str) -> Order:
    try:
        return get_order(db, shop_id=shop.id, order_id=order_gid(order_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _state(db: Session, shop: Shop, order: Order) -> dict:
    return {
        'order_id': order.shopify_id,
        'progress': order_progress(db, shop_id=shop.id, order=order).as_dict(),
        'groups': [row.as_dict() for row in group_progress(db, shop_id=shop.id, order=order)],
        'units': list_unit_states(db, shop_id=shop.id, order=order),
    }


@router.get('/production')
def production_list(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    orders = [
        order
        for order in list_orders(db, shop_id=shop.id, limit=1000)
        if order.display_fulfillment_status != 'FULFILLED' and order.cancelled_at is None
    ]
    return {'data': list_unchecked_grouped(db, shop_id=shop.id, orders=orders)}


@router.get('/{order_id}')
def checklist_detail(order_id: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    order = _load_order(db, shop, order_id)
    return {'data': _state(db, shop, order)}


@router.post('/{order_id}/units')
def checklist_unit(
    order_id: str,
    payload: UnitCheckIn,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    order = _load_order(db, shop, order_id)
    try:
        if payload.checked is None:
            row = toggle_unit(
                db,
                shop_id=shop.id,
                order=order,
                product_index=payload.product_index,
                unit_index=payload.unit_index,
            )
        else:
            row = set_unit_checked(
                db,
                shop_id=shop.id,
                order=order,
                product_index=payload.product_index,
                unit_index=payload.unit_index,
                checked=payload.checked,
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {
        'data': {
            'id': row.id,
            'legacy_id': row.legacy_id,
            'checked': row.checked,
            'progress': order_progress(db, shop_id=shop.id, order=order).as_dict(),
        }
    }


@router.post('/{order_id}/init')
def checklist_init(order_id: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    order = _load_order(db, shop, order_id)
    created = init_checks_for_order(db, shop_id=shop.id, order=order)
    db.commit()
    return {'data': {'created': created}}


@router.post('/{order_id}/all')
def checklist_all(
    order_id: str,
    payload: BulkCheckIn,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    order = _load_order(db, shop, order_id)
    set_all_checked(db, shop_id=shop.id, order=order, checked=payload.checked)
    db.commit()
    return {'data': _state(db, shop, order)}


@router.post('/{order_id}/purge')
def checklist_purge(order_id: str, request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    order = _load_order(db, shop, order_id)
    progress = purge_and_recalculate(db, shop_id=shop.id, order=order)
    log_audit(
        db,
        shop_id=shop.id,
        action='CHECKLIST_RECALCULATED',
        ip=get_client_ip(request),
        metadata={'order_id': order.shopify_id, 'progress': progress.label},
    )
    db.commit()
    return {'data': progress.as_dict()}


@router.delete('/{order_id}')
def checklist_delete(order_id: str, request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    order = _load_order(db, shop, order_id)
    removed = delete_checks_for_order(db, shop_id=shop.id, order_id=order.shopify_id)
    log_audit(
        db,
        shop_id=shop.id,
        action='CHECKLIST_DELETED',
        ip=get_client_ip(request),
        metadata={'order_id': order.shopify_id, 'removed': removed},
    )
    db.commit()
    return {'data': {'removed': removed}}
