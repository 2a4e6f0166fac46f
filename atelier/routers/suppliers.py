from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from atelier.db import get_db, is_missing_table
from atelier.dependencies import get_client_ip, get_shop
from atelier.errors import NotFoundError
from atelier.models import Shop, SupplierOrderStatus
from atelier.schemas import SupplierItemPatch, SupplierItemsIn, SupplierOrderIn, SupplierOrderPatch
from atelier.services.audit_service import log_audit
from atelier.services.supplier_order_service import (
    NewItem,
    add_items,
    create_supplier_order,
    delete_supplier_order,
    get_detail,
    get_supplier_order,
    list_supplier_orders,
    remove_item,
    serialize_item,
    serialize_supplier_order,
    set_item_validated,
    update_item,
    update_supplier_order,
)

router = APIRouter(prefix='/suppliers/orders', tags=['suppliers'])


@router.get('')
def supplier_orders_index(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        rows = list_supplier_orders(db, shop_id=shop.id)
    except DBAPIError as exc:
        if not is_missing_table(exc):
            raise
        db.rollback()
        return {'data': []}
    return {'data': rows}


@router.post('')
def supplier_orders_create(
    payload: SupplierOrderIn,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    order = create_supplier_order(db, shop_id=shop.id, note=payload.note, location_id=payload.location_id)
    log_audit(
        db,
        shop_id=shop.id,
        action='SUPPLIER_ORDER_CREATED',
        ip=get_client_ip(request),
        metadata={'order_id': order.id, 'order_number': order.order_number},
    )
    db.commit()
    return {'data': serialize_supplier_order(order)}


@router.get('/{order_id}')
def supplier_orders_detail(order_id: int, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        detail = get_detail(db, shop_id=shop.id, order_id=order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {'data': detail}


@router.patch('/{order_id}')
def supplier_orders_update(
    order_id: int,
    payload: SupplierOrderPatch,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        order, completion = update_supplier_order(
            db,
            shop=shop,
            order_id=order_id,
            status=payload.status,
            note=payload.note,
            balance_adjustment=payload.balance_adjustment,
            location_id=payload.location_id,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    metadata = {'order_id': order.id, 'status': order.status.value}
    if completion is not None:
        metadata['inventory'] = completion.summary()
    log_audit(
        db,
        shop_id=shop.id,
        action='SUPPLIER_ORDER_COMPLETED' if order.status == SupplierOrderStatus.COMPLETED else 'SUPPLIER_ORDER_UPDATED',
        ip=get_client_ip(request),
        metadata=metadata,
    )
    db.commit()
    data = serialize_supplier_order(order)
    if completion is not None:
        data['inventory'] = completion.summary()
    return {'data': data}


@router.delete('/{order_id}')
def supplier_orders_delete(order_id: int, request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        delete_supplier_order(db, shop_id=shop.id, order_id=order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    log_audit(db, shop_id=shop.id, action='SUPPLIER_ORDER_DELETED', ip=get_client_ip(request), metadata={'order_id': order_id})
    db.commit()
    return {'data': {'deleted': order_id}}


@router.post('/{order_id}/items')
def supplier_items_add(
    order_id: int,
    payload: SupplierItemsIn,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        add_items(
            db,
            shop_id=shop.id,
            order_id=order_id,
            items=[NewItem(variant_id=row.variant_id, quantity=row.quantity) for row in payload.items],
        )
        detail = get_detail(db, shop_id=shop.id, order_id=order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': detail}


@router.patch('/{order_id}/items/{item_id}')
def supplier_items_update(
    order_id: int,
    item_id: int,
    payload: SupplierItemPatch,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    if payload.quantity is None and payload.unit_price is None and payload.is_validated is None:
        raise HTTPException(status_code=400, detail='Nothing to update')
    try:
        if payload.quantity is not None or payload.unit_price is not None:
            item = update_item(
                db,
                shop_id=shop.id,
                order_id=order_id,
                item_id=item_id,
                quantity=payload.quantity,
                unit_price=payload.unit_price,
            )
        if payload.is_validated is not None:
            item = set_item_validated(
                db,
                shop_id=shop.id,
                order_id=order_id,
                item_id=item_id,
                validated=payload.is_validated,
            )
        order = get_supplier_order(db, shop_id=shop.id, order_id=order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': {'item': serialize_item(item), 'order': serialize_supplier_order(order)}}


@router.delete('/{order_id}/items/{item_id}')
def supplier_items_delete(order_id: int, item_id: int, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        remove_item(db, shop_id=shop.id, order_id=order_id, item_id=item_id)
        order = get_supplier_order(db, shop_id=shop.id, order_id=order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': serialize_supplier_order(order)}
