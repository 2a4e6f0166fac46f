from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from atelier.db import get_db
from atelier.dependencies import get_shop
from atelier.errors import NotFoundError
from atelier.models import BillingScope, Shop
from atelier.routers.orders import order_gid
from atelier.schemas import BillingBalanceIn, BillingInvoiceIn, BillingNoteIn
from atelier.services.billing_service import (
    billing_status,
    compute_order_totals,
    month_total,
    set_balance,
    set_billing_note,
    set_invoiced,
    week_total,
)
from atelier.services.checklist_service import get_order
from atelier.services.settings_service import color_overrides

router = APIRouter(prefix='/billing', tags=['billing'])


@router.get('/orders/{order_id}')
def billing_order(order_id: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        order = get_order(db, shop_id=shop.id, order_id=order_gid(order_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    totals = compute_order_totals(
        db,
        shop=shop,
        orders=[order],
        color_overrides=color_overrides(db, shop_id=shop.id),
    )
    return {'data': totals[order.shopify_id].as_dict()}


@router.get('/weeks/{period_key}')
def billing_week(period_key: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        total = week_total(db, shop=shop, period_key=period_key, color_overrides=color_overrides(db, shop_id=shop.id))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {'data': total.as_dict()}


@router.get('/months/{period_key}')
def billing_month(period_key: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        total = month_total(db, shop=shop, period_key=period_key, color_overrides=color_overrides(db, shop_id=shop.id))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {'data': total.as_dict()}


@router.get('/status')
def billing_status_index(
    scope: BillingScope = Query(...),
    keys: list[str] = Query(default=[]),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    return {'data': billing_status(db, shop_id=shop.id, scope=scope, period_keys=keys)}


@router.put('/notes')
def billing_note(payload: BillingNoteIn, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        row = set_billing_note(db, shop_id=shop.id, scope=payload.scope, period_key=payload.period_key, note=payload.note)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': {'period_key': payload.period_key, 'note': row.note if row else None}}


@router.put('/invoices')
def billing_invoice(payload: BillingInvoiceIn, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        row = set_invoiced(
            db,
            shop_id=shop.id,
            scope=payload.scope,
            period_key=payload.period_key,
            invoiced=payload.invoiced,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': {'period_key': row.period_key, 'invoiced': row.invoiced}}


@router.put('/balances')
def billing_balance(payload: BillingBalanceIn, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        row = set_balance(db, shop_id=shop.id, scope=payload.scope, period_key=payload.period_key, amount=payload.amount)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': {'period_key': row.period_key, 'amount': row.amount}}
