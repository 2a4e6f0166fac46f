from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from atelier.db import get_db, is_missing_table
from atelier.dependencies import get_client_ip, get_session_factory, get_shop
from atelier.errors import NotFoundError
from atelier.models import Shop
from atelier.schemas import InventoryQuantityIn
from atelier.services.audit_service import log_audit
from atelier.services.inventory_sync_service import (
    list_inventory,
    push_inventory_levels,
    set_local_quantity,
    stream_inventory_sync,
)
from atelier.services.settings_service import list_locations
from atelier.services.stream_events import SSE_MEDIA_TYPE

router = APIRouter(prefix='/inventory', tags=['inventory'])


def _location_id(shop: Shop, location_id: str | None) -> str:
    resolved = (location_id or '').strip() or (shop.shopify_location_id or '')
    if not resolved:
        raise HTTPException(status_code=400, detail='Location ID is required')
    return resolved


@router.get('')
def inventory_index(
    location_id: str | None = Query(default=None, alias='locationId'),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        rows = list_inventory(db, shop_id=shop.id, location_id=location_id or shop.shopify_location_id)
    except DBAPIError as exc:
        if not is_missing_table(exc):
            raise
        db.rollback()
        return {'data': []}
    return {'data': rows}


@router.get('/locations')
def inventory_locations(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    return {
        'data': [
            {'id': row.shopify_id, 'name': row.name, 'active': row.active}
            for row in list_locations(db, shop_id=shop.id)
        ]
    }


@router.get('/sync-stream')
def inventory_sync_stream(
    request: Request,
    location_id: str | None = Query(default=None, alias='locationId'),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    resolved = _location_id(shop, location_id)
    log_audit(
        db,
        shop_id=shop.id,
        action='INVENTORY_SYNC_STARTED',
        ip=get_client_ip(request),
        metadata={'location_id': resolved},
    )
    db.commit()
    return StreamingResponse(
        stream_inventory_sync(shop.id, resolved, session_factory=session_factory),
        media_type=SSE_MEDIA_TYPE,
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )


@router.post('/push')
def inventory_push(
    request: Request,
    location_id: str | None = Query(default=None, alias='locationId'),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    resolved = _location_id(shop, location_id)
    try:
        result = push_inventory_levels(db, shop=shop, location_id=resolved)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='INVENTORY_PUSHED',
        ip=get_client_ip(request),
        metadata={'location_id': resolved, **result.summary()},
    )
    db.commit()
    return {'data': result.summary()}


@router.put('/{variant_id}')
def inventory_set_quantity(
    variant_id: int,
    payload: InventoryQuantityIn,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        level = set_local_quantity(
            db,
            shop_id=shop.id,
            variant_id=variant_id,
            location_id=payload.location_id,
            quantity=payload.quantity,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': {'variant_id': level.variant_id, 'location_id': level.location_id, 'quantity': level.quantity}}
