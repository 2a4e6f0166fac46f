from __future__ import annotations

from fastapi import Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from atelier.db import SessionLocal, get_db
from atelier.models import Shop


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def require_shop_id(shop_id: int | None = Query(default=None, alias='shopId')) -> int:
    if shop_id is None:
        raise HTTPException(status_code=400, detail='Shop ID is required')
    return shop_id


def get_shop(shop_id: int = Depends(require_shop_id), db: Session = Depends(get_db)) -> Shop:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise HTTPException(status_code=404, detail='Shop not found')
    return shop


def get_session_factory():
    return SessionLocal
