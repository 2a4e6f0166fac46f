from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from atelier.db import get_db, is_missing_table
from atelier.dependencies import get_client_ip, get_session_factory, get_shop
from atelier.errors import NotFoundError
from atelier.models import Shop
from atelier.schemas import CostRuleIn, CostRulePatch, PriceRuleIn, PriceRulePatch
from atelier.services.audit_service import log_audit
from atelier.services.cost_rule_service import (
    MetafieldModifierInput,
    OptionModifierInput,
    apply_cost_rules_locally,
    create_cost_rule,
    delete_cost_rule,
    get_cost_rule,
    list_cost_rules,
    serialize_cost_rule,
    stream_cost_rule_application,
    update_cost_rule,
)
from atelier.services.price_rule_service import (
    create_price_rule,
    delete_price_rule,
    list_price_rules,
    match_price_rules,
    serialize_price_rule,
    update_price_rule,
)
from atelier.services.stream_events import SSE_MEDIA_TYPE

router = APIRouter(tags=['rules'])


def _metafield_inputs(rows) -> list[MetafieldModifierInput] | None:
    if rows is None:
        return None
    return [MetafieldModifierInput(namespace=row.namespace, key=row.key, value=row.value, amount=row.amount) for row in rows]


def _option_inputs(rows) -> list[OptionModifierInput] | None:
    if rows is None:
        return None
    return [
        OptionModifierInput(option_name=row.option_name, option_value=row.option_value, amount=row.amount)
        for row in rows
    ]


@router.get('/price-rules')
def price_rules_index(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        rules = list_price_rules(db, shop_id=shop.id)
    except DBAPIError as exc:
        if not is_missing_table(exc):
            raise
        db.rollback()
        return {'data': []}
    return {'data': [serialize_price_rule(rule) for rule in rules]}


@router.get('/price-rules/preview')
def price_rules_preview(
    descriptor: str = Query(..., min_length=1),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    match = match_price_rules(descriptor, list_price_rules(db, shop_id=shop.id, active_only=True))
    return {
        'data': {
            'descriptor': match.descriptor,
            'total': match.total,
            'matched': [serialize_price_rule(rule) for rule in match.matched],
        }
    }


@router.post('/price-rules')
def price_rules_create(
    payload: PriceRuleIn,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        rule = create_price_rule(
            db,
            shop_id=shop.id,
            search_string=payload.search_string,
            price=payload.price,
            priority=payload.priority,
            is_active=payload.is_active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='PRICE_RULE_CREATED',
        ip=get_client_ip(request),
        metadata={'rule_id': rule.id, 'search_string': rule.search_string},
    )
    db.commit()
    return {'data': serialize_price_rule(rule)}


@router.patch('/price-rules/{rule_id}')
def price_rules_update(
    rule_id: int,
    payload: PriceRulePatch,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        rule = update_price_rule(
            db,
            shop_id=shop.id,
            rule_id=rule_id,
            search_string=payload.search_string,
            price=payload.price,
            priority=payload.priority,
            is_active=payload.is_active,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='PRICE_RULE_UPDATED',
        ip=get_client_ip(request),
        metadata={'rule_id': rule.id},
    )
    db.commit()
    return {'data': serialize_price_rule(rule)}


@router.delete('/price-rules/{rule_id}')
def price_rules_delete(rule_id: int, request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        delete_price_rule(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    log_audit(db, shop_id=shop.id, action='PRICE_RULE_DELETED', ip=get_client_ip(request), metadata={'rule_id': rule_id})
    db.commit()
    return {'data': {'deleted': rule_id}}


@router.get('/cost-rules')
def cost_rules_index(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        rules = list_cost_rules(db, shop_id=shop.id)
    except DBAPIError as exc:
        if not is_missing_table(exc):
            raise
        db.rollback()
        return {'data': []}
    return {'data': [serialize_cost_rule(rule) for rule in rules]}


@router.post('/cost-rules')
def cost_rules_create(
    payload: CostRuleIn,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        rule = create_cost_rule(
            db,
            shop_id=shop.id,
            sku=payload.sku,
            base_price=payload.base_price,
            description=payload.description,
            product_type=payload.product_type,
            metafield_modifiers=_metafield_inputs(payload.metafield_modifiers),
            option_modifiers=_option_inputs(payload.option_modifiers),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='COST_RULE_CREATED',
        ip=get_client_ip(request),
        metadata={'rule_id': rule.id, 'sku': rule.sku},
    )
    db.commit()
    return {'data': serialize_cost_rule(rule)}


@router.post('/cost-rules/apply-local')
def cost_rules_apply_local(
    request: Request,
    rule_id: int | None = Query(default=None, alias='ruleId'),
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        items, orders = apply_cost_rules_locally(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='COST_RULES_APPLIED_LOCALLY',
        ip=get_client_ip(request),
        metadata={'rule_id': rule_id, 'items': items, 'orders': orders},
    )
    db.commit()
    return {'data': {'items': items, 'orders': orders}}


@router.get('/cost-rules/{rule_id}')
def cost_rules_detail(rule_id: int, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        rule = get_cost_rule(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {'data': serialize_cost_rule(rule)}


@router.patch('/cost-rules/{rule_id}')
def cost_rules_update(
    rule_id: int,
    payload: CostRulePatch,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        rule = update_cost_rule(
            db,
            shop_id=shop.id,
            rule_id=rule_id,
            sku=payload.sku,
            base_price=payload.base_price,
            description=payload.description,
            product_type=payload.product_type,
            is_active=payload.is_active,
            metafield_modifiers=_metafield_inputs(payload.metafield_modifiers),
            option_modifiers=_option_inputs(payload.option_modifiers),
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(db, shop_id=shop.id, action='COST_RULE_UPDATED', ip=get_client_ip(request), metadata={'rule_id': rule.id})
    db.commit()
    return {'data': serialize_cost_rule(rule)}


@router.delete('/cost-rules/{rule_id}')
def cost_rules_delete(rule_id: int, request: Request, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        delete_cost_rule(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    log_audit(db, shop_id=shop.id, action='COST_RULE_DELETED', ip=get_client_ip(request), metadata={'rule_id': rule_id})
    db.commit()
    return {'data': {'deleted': rule_id}}


@router.get('/cost-rules/{rule_id}/apply-stream')
def cost_rules_apply_stream(
    rule_id: int,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    try:
        get_cost_rule(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='COST_RULE_APPLY_STARTED',
        ip=get_client_ip(request),
        metadata={'rule_id': rule_id},
    )
    db.commit()
    return StreamingResponse(
        stream_cost_rule_application(shop.id, rule_id, session_factory=session_factory),
        media_type=SSE_MEDIA_TYPE,
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
