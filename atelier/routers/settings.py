from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from atelier.db import get_db
from atelier.dependencies import get_client_ip, get_shop
from atelier.errors import NotFoundError
from atelier.models import Shop
from atelier.schemas import ActiveIn, ColorMappingIn, MetafieldRuleIn, ShopSettingsPatch, SupplierPricingRuleIn
from atelier.services.audit_service import log_audit
from atelier.services.settings_service import (
    create_supplier_pricing_rule,
    delete_color_mapping,
    delete_metafield_rule,
    delete_supplier_pricing_rule,
    list_color_mappings,
    list_metafield_rules,
    list_supplier_pricing_rules,
    serialize_metafield_rule,
    serialize_shop,
    serialize_supplier_pricing_rule,
    set_color_mapping,
    set_supplier_pricing_rule_active,
    update_shop_settings,
    upsert_metafield_rule,
)

router = APIRouter(prefix='/settings', tags=['settings'])


@router.get('/shop')
def shop_settings(shop: Shop = Depends(get_shop)):
    return {'data': serialize_shop(shop)}


@router.patch('/shop')
def shop_settings_update(
    payload: ShopSettingsPatch,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        updated = update_shop_settings(
            db,
            shop_id=shop.id,
            name=payload.name,
            handling_fee=payload.handling_fee,
            clear_handling_fee=payload.clear_handling_fee,
            shopify_location_id=payload.shopify_location_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='SHOP_SETTINGS_UPDATED',
        ip=get_client_ip(request),
        metadata=payload.model_dump(mode='json', exclude_none=True),
    )
    db.commit()
    return {'data': serialize_shop(updated)}


@router.get('/colors')
def colors_index(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    return {'data': list_color_mappings(db, shop_id=shop.id)}


@router.put('/colors')
def colors_upsert(payload: ColorMappingIn, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        row = set_color_mapping(
            db,
            shop_id=shop.id,
            source_name=payload.source_name,
            canonical_name=payload.canonical_name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': {'source_name': row.source_name, 'canonical_name': row.canonical_name}}


@router.delete('/colors/{source_name}')
def colors_delete(source_name: str, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        delete_color_mapping(db, shop_id=shop.id, source_name=source_name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {'data': {'deleted': source_name}}


@router.get('/metafields')
def metafield_rules_index(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    return {'data': [serialize_metafield_rule(row) for row in list_metafield_rules(db, shop_id=shop.id)]}


@router.put('/metafields')
def metafield_rules_upsert(payload: MetafieldRuleIn, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        row = upsert_metafield_rule(
            db,
            shop_id=shop.id,
            metafield_key=payload.metafield_key,
            display_name=payload.display_name,
            display_order=payload.display_order,
            is_active=payload.is_active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'data': serialize_metafield_rule(row)}


@router.delete('/metafields/{rule_id}')
def metafield_rules_delete(rule_id: int, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        delete_metafield_rule(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {'data': {'deleted': rule_id}}


@router.get('/pricing-rules')
def pricing_rules_index(shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    return {'data': [serialize_supplier_pricing_rule(row) for row in list_supplier_pricing_rules(db, shop_id=shop.id)]}


@router.post('/pricing-rules')
def pricing_rules_create(
    payload: SupplierPricingRuleIn,
    request: Request,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        row = create_supplier_pricing_rule(
            db,
            shop_id=shop.id,
            rule_type=payload.rule_type,
            price_value=payload.price_value,
            condition_value=payload.condition_value,
            is_percentage=payload.is_percentage,
            priority=payload.priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        shop_id=shop.id,
        action='SUPPLIER_PRICING_RULE_CREATED',
        ip=get_client_ip(request),
        metadata={'rule_id': row.id, 'rule_type': row.rule_type.value},
    )
    db.commit()
    return {'data': serialize_supplier_pricing_rule(row)}


@router.patch('/pricing-rules/{rule_id}')
def pricing_rules_toggle(
    rule_id: int,
    payload: ActiveIn,
    shop: Shop = Depends(get_shop),
    db: Session = Depends(get_db),
):
    try:
        row = set_supplier_pricing_rule_active(db, shop_id=shop.id, rule_id=rule_id, is_active=payload.is_active)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {'data': serialize_supplier_pricing_rule(row)}


@router.delete('/pricing-rules/{rule_id}')
def pricing_rules_delete(rule_id: int, shop: Shop = Depends(get_shop), db: Session = Depends(get_db)):
    try:
        delete_supplier_pricing_rule(db, shop_id=shop.id, rule_id=rule_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {'data': {'deleted': rule_id}}
