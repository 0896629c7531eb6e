# barberpro/routers/iugu_routes.py
from typing import Any, Dict

from fastapi import APIRouter, Depends

from barberpro.core.auth import get_current_user
from barberpro.core.db import get_db
from barberpro.core.deps import get_iugu_client
from barberpro.core.models import IuguChargePayload, IuguSubscriptionPayload
from barberpro.services import gateway_service

router = APIRouter(
    prefix="/iugu",
    tags=["Iugu"],
)


def _items(payload: IuguChargePayload):
    return [item.model_dump() for item in payload.items] if payload.items else None


@router.get("/account")
def iugu_account(db=Depends(get_db)):
    return {"success": True, "data": gateway_service.get_iugu_credentials(db)}


@router.post("/checkout/card")
def iugu_checkout_card(
    payload: IuguChargePayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    iugu=Depends(get_iugu_client),
):
    return gateway_service.create_iugu_charge(
        iugu, payload.email, payload.amount_cents, _items(payload),
        payment_token=payload.payment_token, require_token=True,
    )


@router.post("/checkout/pix")
def iugu_checkout_pix(
    payload: IuguChargePayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    iugu=Depends(get_iugu_client),
):
    return gateway_service.create_iugu_charge(iugu, payload.email, payload.amount_cents, _items(payload))


@router.post("/subscriptions")
def create_subscription(
    payload: IuguSubscriptionPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
    iugu=Depends(get_iugu_client),
):
    return gateway_service.create_iugu_subscription(
        db, iugu, current_user, payload.payment_token, payload.plano_id,
        payload.barbeiro_id, payload.email, payload.nome,
    )


@router.get("/subscriptions")
def list_subscriptions(current_user: Dict[str, Any] = Depends(get_current_user), db=Depends(get_db)):
    return gateway_service.list_iugu_subscriptions(db, current_user["uid"])


@router.delete("/subscriptions/{subscription_id}")
def cancel_subscription(
    subscription_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
    iugu=Depends(get_iugu_client),
):
    return gateway_service.cancel_iugu_subscription(db, iugu, current_user["uid"], subscription_id)
