# barberpro/routers/payment_routes.py
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import pytz
from fastapi import APIRouter, Depends, Header

from barberpro.core.auth import get_current_user, get_optional_user, get_owned_establishment
from barberpro.core.db import find_one, get_db, get_doc
from barberpro.core.deps import get_establishment_gateway_factory, get_platform_gateway_factory
from barberpro.core.errors import ServiceError
from barberpro.core.models import (
    AcquireCustomerPayload, CreatePixPayload, ManageSubscriptionPayload,
    PreapprovalPayload, RenewSubscriptionPayload, SubscriptionCheckoutPayload,
)
from barberpro.services import account_service, subscription_service
from barberpro.services.mercadopago_service import PLAN_TYPES

FALLBACK_PAYER_EMAIL = "cliente@barberpro.com"

router = APIRouter(
    prefix="/payments",
    tags=["Pagamentos"],
)


# --- PIX de agendamento (conta do próprio estabelecimento) ---
@router.post("/pix")
def create_booking_pix(
    payload: CreatePixPayload,
    x_idempotency_key: Optional[str] = Header(None),
    db=Depends(get_db),
    gateway_factory=Depends(get_establishment_gateway_factory),
):
    establishment = get_doc(db, "establishments", payload.establishment_id)
    if not establishment or not establishment.get("mp_access_token"):
        raise ServiceError("Establishment not configured for payments")

    appointment = payload.appointment_data
    external_reference = None
    if appointment.booking_id:
        external_reference = f"{subscription_service.BOOKING_REFERENCE_PREFIX}{payload.establishment_id}__{appointment.booking_id}"

    gateway = gateway_factory(establishment["mp_access_token"])
    result = gateway.create_pix_payment(
        amount=appointment.price,
        description=f"Agendamento - {appointment.service_name}",
        payer_email=appointment.client_email or FALLBACK_PAYER_EMAIL,
        payer_first_name=appointment.client_name,
        external_reference=external_reference,
        idempotency_key=x_idempotency_key,
    )
    logging.info(f"PIX de agendamento {result.get('payment_id')} criado para {payload.establishment_id}")
    return {
        "qr_code": result.get("qr_code"),
        "qr_code_base64": result.get("qr_code_base64"),
        "payment_id": result.get("payment_id"),
        "status": result.get("status"),
    }


# --- Assinatura recorrente (preapproval) ---
@router.post("/subscriptions/preapproval")
def create_preapproval(
    payload: PreapprovalPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
    gateway_factory=Depends(get_platform_gateway_factory),
):
    if payload.plan_type not in PLAN_TYPES:
        raise ServiceError("Invalid plan type")

    if payload.establishment_id:
        establishment = get_owned_establishment(db, current_user["uid"], payload.establishment_id)
    else:
        establishment = find_one(db, "establishments", "owner_id", current_user["uid"])
    if not establishment:
        raise ServiceError("Establishment not found or unauthorized")

    gateway = gateway_factory()
    preapproval = gateway.create_preapproval(
        payload.token, payload.payer_email, payload.plan_type,
        external_reference=f"{establishment['id']}__{payload.plan_type}",
    )
    db.collection("subscriptions").add({
        "establishment_id": establishment["id"],
        "user_id": current_user["uid"],
        "plan_id": payload.plan_type,
        "gateway": "mercadopago",
        "mp_preapproval_id": str(preapproval.get("id")),
        "status": "pending",
        "retry_count": 0,
        "updated_at": datetime.now(pytz.utc),
    })
    logging.info(f"Preapproval {preapproval.get('id')} criado para {establishment['id']} ({payload.plan_type})")
    return preapproval


# --- Checkout de plano SaaS (PIX ou Checkout Pro) ---
@router.post("/subscriptions/checkout")
def subscription_checkout(
    payload: SubscriptionCheckoutPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
    gateway_factory=Depends(get_platform_gateway_factory),
):
    get_owned_establishment(db, current_user["uid"], payload.establishment_id)
    plan = get_doc(db, "saas_plans", payload.plan_id)
    if not plan:
        raise ServiceError("Plan not found", status_code=404)

    reference = f"{payload.establishment_id}__{payload.plan_id}"
    metadata = {"type": "saas_subscription", "establishment_id": payload.establishment_id, "plan_id": payload.plan_id}
    payer_email = current_user.get("email") or FALLBACK_PAYER_EMAIL
    gateway = gateway_factory()

    if payload.payment_method == "pix":
        return gateway.create_pix_payment(
            amount=plan["price"], description=f"Subscription: {plan.get('name')}",
            payer_email=payer_email, external_reference=reference, metadata=metadata,
        )
    return gateway.create_preference(
        title=f"Subscription: {plan.get('name')}", price=plan["price"], payer_email=payer_email,
        external_reference=reference, item_id=payload.plan_id, metadata=metadata,
    )


@router.post("/subscriptions/renew")
def renew_subscription(
    payload: RenewSubscriptionPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
    gateway_factory=Depends(get_platform_gateway_factory),
):
    """Gera um PIX de renovação. A data de expiração só muda no webhook."""
    establishment = get_owned_establishment(db, current_user["uid"], payload.establishment_id)
    sub = find_one(db, "subscriptions", "establishment_id", payload.establishment_id, order_by="updated_at")
    plan_id = establishment.get("plan_id") or (sub or {}).get("plan_id")
    plan = get_doc(db, "saas_plans", plan_id)
    if not plan:
        raise ServiceError("Active subscription not found")

    total_amount = float(plan["price"]) * payload.months_to_add
    return gateway_factory().create_pix_payment(
        amount=total_amount,
        description=f"Renewal: {plan.get('name')} ({payload.months_to_add} months)",
        payer_email=current_user.get("email") or FALLBACK_PAYER_EMAIL,
        external_reference=f"{payload.establishment_id}__{plan['id']}",
        metadata={
            "type": "saas_renewal",
            "establishment_id": payload.establishment_id,
            "plan_id": plan["id"],
            "months_to_add": payload.months_to_add,
        },
    )


@router.post("/subscriptions/manage")
def manage_subscription(
    payload: ManageSubscriptionPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
):
    get_owned_establishment(db, current_user["uid"], payload.establishment_id)
    if payload.action != "cancel":
        raise ServiceError("Invalid action")

    subscription_service.cancel_subscription(db, payload.establishment_id)
    return {"success": True, "message": "Assinatura cancelada com sucesso.", "new_status": "cancelled"}


# --- Fast track ---
@router.post("/acquire-customer")
def acquire_customer(
    payload: AcquireCustomerPayload,
    current_user: Optional[Dict[str, Any]] = Depends(get_optional_user),
    db=Depends(get_db),
    gateway_factory=Depends(get_platform_gateway_factory),
):
    return account_service.acquire_customer(
        db, gateway_factory(), payload.model_dump(exclude_none=True), current_user
    )
