# barberpro/services/gateway_service.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
from firebase_admin import firestore
from google.cloud.firestore import FieldFilter

from barberpro.core import config
from barberpro.core.auth import is_super_admin
from barberpro.core.db import find_one, get_doc
from barberpro.core.errors import ForbiddenError, GatewayError, NotFoundError, ServiceError
from barberpro.services import whatsapp_service
from barberpro.services.iugu_service import IuguClient

PUBLIC_GATEWAY_FIELDS = ("provider", "account_id", "is_active")


# --- Credenciais dos gateways da plataforma (system_gateways) ---
def _public_view(gateway: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not gateway:
        return None
    return {field: gateway.get(field) for field in PUBLIC_GATEWAY_FIELDS}


def save_iugu_credentials(db, account_id: str, api_token: str) -> Dict[str, Any]:
    db.collection("system_gateways").document("iugu").set({
        "provider": "iugu",
        "account_id": account_id,
        "api_token": api_token,
        "updated_at": firestore.SERVER_TIMESTAMP,
    }, merge=True)
    logging.info(f"Credenciais do Iugu atualizadas (conta {account_id}).")
    return _public_view(get_doc(db, "system_gateways", "iugu"))


def get_iugu_credentials(db) -> Optional[Dict[str, Any]]:
    """Dados públicos da conta Iugu. O token nunca sai da API."""
    return _public_view(get_doc(db, "system_gateways", "iugu"))


def activate_provider(db, provider: str) -> None:
    """Deixa exatamente um gateway ativo."""
    if not provider:
        raise ServiceError("Provider é obrigatório")
    for doc in db.collection("system_gateways").stream():
        if doc.id != provider:
            doc.reference.update({"is_active": False})
    db.collection("system_gateways").document(provider).set({"provider": provider, "is_active": True}, merge=True)
    logging.info(f"Gateway ativo da plataforma: {provider}")


def resolve_iugu_token(db) -> Optional[str]:
    gateway = get_doc(db, "system_gateways", "iugu") or {}
    return gateway.get("api_token") or config.IUGU_API_TOKEN


def default_iugu_webhook_url() -> str:
    url = f"{config.API_BASE_URL}/webhooks/iugu"
    if config.IUGU_WEBHOOK_TOKEN:
        url = f"{url}?token={config.IUGU_WEBHOOK_TOKEN}"
    return url


def register_iugu_triggers(db, iugu: IuguClient, target_url: Optional[str] = None,
                           events: Optional[List[str]] = None) -> Dict[str, Any]:
    target_url = target_url or default_iugu_webhook_url()
    results = iugu.register_triggers(target_url, events)
    whatsapp_service.log_attempt(db, None, None, "iugu_triggers_registered",
                                 f"Triggers registrados para {len(results)} eventos", "sent")
    return {"ok": True, "targetUrl": target_url, "results": results}


# --- Checkout e assinaturas Iugu ---
def create_iugu_charge(iugu: IuguClient, email: Optional[str], amount_cents: Optional[int],
                       items: Optional[List[Dict[str, Any]]] = None,
                       payment_token: Optional[str] = None, require_token: bool = False) -> Dict[str, Any]:
    if not email or not amount_cents or (require_token and not payment_token):
        raise ServiceError("Dados inválidos")
    charge = iugu.create_charge(email, amount_cents=amount_cents, items=items, payment_token=payment_token)
    return {"success": True, "data": charge}


def create_iugu_subscription(db, iugu: IuguClient, requester: Dict[str, Any], payment_token: str,
                             plan_id: str, user_id: str, email: str, name: str) -> Dict[str, Any]:
    """
    Cria cliente + forma de pagamento + assinatura no Iugu e grava a assinatura
    como 'pending'. Ela só vira 'active' no webhook invoice.payment_succeeded.
    """
    if requester.get("uid") != user_id and not is_super_admin(get_doc(db, "usuarios", requester.get("uid"))):
        raise ForbiddenError("Forbidden: cannot subscribe on behalf of another user")

    plan = get_doc(db, "saas_plans", plan_id)
    if not plan:
        raise NotFoundError("Plano não encontrado")

    active = (
        db.collection("subscriptions")
        .where(filter=FieldFilter("user_id", "==", user_id))
        .where(filter=FieldFilter("status", "==", "active"))
        .limit(1)
        .stream()
    )
    if list(active):
        raise ServiceError("Usuário já possui uma assinatura ativa")

    customer = iugu.create_customer(email, name)
    if not customer.get("id"):
        raise GatewayError("Erro ao criar cliente no Iugu")
    iugu.create_payment_method(customer["id"], payment_token)
    subscription = iugu.create_subscription(customer["id"], plan.get("iugu_plan_identifier") or plan_id)
    if not subscription.get("id"):
        raise GatewayError("Erro ao criar assinatura no Iugu")

    establishment = find_one(db, "establishments", "owner_id", user_id)
    db.collection("subscriptions").add({
        "user_id": user_id,
        "establishment_id": (establishment or {}).get("id"),
        "plan_id": plan_id,
        "gateway": "iugu",
        "iugu_subscription_id": subscription["id"],
        "iugu_customer_id": customer["id"],
        "status": "pending",
        "retry_count": 0,
        "current_period_end": None,
        "created_at": firestore.SERVER_TIMESTAMP,
        "updated_at": datetime.now(pytz.utc),
    })
    logging.info(f"Assinatura Iugu {subscription['id']} criada para {user_id} (plano {plan_id})")
    return {"success": True, "assinatura_id": subscription["id"], "mensagem": "Assinatura criada com sucesso!"}


def list_iugu_subscriptions(db, user_id: str) -> Dict[str, Any]:
    query = (
        db.collection("subscriptions")
        .where(filter=FieldFilter("user_id", "==", user_id))
        .order_by("created_at", direction=firestore.Query.DESCENDING)
    )
    subscriptions = []
    for doc in query.stream():
        data = doc.to_dict() or {}
        data["id"] = doc.id
        data["plan"] = get_doc(db, "saas_plans", data.get("plan_id"))
        subscriptions.append(data)
    return {"success": True, "assinaturas": subscriptions}


def cancel_iugu_subscription(db, iugu: IuguClient, user_id: str, iugu_subscription_id: str) -> Dict[str, Any]:
    query = (
        db.collection("subscriptions")
        .where(filter=FieldFilter("iugu_subscription_id", "==", iugu_subscription_id))
        .where(filter=FieldFilter("user_id", "==", user_id))
        .limit(1)
    )
    docs = list(query.stream())
    if not docs:
        raise NotFoundError("Assinatura não encontrada")

    iugu.delete_subscription(iugu_subscription_id)
    docs[0].reference.update({"status": "canceled", "updated_at": datetime.now(pytz.utc)})
    logging.info(f"Assinatura Iugu {iugu_subscription_id} cancelada por {user_id}")
    return {"success": True, "mensagem": "Assinatura cancelada com sucesso"}
