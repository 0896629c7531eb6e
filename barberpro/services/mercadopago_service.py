# barberpro/services/mercadopago_service.py
import logging
import uuid
from typing import Any, Dict, Optional

import mercadopago
from mercadopago.config import RequestOptions
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from barberpro.core import config
from barberpro.core.db import get_saas_setting
from barberpro.core.errors import ConfigError, GatewayError

# Planos de assinatura recorrente (preapproval) vendidos na página de planos
PLAN_TYPES = {
    "monthly": {"amount": 97.00, "frequency": 1, "days": 30},
    "quarterly": {"amount": 267.00, "frequency": 3, "days": 90},
    "annual": {"amount": 948.00, "frequency": 12, "days": 365},
}
SUBSCRIPTION_REASON = "Assinatura BarberPro"


def resolve_platform_token(db) -> str:
    """Token da conta da plataforma: saas_settings tem prioridade sobre o .env."""
    token = get_saas_setting(db, "mp_access_token") or config.MERCADO_PAGO_ACCESS_TOKEN
    if not token:
        logging.error("Missing MP Access Token")
        raise ConfigError("Config Error: Missing MP Access Token")
    return token


def _unwrap(result: Dict[str, Any], context: str) -> Dict[str, Any]:
    """O SDK devolve {'status': int, 'response': dict}. Erros viram GatewayError."""
    status_code = result.get("status")
    response = result.get("response") or {}
    if status_code not in (200, 201):
        message = response.get("message", "Erro desconhecido") if isinstance(response, dict) else str(response)
        logging.error(f"Erro MercadoPago ({context}): {status_code} {message}")
        raise GatewayError(f"Erro MercadoPago ({context}): {message}", details=response)
    return response


def pix_transaction_data(payment: Dict[str, Any]) -> Dict[str, Any]:
    return (payment.get("point_of_interaction") or {}).get("transaction_data") or {}


class MercadoPagoGateway:
    """Fachada fina sobre o SDK oficial, uma instância por access token."""

    def __init__(self, access_token: str, sdk: Any = None):
        self.sdk = sdk or mercadopago.SDK(access_token)

    @staticmethod
    def _idempotent_options(idempotency_key: Optional[str] = None) -> RequestOptions:
        return RequestOptions(custom_headers={"x-idempotency-key": idempotency_key or str(uuid.uuid4())})

    # Retentativas só nas consultas (GET)
    @retry(retry=retry_if_exception_type(GatewayError), wait=wait_fixed(2), stop=stop_after_attempt(3), reraise=True)
    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return _unwrap(self.sdk.payment().get(payment_id), "Payment")

    @retry(retry=retry_if_exception_type(GatewayError), wait=wait_fixed(2), stop=stop_after_attempt(3), reraise=True)
    def get_preapproval(self, preapproval_id: str) -> Dict[str, Any]:
        return _unwrap(self.sdk.preapproval().get(preapproval_id), "Preapproval")

    def create_payment(self, payment_data: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        result = self.sdk.payment().create(payment_data, self._idempotent_options(idempotency_key))
        return _unwrap(result, payment_data.get("payment_method_id", "Payment"))

    def create_pix_payment(self, amount: float, description: str, payer_email: str,
                           payer_first_name: Optional[str] = None, external_reference: Optional[str] = None,
                           metadata: Optional[Dict[str, Any]] = None, notification_url: Optional[str] = None,
                           idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        payer: Dict[str, Any] = {"email": payer_email}
        if payer_first_name:
            payer["first_name"] = payer_first_name
        payment_data: Dict[str, Any] = {
            "transaction_amount": round(float(amount), 2),
            "description": description,
            "payment_method_id": "pix",
            "payer": payer,
            "notification_url": notification_url or f"{config.API_BASE_URL}/webhooks/mercado-pago",
        }
        if external_reference:
            payment_data["external_reference"] = external_reference
        if metadata:
            payment_data["metadata"] = metadata

        payment = self.create_payment(payment_data, idempotency_key)
        qr = pix_transaction_data(payment)
        return {
            "payment_id": payment.get("id"),
            "status": payment.get("status"),
            "qr_code": qr.get("qr_code"),
            "qr_code_base64": qr.get("qr_code_base64"),
            "ticket_url": qr.get("ticket_url"),
        }

    def create_preference(self, title: str, price: float, payer_email: str, external_reference: str,
                          item_id: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        back_base = f"{config.FRONTEND_BASE_URL}/admin/subscription"
        preference_data = {
            "items": [{
                "id": item_id,
                "title": title,
                "quantity": 1,
                "currency_id": "BRL",
                "unit_price": round(float(price), 2),
            }],
            "payer": {"email": payer_email},
            "external_reference": external_reference,
            "back_urls": {
                "success": f"{back_base}?status=success",
                "failure": f"{back_base}?status=failure",
                "pending": f"{back_base}?status=pending",
            },
            "auto_return": "approved",
            "notification_url": f"{config.API_BASE_URL}/webhooks/mercado-pago",
            "metadata": metadata or {},
        }
        preference = _unwrap(self.sdk.preference().create(preference_data), "Preference")
        if not preference.get("init_point"):
            raise GatewayError("Erro ao obter URL de checkout.")
        return {"init_point": preference.get("init_point"), "id": preference.get("id")}

    def create_preapproval(self, card_token: str, payer_email: str, plan_type: str,
                           external_reference: str) -> Dict[str, Any]:
        plan = PLAN_TYPES.get(plan_type)
        if not plan:
            raise ValueError("Invalid plan type")
        body = {
            "payer_email": payer_email,
            "back_url": f"{config.FRONTEND_BASE_URL}/admin/subscription",
            "reason": SUBSCRIPTION_REASON,
            "external_reference": external_reference,
            "auto_recurring": {
                "frequency": plan["frequency"],
                "frequency_type": "months",
                "transaction_amount": plan["amount"],
                "currency_id": "BRL",
            },
            "card_token_id": card_token,
            "status": "authorized",
        }
        return _unwrap(self.sdk.preapproval().create(body), "Preapproval")
