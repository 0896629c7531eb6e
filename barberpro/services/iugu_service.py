# barberpro/services/iugu_service.py
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from barberpro.core import config
from barberpro.core.errors import ConfigError, GatewayError

DEFAULT_TRIGGER_EVENTS = [
    "invoice.payment_failed",
    "invoice.payment_succeeded",
    "invoice.created",
    "invoice.status_changed",
]


def map_iugu_error(err: Any, fallback_message: Optional[str] = None) -> str:
    """Transforma o corpo de erro do Iugu numa mensagem legível."""
    if not err:
        return fallback_message or "Erro desconhecido no Iugu"
    if isinstance(err, str):
        return err
    errors = err.get("errors") if isinstance(err, dict) else None
    if isinstance(errors, dict):
        parts = []
        for key, value in errors.items():
            msg = ", ".join(str(v) for v in value) if isinstance(value, list) else str(value)
            parts.append(f"{key}: {msg}")
        if parts:
            return " | ".join(parts)
    if isinstance(errors, (str, list)) and errors:
        return errors if isinstance(errors, str) else ", ".join(str(v) for v in errors)
    code = err.get("code") if isinstance(err, dict) else None
    if code and re.match(r"^LR-\d+", str(code)):
        return f"Iugu: código {code}"
    if isinstance(err, dict) and err.get("message"):
        return err["message"]
    return fallback_message or "Falha na operação com Iugu"


class IuguClient:
    """Cliente REST do Iugu (autenticação Basic com o token da API)."""

    def __init__(self, api_token: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_token = api_token or config.IUGU_API_TOKEN
        self.base_url = (base_url or config.IUGU_API_URL).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _request(self, method: str, path: str, json_data: Optional[Dict[str, Any]] = None,
                 fallback_message: str = "Falha na operação com Iugu") -> Dict[str, Any]:
        if not self.api_token:
            raise ConfigError("Missing IUGU_API_TOKEN")

        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport,
                              auth=(self.api_token, "")) as client:
                response = client.request(method, path, json=json_data,
                                          headers={"Accept": "application/json"})
        except httpx.RequestError as e:
            logging.error(f"Iugu: falha de rede em {method} {path}: {e}")
            raise GatewayError(f"Iugu indisponível: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = map_iugu_error(body, f"{fallback_message} ({response.status_code})")
            logging.error(f"Iugu {method} {path} -> {response.status_code}: {message}")
            raise GatewayError(message, status_code=response.status_code, details=body)
        return body

    # --- Clientes e assinaturas ---
    def create_customer(self, email: str, name: str, cpf: Optional[str] = None) -> Dict[str, Any]:
        body = {"email": email, "name": name}
        if cpf:
            body["cpf_cnpj"] = cpf
        return self._request("POST", "/customers", body, "Falha ao criar cliente")

    def create_payment_method(self, customer_id: str, payment_token: str) -> Dict[str, Any]:
        """Salva o cartão tokenizado como forma de pagamento padrão do cliente."""
        body = {"description": "Cartão principal", "token": payment_token, "set_as_default": True}
        return self._request("POST", f"/customers/{customer_id}/payment_methods", body,
                             "Falha ao salvar forma de pagamento")

    def create_subscription(self, customer_id: str, plan_identifier: str) -> Dict[str, Any]:
        body = {"customer_id": customer_id, "plan_identifier": plan_identifier}
        return self._request("POST", "/subscriptions", body, "Falha ao criar assinatura")

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/subscriptions/{subscription_id}", None, "Falha ao obter assinatura")

    def suspend_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/subscriptions/{subscription_id}/suspend", None, "Iugu suspend failed")

    def delete_subscription(self, subscription_id: str) -> bool:
        self._request("DELETE", f"/subscriptions/{subscription_id}", None, "Iugu delete failed")
        return True

    # --- Cobranças diretas ---
    def create_charge(self, email: str, amount_cents: Optional[int] = None,
                      items: Optional[List[Dict[str, Any]]] = None,
                      payment_token: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "email": email,
            "items": items or [{"description": "Assinatura", "quantity": 1, "price_cents": amount_cents}],
        }
        if payment_token:
            body["token"] = payment_token
        else:
            body["payable_with"] = "pix"
        return self._request("POST", "/charge", body, "Falha ao criar cobrança")

    # --- Gatilhos (web hooks) ---
    def create_trigger(self, event: str, url: str) -> Dict[str, Any]:
        return self._request("POST", "/web_hooks", {"event": event, "url": url}, "Iugu create trigger failed")

    def register_triggers(self, target_url: str, events: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        results = []
        for event in events or DEFAULT_TRIGGER_EVENTS:
            results.append({"event": event, "result": self.create_trigger(event, target_url)})
        return results
