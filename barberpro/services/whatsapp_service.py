# barberpro/services/whatsapp_service.py
import logging
import re
from typing import Any, Dict, Optional

import httpx
from firebase_admin import firestore
from google.cloud.firestore import FieldFilter

from barberpro.core import config
from barberpro.core.db import get_doc
from barberpro.core.errors import ServiceError

DEFAULT_TEMPLATES = {
    "confirmation": "Fala, {nome_cliente}! Agendamento confirmado. 🗓 Data: {data} 🕒 Horário: {hora} 💈 Barbeiro: {barbeiro} ✂️ Serviço: {servico}.",
    "reminder_1h": "Olá {nome_cliente}, seu corte é daqui a 1 hora às {hora}!",
}

BILLING_MESSAGES = {
    "billing_dunning": "Seu pagamento não foi aprovado. Regularize para evitar bloqueio.",
    "billing_receipt": "Pagamento confirmado! Sua assinatura foi renovada.",
    "billing_warning": "Sua assinatura está em atraso há mais de 3 dias. Regularize para evitar bloqueio.",
}


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Deixa só os dígitos e garante o DDI 55.
    Retorna None se o número tiver menos de 10 dígitos.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 10:
        return None
    if not digits.startswith("55") and len(digits) <= 11:
        return f"55{digits}"
    return digits


def format_date_br(date_str: str) -> str:
    """'2024-05-09' -> '09/05'. Devolve a string original se não reconhecer."""
    parts = (date_str or "").split("-")
    if len(parts) != 3 or not all(parts):
        return date_str
    year, month, day = parts
    return f"{day}/{month}"


def render_template(template: str, nome_cliente: Optional[str], data: str, hora: str,
                    barbeiro: Optional[str], servico: Optional[str]) -> str:
    return (
        template
        .replace("{nome_cliente}", nome_cliente or "Cliente")
        .replace("{data}", format_date_br(data))
        .replace("{hora}", (hora or "")[:5])
        .replace("{barbeiro}", barbeiro or "Barbeiro")
        .replace("{servico}", servico or "Serviço")
    )


def get_active_config(db, establishment_id: str, trigger: Optional[str] = None,
                      log_prefix: str = "WhatsApp-Skip") -> Optional[Dict[str, Any]]:
    """
    Configuração de WhatsApp pronta para uso, ou None (com log do motivo).
    Exige is_active, credenciais e, se informado, o gatilho habilitado.
    """
    wa_config = get_doc(db, "whatsapp_config", establishment_id)
    if not wa_config or not wa_config.get("is_active"):
        logging.info(f"[{log_prefix}] Shop: #{establishment_id} | No API config")
        return None

    triggers = wa_config.get("triggers") or {}
    if trigger and triggers.get(trigger) is False:
        logging.info(f"[{log_prefix}] Shop: #{establishment_id} | Trigger '{trigger}' disabled")
        return None

    if not wa_config.get("instance_id") or not wa_config.get("api_token"):
        logging.info(f"[{log_prefix}] Shop: #{establishment_id} | Missing credentials")
        return None
    return wa_config


class WhatsAppClient:
    """Cliente HTTP do gateway Wordnet (POST /sendMessage)."""

    def __init__(self, api_url: Optional[str] = None, timeout: float = 15.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_url = (api_url or config.WORDNET_API_URL).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def send_message(self, instance_id: str, api_token: str, to: str, message: str) -> Dict[str, Any]:
        """
        Envia a mensagem. Retorna {"success": bool, "response": dict}.
        Erros de rede viram success=False, nunca exceção.
        """
        body = {"u": instance_id, "p": api_token, "to": to, "msg": message}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"{self.api_url}/sendMessage",
                    json=body,
                    headers={"Accept": "application/json"},
                )
            try:
                api_result = response.json()
            except ValueError:
                api_result = {"raw": response.text}
            if not isinstance(api_result, dict):
                api_result = {"result": api_result}
            success = response.is_success and not api_result.get("error")
            if not success:
                reason = api_result.get("error") or response.reason_phrase or "Unknown"
                logging.error(f"[WhatsApp-Error] To: {to} | Reason: \"{reason}\"")
            return {"success": success, "response": api_result}
        except httpx.HTTPError as e:
            logging.error(f"[WhatsApp-Error] To: {to} | Reason: \"{e}\"")
            return {"success": False, "response": {"error": str(e)}}


def log_attempt(db, establishment_id: Optional[str], phone: Optional[str], message_type: str,
                message_body: str, status: str, api_response: Any = None) -> None:
    db.collection("whatsapp_logs").add({
        "establishment_id": establishment_id,
        "phone_number": phone,
        "message_type": message_type,
        "message_body": message_body,
        "status": status,
        "api_response": api_response,
        "created_at": firestore.SERVER_TIMESTAMP,
    })


def queue_message(db, establishment_id: Optional[str], phone: Optional[str], message_type: str,
                  message_body: Optional[str] = None) -> None:
    """Enfileira uma mensagem (status 'pending') para o flush do scheduler."""
    log_attempt(db, establishment_id, phone, message_type,
                message_body or BILLING_MESSAGES.get(message_type, ""), "pending")


def send_and_log(db, client: WhatsAppClient, wa_config: Dict[str, Any], establishment_id: str,
                 phone: str, message_type: str, message_body: str) -> bool:
    """Envia com as credenciais do estabelecimento e registra a tentativa."""
    client_for_shop = client
    if wa_config.get("api_url"):
        client_for_shop = WhatsAppClient(api_url=wa_config["api_url"], timeout=client.timeout, transport=client.transport)

    result = client_for_shop.send_message(wa_config["instance_id"], wa_config["api_token"], phone, message_body)
    log_attempt(db, establishment_id, phone, message_type, message_body,
                "sent" if result["success"] else "failed", result["response"])
    return result["success"]


def send_manual_message(db, client: WhatsAppClient, establishment_id: str, phone: str,
                        message_body: str, message_type: str = "manual") -> Dict[str, Any]:
    """Envio manual/teste pelo painel. Cai nas credenciais da plataforma se o salão não tiver."""
    wa_config = get_doc(db, "whatsapp_config", establishment_id)
    if not wa_config:
        raise ServiceError("WhatsApp Config not found")

    instance_id = wa_config.get("instance_id") or config.WORDNET_INSTANCE_ID
    api_token = wa_config.get("api_token") or config.WORDNET_API_TOKEN
    if not instance_id or not api_token:
        raise ServiceError("Missing WhatsApp Credentials")

    final_phone = normalize_phone(phone)
    if not final_phone:
        raise ServiceError("Telefone inválido")

    logging.info(f"Sending WhatsApp to {final_phone} ({message_type})...")
    if wa_config.get("api_url"):
        client = WhatsAppClient(api_url=wa_config["api_url"], timeout=client.timeout, transport=client.transport)
    result = client.send_message(instance_id, api_token, final_phone, message_body)
    log_attempt(db, establishment_id, final_phone, message_type, message_body,
                "sent" if result["success"] else "failed", result["response"])
    return {"success": result["success"], "api_response": result["response"]}


def flush_pending_messages(db, client: WhatsAppClient, limit: int = 100) -> Dict[str, int]:
    """
    Envia as mensagens de cobrança enfileiradas (status 'pending') usando as
    credenciais da plataforma e marca cada uma como 'sent' ou 'failed'.
    """
    counts = {"sent": 0, "failed": 0, "skipped": 0}
    if not config.WORDNET_INSTANCE_ID or not config.WORDNET_API_TOKEN:
        logging.warning("[WhatsApp/Fila] Credenciais da plataforma ausentes. Fila não processada.")
        return counts

    pending = db.collection("whatsapp_logs").where(filter=FieldFilter("status", "==", "pending")).limit(limit).stream()
    for doc in pending:
        data = doc.to_dict() or {}
        phone = normalize_phone(data.get("phone_number"))
        if not phone:
            doc.reference.update({"status": "skipped"})
            counts["skipped"] += 1
            continue

        result = client.send_message(config.WORDNET_INSTANCE_ID, config.WORDNET_API_TOKEN, phone, data.get("message_body", ""))
        status = "sent" if result["success"] else "failed"
        doc.reference.update({"status": status, "api_response": result["response"], "phone_number": phone})
        counts[status] += 1

    logging.info(f"[WhatsApp/Fila] Enviadas: {counts['sent']}, Falhas: {counts['failed']}, Puladas: {counts['skipped']}")
    return counts
