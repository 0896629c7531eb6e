# barberpro/services/subscription_service.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

import pytz
from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists
from google.cloud.firestore import FieldFilter

from barberpro.core import config
from barberpro.core.db import find_one, get_doc
from barberpro.core.errors import NotFoundError
from barberpro.services import whatsapp_service

# Dias por tipo de plano quando o saas_plans não informa
PLAN_TYPE_DAYS = {"monthly": 30, "quarterly": 90, "annual": 365}

SAAS_PAYMENT_TYPES = ("saas_renewal", "saas_subscription", "new_subscription")
BOOKING_REFERENCE_PREFIX = "agendamento__"
IUGU_RENEWAL_DAYS = 30

DUNNING_WARNING_AFTER_DAYS = 3
DUNNING_SUSPEND_AFTER_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(pytz.utc)


def to_datetime(value: Union[None, str, datetime]) -> Optional[datetime]:
    """Normaliza datas do Firestore / ISO strings para datetime com fuso (naive = UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logging.warning(f"Data inválida ignorada: {value}")
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=pytz.utc)
    return value


def compute_new_expiry(current_end: Union[None, str, datetime], days: int, now: Optional[datetime] = None) -> datetime:
    """Nova data de expiração: max(agora, expiração atual) + dias."""
    now = to_datetime(now) or _utcnow()
    current = to_datetime(current_end)
    base = current if current and current > now else now
    return base + timedelta(days=days)


def plan_days(db, plan_id: Optional[str]) -> int:
    if plan_id:
        plan = get_doc(db, "saas_plans", plan_id)
        if plan:
            days = plan.get("days_valid") or plan.get("interval_days")
            if days:
                return int(days)
        if plan_id in PLAN_TYPE_DAYS:
            return PLAN_TYPE_DAYS[plan_id]
    return config.DEFAULT_PLAN_DAYS


def parse_external_reference(ref: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'<est>__<plan>' (ou o legado '<est>-<plan>') -> (establishment_id, plan_id)."""
    if not ref or ref.startswith(BOOKING_REFERENCE_PREFIX):
        return None, None
    if "__" in ref:
        est_id, _, plan_id = ref.partition("__")
    elif "-" in ref:
        est_id, _, plan_id = ref.partition("-")
    else:
        return None, None
    if not est_id or not plan_id:
        return None, None
    return est_id, plan_id


def claim_event(db, key: str) -> bool:
    """
    Registra o evento em webhook_events/<key>.
    Retorna False se ele já foi processado (entrega duplicada do gateway).
    """
    doc_id = key.replace("/", "_")
    try:
        db.collection("webhook_events").document(doc_id).create({
            "key": key,
            "processed_at": firestore.SERVER_TIMESTAMP,
        })
    except AlreadyExists:
        logging.info(f"Evento duplicado ignorado: {key}")
        return False
    return True


def release_event(db, key: str) -> None:
    """Desfaz o claim quando o processamento falha, para o gateway poder reenviar."""
    db.collection("webhook_events").document(key.replace("/", "_")).delete()


def activate_establishment(db, establishment_id: str, days: int, plan_name: Optional[str] = None,
                           gateway: Optional[str] = None, now: Optional[datetime] = None,
                           plan_id: Optional[str] = None) -> datetime:
    establishment = get_doc(db, "establishments", establishment_id)
    if not establishment:
        raise NotFoundError(f"Establishment {establishment_id} not found")

    new_end = compute_new_expiry(establishment.get("subscription_end_date"), days, now)
    update = {
        "subscription_status": "active",
        "subscription_end_date": new_end,
        "updated_at": firestore.SERVER_TIMESTAMP,
    }
    if plan_name:
        update["plan_name"] = plan_name
    if plan_id:
        update["plan_id"] = plan_id
    if gateway:
        update["payment_gateway"] = gateway
    db.collection("establishments").document(establishment_id).update(update)
    logging.info(f"Estabelecimento {establishment_id} ativo até {new_end.isoformat()} ({gateway or 'manual'})")
    return new_end


def _latest_subscription(db, establishment_id: str) -> Optional[Dict[str, Any]]:
    return find_one(db, "subscriptions", "establishment_id", establishment_id, order_by="updated_at")


def _upsert_subscription(db, establishment_id: str, fields: Dict[str, Any],
                         existing: Optional[Dict[str, Any]] = None) -> str:
    sub = existing or _latest_subscription(db, establishment_id)
    if sub:
        db.collection("subscriptions").document(sub["id"]).update(fields)
        return sub["id"]
    establishment = get_doc(db, "establishments", establishment_id) or {}
    data = {"establishment_id": establishment_id, "user_id": establishment.get("owner_id"),
            "retry_count": 0, "created_at": firestore.SERVER_TIMESTAMP}
    data.update(fields)
    _, ref = db.collection("subscriptions").add(data)
    return ref.id


# --- Mercado Pago ---
def _apply_booking_deposit(db, payment: Dict[str, Any], ref: str) -> str:
    parts = ref.split("__")
    if len(parts) < 3 or not parts[1] or not parts[2]:
        logging.error(f"Webhook falhou. Formato de external_reference inválido: {ref}")
        return "invalid_reference"
    establishment_id, booking_id = parts[1], parts[2]

    booking = get_doc(db, "agendamentos", booking_id)
    if not booking or booking.get("establishment_id") != establishment_id:
        logging.warning(f"Sinal recebido para agendamento inexistente: {ref}")
        return "booking_not_found"

    payment_status = payment.get("status")
    booking_ref = db.collection("agendamentos").document(booking_id)
    if payment_status == "approved":
        logging.info(f"Sinal APROVADO para agendamento {booking_id}. Confirmando...")
        booking_ref.update({
            "status": "confirmed",
            "payment_status": "paid",
            "mercadopago_payment_id": str(payment.get("id")),
        })
        return "booking_confirmed"
    if payment_status in ("rejected", "cancelled", "refunded"):
        logging.info(f"Sinal falhou para agendamento {booking_id}. Status: {payment_status}")
        booking_ref.update({"payment_status": payment_status})
        return "booking_payment_failed"
    return "ignored"


def apply_mercadopago_payment(db, payment: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Aplica um pagamento do Mercado Pago. Retorna um status curto para o log/resposta."""
    ref = payment.get("external_reference") or ""
    metadata = payment.get("metadata") or {}
    payment_id = str(payment.get("id"))
    payment_status = payment.get("status")

    if ref.startswith(BOOKING_REFERENCE_PREFIX):
        return _apply_booking_deposit(db, payment, ref)

    ref_est, ref_plan = parse_external_reference(ref)
    establishment_id = metadata.get("establishment_id") or ref_est
    plan_id = metadata.get("plan_id") or ref_plan
    if metadata.get("type") not in SAAS_PAYMENT_TYPES and not ref_est:
        logging.info(f"Pagamento {payment_id} sem referência SaaS reconhecida ({ref!r}). Ignorado.")
        return "ignored"
    if not establishment_id:
        logging.warning(f"Pagamento SaaS {payment_id} sem establishment_id.")
        return "ignored"

    if payment_status == "approved":
        if not get_doc(db, "establishments", establishment_id):
            logging.warning(f"Pagamento {payment_id} para estabelecimento inexistente: {establishment_id}")
            return "establishment_not_found"

        event_key = f"mp:payment:{payment_id}"
        if not claim_event(db, event_key):
            return "duplicate"
        try:
            months = int(metadata.get("months_to_add") or 1)
            days = plan_days(db, plan_id) * months
            plan = get_doc(db, "saas_plans", plan_id) if plan_id else None
            plan_name = (plan or {}).get("name") or plan_id
            now = to_datetime(now) or _utcnow()

            new_end = activate_establishment(db, establishment_id, days, plan_name, "mercadopago", now, plan_id)
            _upsert_subscription(db, establishment_id, {
                "status": "active",
                "plan_id": plan_id,
                "gateway": "mercadopago",
                "current_period_end": new_end,
                "last_payment_status": "paid",
                "retry_count": 0,
                "mp_payment_id": payment_id,
                "updated_at": now,
            })
            db.collection("saas_payments").add({
                "establishment_id": establishment_id,
                "plan_id": plan_id,
                "amount": payment.get("transaction_amount"),
                "payment_id": payment_id,
                "payment_method": payment.get("payment_method_id"),
                "gateway": "mercadopago",
                "status": "approved",
                "paid_at": now,
            })
        except Exception:
            release_event(db, event_key)
            raise
        logging.info(f"Assinatura APROVADA. Estabelecimento {establishment_id} renovado por {days} dias.")
        return "subscription_activated"

    if payment_status in ("cancelled", "rejected"):
        sub = _latest_subscription(db, establishment_id)
        if sub:
            db.collection("subscriptions").document(sub["id"]).update({
                "status": "failed",
                "last_payment_status": payment_status,
                "updated_at": to_datetime(now) or _utcnow(),
            })
        logging.info(f"Assinatura falhou. Status: '{payment_status}' para o estabelecimento: {establishment_id}")
        return "subscription_failed"

    logging.info(f"Webhook de assinatura recebido com status: '{payment_status}'. Aguardando.")
    return "ignored"


def _preapproval_days(db, preapproval: Dict[str, Any]) -> int:
    _, plan_id = parse_external_reference(preapproval.get("external_reference"))
    plan = get_doc(db, "saas_plans", plan_id) if plan_id else None
    if plan and (plan.get("days_valid") or plan.get("interval_days")):
        return int(plan.get("days_valid") or plan.get("interval_days"))

    frequency = int((preapproval.get("auto_recurring") or {}).get("frequency") or 1)
    for plan_type, plan in (("monthly", 1), ("quarterly", 3), ("annual", 12)):
        if frequency == plan:
            return PLAN_TYPE_DAYS[plan_type]
    return frequency * 30


def apply_mercadopago_preapproval(db, preapproval: Dict[str, Any], now: Optional[datetime] = None) -> str:
    preapproval_id = str(preapproval.get("id"))
    status = preapproval.get("status")
    now = to_datetime(now) or _utcnow()

    sub = find_one(db, "subscriptions", "mp_preapproval_id", preapproval_id)
    establishment_id = (sub or {}).get("establishment_id") or parse_external_reference(preapproval.get("external_reference"))[0]
    if not establishment_id:
        logging.warning(f"Preapproval {preapproval_id} sem estabelecimento associado.")
        return "ignored"

    if status in ("authorized", "active"):
        event_key = f"mp:preapproval:{preapproval_id}:{status}"
        if not claim_event(db, event_key):
            return "duplicate"
        try:
            new_end = activate_establishment(db, establishment_id, _preapproval_days(db, preapproval),
                                             preapproval.get("reason"), "mercadopago", now)
            _upsert_subscription(db, establishment_id, {
                "status": "active",
                "gateway": "mercadopago",
                "mp_preapproval_id": preapproval_id,
                "current_period_end": new_end,
                "last_payment_status": "paid",
                "retry_count": 0,
                "updated_at": now,
            }, existing=sub)
        except Exception:
            release_event(db, event_key)
            raise
        return "subscription_activated"

    if status in ("paused", "cancelled"):
        _upsert_subscription(db, establishment_id, {
            "status": "failed",
            "mp_preapproval_id": preapproval_id,
            "last_payment_status": status,
            "updated_at": now,
        }, existing=sub)
        logging.info(f"Preapproval {preapproval_id} {status}. Assinatura marcada como failed.")
        return "subscription_failed"

    return "ignored"


# --- Iugu ---
def resolve_iugu_subscription(db, subscription_id: Optional[str] = None, establishment_id: Optional[str] = None,
                              customer_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if subscription_id:
        sub = find_one(db, "subscriptions", "iugu_subscription_id", str(subscription_id))
        if sub:
            return sub
    if establishment_id:
        sub = find_one(db, "subscriptions", "establishment_id", establishment_id, order_by="updated_at")
        if sub:
            return sub
    if customer_id:
        return find_one(db, "subscriptions", "user_id", customer_id, order_by="updated_at")
    return None


def _establishment_phone(db, establishment_id: Optional[str]) -> Optional[str]:
    establishment = get_doc(db, "establishments", establishment_id)
    return (establishment or {}).get("phone")


def apply_iugu_payment_failed(db, sub: Dict[str, Any], now: Optional[datetime] = None) -> None:
    retry_count = int(sub.get("retry_count") or 0) + 1
    db.collection("subscriptions").document(sub["id"]).update({
        "status": "past_due",
        "last_payment_status": "failed",
        "retry_count": retry_count,
        "updated_at": to_datetime(now) or _utcnow(),
    })
    establishment_id = sub.get("establishment_id")
    whatsapp_service.queue_message(db, establishment_id, _establishment_phone(db, establishment_id), "billing_dunning")
    logging.info(f"[Dunning] Pagamento recusado. Assinatura {sub['id']} em past_due (tentativa {retry_count}).")


def apply_iugu_payment_succeeded(db, sub: Dict[str, Any], now: Optional[datetime] = None) -> datetime:
    now = to_datetime(now) or _utcnow()
    establishment_id = sub.get("establishment_id")
    establishment = get_doc(db, "establishments", establishment_id) if establishment_id else None

    # Base = max(agora, fim do período da assinatura, fim do acesso do estabelecimento)
    current_end = to_datetime(sub.get("current_period_end"))
    establishment_end = to_datetime((establishment or {}).get("subscription_end_date"))
    if establishment_end and (current_end is None or establishment_end > current_end):
        current_end = establishment_end
    new_end = compute_new_expiry(current_end, IUGU_RENEWAL_DAYS, now)

    db.collection("subscriptions").document(sub["id"]).update({
        "status": "active",
        "last_payment_status": "paid",
        "retry_count": 0,
        "current_period_end": new_end,
        "updated_at": now,
    })

    if establishment:
        db.collection("establishments").document(establishment_id).update({
            "subscription_status": "active",
            "subscription_end_date": new_end,
            "payment_gateway": "iugu",
            "updated_at": firestore.SERVER_TIMESTAMP,
        })
        whatsapp_service.queue_message(db, establishment_id, _establishment_phone(db, establishment_id), "billing_receipt")
    logging.info(f"Assinatura Iugu {sub['id']} renovada até {new_end.isoformat()}")
    return new_end


def process_dunning(db, iugu, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Régua de cobrança diária para assinaturas past_due:
    mais de 3 dias de atraso gera aviso, mais de 7 suspende o estabelecimento.
    """
    now = to_datetime(now) or _utcnow()
    counts = {"warned": 0, "suspended": 0}

    past_due = db.collection("subscriptions").where(filter=FieldFilter("status", "==", "past_due")).stream()
    for doc in past_due:
        sub = doc.to_dict() or {}
        due_date = to_datetime(sub.get("current_period_end")) or now
        days_overdue = (now - due_date).days
        establishment_id = sub.get("establishment_id")

        if DUNNING_WARNING_AFTER_DAYS < days_overdue <= DUNNING_SUSPEND_AFTER_DAYS:
            whatsapp_service.queue_message(db, establishment_id, _establishment_phone(db, establishment_id), "billing_warning")
            counts["warned"] += 1

        elif days_overdue > DUNNING_SUSPEND_AFTER_DAYS:
            if establishment_id:
                db.collection("establishments").document(establishment_id).update({"subscription_status": "suspended"})
            doc.reference.update({"status": "canceled", "updated_at": now})
            counts["suspended"] += 1
            logging.warning(f"[Dunning] Estabelecimento {establishment_id} suspenso ({days_overdue} dias em atraso).")

            iugu_subscription_id = sub.get("iugu_subscription_id")
            if iugu_subscription_id:
                try:
                    iugu.suspend_subscription(iugu_subscription_id)
                except Exception as e:
                    logging.error(f"[Dunning] Falha ao suspender assinatura Iugu {iugu_subscription_id}: {e}")

    logging.info(f"[Dunning] Avisos: {counts['warned']}, Suspensões: {counts['suspended']}")
    return counts


def cancel_subscription(db, establishment_id: str) -> Optional[datetime]:
    """Cancela a renovação. O acesso continua até a subscription_end_date."""
    establishment = get_doc(db, "establishments", establishment_id)
    if not establishment:
        raise NotFoundError("Establishment not found")

    db.collection("establishments").document(establishment_id).update({
        "subscription_status": "cancelled",
        "updated_at": firestore.SERVER_TIMESTAMP,
    })
    sub = _latest_subscription(db, establishment_id)
    if sub:
        db.collection("subscriptions").document(sub["id"]).update({"status": "cancelled", "updated_at": _utcnow()})
    logging.info(f"Assinatura cancelada para o estabelecimento {establishment_id}")
    return to_datetime(establishment.get("subscription_end_date"))


def is_establishment_active(establishment: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    if not establishment:
        return False
    now = to_datetime(now) or _utcnow()
    status = establishment.get("subscription_status")

    if status in ("active", "cancelled"):
        end_date = to_datetime(establishment.get("subscription_end_date"))
        if end_date is None:
            # Ativo sem data = plano vitalício/manual; cancelado sem data já perdeu o acesso
            return status == "active"
        return end_date > now
    if status == "trialing":
        trial_ends_at = to_datetime(establishment.get("trial_ends_at"))
        return bool(trial_ends_at and trial_ends_at > now)
    return False
