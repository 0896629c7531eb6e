# barberpro/services/booking_service.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytz
from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists
from google.cloud.firestore import FieldFilter

from barberpro.core import config
from barberpro.core.db import get_doc
from barberpro.core.errors import ConflictError, NotFoundError, ServiceError
from barberpro.services import whatsapp_service
from barberpro.services.subscription_service import is_establishment_active

LOCAL_TZ = pytz.timezone(config.LOCAL_TIMEZONE)

REMINDER_WINDOW_START = timedelta(minutes=55)
REMINDER_WINDOW_END = timedelta(minutes=65)


def booking_start(date: str, time: str) -> datetime:
    """Data/hora local (America/Sao_Paulo) do agendamento convertida para UTC."""
    naive = datetime.strptime(f"{date} {time[:5]}", "%Y-%m-%d %H:%M")
    return LOCAL_TZ.localize(naive).astimezone(pytz.utc)


def slot_key(barber_id: str, date: str, time: str) -> str:
    return f"{barber_id}_{date}_{time[:5].replace(':', '')}"


def _reserve_slot(db, barber_id: str, date: str, time: str, booking_id: str, establishment_id: str):
    """Trava o horário do barbeiro. create() falha se outro agendamento chegou antes."""
    slot_ref = db.collection("agendamento_slots").document(slot_key(barber_id, date, time))
    try:
        slot_ref.create({
            "booking_id": booking_id,
            "barber_id": barber_id,
            "establishment_id": establishment_id,
            "date": date,
            "time": time,
            "created_at": firestore.SERVER_TIMESTAMP,
        })
    except AlreadyExists:
        raise ConflictError("Horário indisponível para este barbeiro.")
    return slot_ref


def create_booking(db, client: whatsapp_service.WhatsAppClient, date: str, time: str, barber_id: str,
                   service_id: str, user_id: Optional[str] = None, price: Optional[float] = None,
                   client_name: Optional[str] = None, client_phone: Optional[str] = None,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    normalized_phone = whatsapp_service.normalize_phone(client_phone)
    if not normalized_phone:
        raise ServiceError("Telefone do cliente é obrigatório e deve ser válido.")

    barber = get_doc(db, "barbeiros", barber_id)
    if not barber or barber.get("ativo") is False:
        raise NotFoundError("Barbeiro não encontrado.")
    service = get_doc(db, "servicos", service_id)
    if not service:
        raise NotFoundError("Serviço não encontrado.")

    establishment_id = barber.get("establishment_id")
    if service.get("establishment_id") != establishment_id:
        raise ServiceError("Serviço não pertence ao estabelecimento do barbeiro.")

    establishment = get_doc(db, "establishments", establishment_id)
    if not is_establishment_active(establishment, now):
        logging.warning(f"Agendamento bloqueado para estabelecimento {establishment_id}: assinatura inativa")
        raise ServiceError("Este estabelecimento está temporariamente indisponível.", status_code=403)

    try:
        start_at = booking_start(date, time)
    except ValueError:
        raise ServiceError("Data ou horário inválido.")
    if start_at <= (now or datetime.now(pytz.utc)):
        raise ServiceError("Não é possível agendar em um horário que já passou.")

    booking_ref = db.collection("agendamentos").document()
    slot_ref = _reserve_slot(db, barber_id, date, time, booking_ref.id, establishment_id)

    booking = {
        "establishment_id": establishment_id,
        "barber_id": barber_id,
        "barber_name": barber.get("nome"),
        "service_id": service_id,
        "service_name": service.get("nome"),
        "user_id": user_id,
        "date": date,
        "time": time[:5],
        "start_at": start_at,
        "price": price if price is not None else service.get("preco"),
        "client_name": client_name,
        "client_phone": normalized_phone,
        "status": "confirmed",
        "reminder_sent": False,
        "created_at": firestore.SERVER_TIMESTAMP,
    }
    try:
        booking_ref.set(booking)
    except Exception:
        slot_ref.delete()
        raise
    logging.info(f"[Booking-Success] ID: #{booking_ref.id} | Shop: #{establishment_id} | Phone: {normalized_phone}")

    _send_confirmation(db, client, establishment_id, booking, normalized_phone)
    return {"success": True, "id": booking_ref.id}


def _send_confirmation(db, client, establishment_id: str, booking: Dict[str, Any], phone: str) -> None:
    wa_config = whatsapp_service.get_active_config(db, establishment_id, trigger="confirmation")
    if not wa_config:
        return
    template = (wa_config.get("templates") or {}).get("confirmation") or whatsapp_service.DEFAULT_TEMPLATES["confirmation"]
    message = whatsapp_service.render_template(
        template, booking.get("client_name"), booking["date"], booking["time"],
        booking.get("barber_name"), booking.get("service_name"),
    )
    whatsapp_service.send_and_log(db, client, wa_config, establishment_id, phone, "confirmation", message)


def send_booking_reminders(db, client: whatsapp_service.WhatsAppClient, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Lembrete de 1 hora: agendamentos que começam entre agora+55min e agora+65min."""
    now = now or datetime.now(pytz.utc)
    window_start = now + REMINDER_WINDOW_START
    window_end = now + REMINDER_WINDOW_END

    query = (
        db.collection("agendamentos")
        .where(filter=FieldFilter("start_at", ">=", window_start))
        .where(filter=FieldFilter("start_at", "<=", window_end))
    )
    processed = 0
    for doc in query.stream():
        booking = doc.to_dict() or {}
        if booking.get("reminder_sent") or booking.get("status") == "cancelled":
            continue

        phone = whatsapp_service.normalize_phone(booking.get("client_phone"))
        if not phone:
            logging.info(f"[Reminder-Skip] Booking: #{doc.id} | Missing phone")
            continue

        establishment_id = booking.get("establishment_id")
        wa_config = whatsapp_service.get_active_config(db, establishment_id, trigger="reminder_1h", log_prefix="Reminder-Skip")
        if not wa_config:
            continue

        template = (wa_config.get("templates") or {}).get("reminder_1h") or whatsapp_service.DEFAULT_TEMPLATES["reminder_1h"]
        message = whatsapp_service.render_template(
            template, booking.get("client_name"), booking.get("date", ""), booking.get("time", ""),
            booking.get("barber_name"), booking.get("service_name"),
        )
        if whatsapp_service.send_and_log(db, client, wa_config, establishment_id, phone, "reminder_1h", message):
            doc.reference.update({"reminder_sent": True})
            processed += 1

    logging.info(f"[Scheduler/Lembretes] {processed} lembrete(s) enviado(s).")
    return {"success": True, "processed": processed}
