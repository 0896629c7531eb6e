# barberpro/routers/booking_routes.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from barberpro.core import config
from barberpro.core.db import get_db
from barberpro.core.deps import get_whatsapp_client
from barberpro.core.models import BookingPayload
from barberpro.services import booking_service

router = APIRouter(
    prefix="/bookings",
    tags=["Agendamentos"],
)


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)):
    """Rotas de cron só exigem o segredo quando CRON_SECRET está configurado."""
    if config.CRON_SECRET and x_cron_secret != config.CRON_SECRET:
        logging.warning("Chamada de cron com X-Cron-Secret inválido.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


@router.post("")
def create_booking(payload: BookingPayload, db=Depends(get_db), client=Depends(get_whatsapp_client)):
    return booking_service.create_booking(
        db, client,
        date=payload.date,
        time=payload.time,
        barber_id=payload.barber_id,
        service_id=payload.service_id,
        user_id=payload.user_id,
        price=payload.price,
        client_name=payload.client_name,
        client_phone=payload.client_phone,
    )


@router.post("/reminders", dependencies=[Depends(verify_cron_secret)])
def send_booking_reminders(db=Depends(get_db), client=Depends(get_whatsapp_client)):
    return booking_service.send_booking_reminders(db, client)
