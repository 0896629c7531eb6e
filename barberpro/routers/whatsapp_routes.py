# barberpro/routers/whatsapp_routes.py
from typing import Any, Dict

from fastapi import APIRouter, Depends

from barberpro.core.auth import get_current_user, get_owned_establishment
from barberpro.core.db import get_db
from barberpro.core.deps import get_whatsapp_client
from barberpro.core.models import WhatsAppSendPayload
from barberpro.services import whatsapp_service

router = APIRouter(
    prefix="/whatsapp",
    tags=["WhatsApp"],
)


@router.post("/send")
def send_whatsapp(
    payload: WhatsAppSendPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
    client=Depends(get_whatsapp_client),
):
    """Envio manual ou de teste a partir do painel do estabelecimento."""
    get_owned_establishment(db, current_user["uid"], payload.establishment_id)
    message_type = "test" if payload.test_mode else payload.message_type
    return whatsapp_service.send_manual_message(
        db, client, payload.establishment_id, payload.phone, payload.message_body, message_type
    )
