# barberpro/routers/account_routes.py
from typing import Any, Dict

from fastapi import APIRouter, Depends

from barberpro.core.auth import get_current_user
from barberpro.core.db import get_db
from barberpro.core.models import ForgotPasswordPayload, SendEmailPayload, StaffUserPayload
from barberpro.services import account_service

router = APIRouter(
    prefix="/accounts",
    tags=["Contas"],
)


@router.post("/staff")
def create_staff_user(
    payload: StaffUserPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
):
    return account_service.create_staff_user(
        db, current_user["uid"], payload.email, payload.name,
        payload.establishment_id, payload.tipo, payload.password,
    )


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordPayload):
    return account_service.send_password_recovery(payload.email)


@router.post("/send-email")
def send_email(payload: SendEmailPayload):
    return account_service.send_welcome_email(payload.type, payload.email, payload.name, payload.password)
