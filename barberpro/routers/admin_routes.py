# barberpro/routers/admin_routes.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from barberpro.core.auth import get_optional_user, require_super_admin
from barberpro.core.db import get_db
from barberpro.core.deps import get_iugu_client
from barberpro.core.models import (
    ActivateProviderPayload, AdminResetPasswordPayload, AdminUserActionPayload,
    IuguGatewayPayload, IuguTriggersPayload, SuperAdminPayload,
)
from barberpro.services import account_service, gateway_service

# --- Configuração dos Roteadores ---
router = APIRouter(
    prefix="/admin",
    tags=["Super Admin"],
    dependencies=[Depends(require_super_admin)],
)
# Criação de super admin tem regra de bootstrap (sem auth enquanto não existir nenhum)
bootstrap_router = APIRouter(
    prefix="/admin",
    tags=["Super Admin"],
)


@router.post("/users/actions")
def user_actions(payload: AdminUserActionPayload, db=Depends(get_db)):
    return account_service.perform_admin_action(db, payload.action, payload.user_id, payload.payload)


@router.post("/users/reset-password")
def reset_password(payload: AdminResetPasswordPayload, admin: Dict[str, Any] = Depends(require_super_admin)):
    return account_service.admin_reset_password(payload.user_id, payload.new_password, admin.get("email"))


@bootstrap_router.post("/super-admins")
def create_super_admin(
    payload: SuperAdminPayload,
    current_user: Optional[Dict[str, Any]] = Depends(get_optional_user),
    db=Depends(get_db),
):
    return account_service.create_super_admin(db, payload.email, payload.name, payload.password, current_user)


# --- Gateways da plataforma ---
@router.get("/gateways/iugu")
def get_iugu_gateway(db=Depends(get_db)):
    return {"success": True, "data": gateway_service.get_iugu_credentials(db)}


@router.post("/gateways/iugu")
def save_iugu_gateway(payload: IuguGatewayPayload, db=Depends(get_db)):
    return {"success": True, "data": gateway_service.save_iugu_credentials(db, payload.account_id, payload.api_token)}


@router.post("/gateways/activate")
def activate_gateway(payload: ActivateProviderPayload, db=Depends(get_db)):
    gateway_service.activate_provider(db, payload.provider)
    return {"success": True}


@router.post("/iugu/triggers")
def register_iugu_triggers(payload: IuguTriggersPayload, db=Depends(get_db), iugu=Depends(get_iugu_client)):
    return gateway_service.register_iugu_triggers(db, iugu, payload.target_url, payload.events)
