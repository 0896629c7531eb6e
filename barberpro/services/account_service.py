# barberpro/services/account_service.py
import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import pytz
from firebase_admin import auth, firestore
from firebase_admin.exceptions import FirebaseError
from google.cloud.firestore import FieldFilter

from barberpro.core import config
from barberpro.core.auth import PLATFORM_SUPER_ADMIN_ROLE, SUPER_ADMIN_TIPO, is_super_admin
from barberpro.core.db import find_one, get_doc
from barberpro.core.errors import ForbiddenError, GatewayError, NotFoundError, ServiceError, UnauthorizedError
from barberpro.services import email_service, subscription_service
from barberpro.services.mercadopago_service import MercadoPagoGateway

ADMIN_ACTIONS = ("delete", "suspend", "reset_password_email", "update_password", "update_profile", "create_user")


def generate_password(length: int = 10) -> str:
    return secrets.token_urlsafe(length)[:length]


def create_user_with_profile(db, email: str, password: str, display_name: str,
                             profile: Dict[str, Any],
                             after_profile: Optional[Callable[[str], None]] = None) -> auth.UserRecord:
    """
    Cria o usuário no Firebase Auth (e-mail já verificado) e o perfil em 'usuarios'.
    Se qualquer gravação depois do Auth falhar, o usuário do Auth é apagado.
    """
    try:
        user = auth.create_user(email=email, password=password, display_name=display_name, email_verified=True)
    except auth.EmailAlreadyExistsError:
        raise ServiceError("Este e-mail já está cadastrado.")
    except (FirebaseError, ValueError) as e:
        raise ServiceError(f"Erro ao criar usuário: {e}")

    try:
        data = {"email": email, "nome": display_name, "created_at": firestore.SERVER_TIMESTAMP}
        data.update(profile)
        db.collection("usuarios").document(user.uid).set(data)
        if after_profile:
            after_profile(user.uid)
    except Exception:
        logging.exception(f"Falha ao gravar perfil de {email}. Desfazendo usuário {user.uid} no Auth.")
        auth.delete_user(user.uid)
        raise
    return user


# --- Equipe ---
def _assert_can_manage(db, requester_uid: str, establishment_id: str) -> None:
    establishment = get_doc(db, "establishments", establishment_id)
    if not establishment:
        raise NotFoundError("Establishment not found")
    if establishment.get("owner_id") == requester_uid:
        return
    profile = get_doc(db, "usuarios", requester_uid) or {}
    if is_super_admin(profile):
        return
    if profile.get("establishment_id") == establishment_id and profile.get("tipo") == "manager":
        return
    raise ForbiddenError("Forbidden: you cannot manage this establishment's team")


def create_staff_user(db, requester_uid: str, email: str, name: str, establishment_id: str,
                      tipo: str = "barber", password: Optional[str] = None) -> Dict[str, Any]:
    _assert_can_manage(db, requester_uid, establishment_id)
    user_password = password or generate_password(8)

    def create_barber_row(uid: str) -> None:
        db.collection("barbeiros").add({
            "user_id": uid,
            "establishment_id": establishment_id,
            "nome": name,
            "ativo": True,
            "created_at": firestore.SERVER_TIMESTAMP,
        })

    user = create_user_with_profile(
        db, email, user_password, name,
        {"tipo": tipo, "establishment_id": establishment_id},
        after_profile=create_barber_row,
    )
    logging.info(f"Usuário de equipe {user.uid} ({tipo}) criado para o estabelecimento {establishment_id}")

    if not email_service.send_staff_credentials_email(email, name, user_password):
        logging.error(f"Usuário {user.uid} criado, mas o e-mail de credenciais falhou.")
    return {"success": True, "user_id": user.uid}


# --- E-mails de conta ---
def send_password_recovery(email: str) -> Dict[str, Any]:
    if not email:
        raise ServiceError("Email is required")
    if not config.RESEND_API_KEY:
        raise ServiceError("Server Configuration Error: Missing Resend Key")

    logging.info(f"Starting password reset flow for: {email}")
    settings = auth.ActionCodeSettings(url=f"{config.FRONTEND_BASE_URL}/reset-password")
    try:
        link = auth.generate_password_reset_link(email, action_code_settings=settings)
    except auth.UserNotFoundError:
        raise ServiceError("Usuário não encontrado. Verifique o email ou cadastre-se.")
    except FirebaseError as e:
        raise ServiceError(f"Auth Error: {e}")

    if not email_service.send_password_recovery_email(email, link):
        raise ServiceError("Falha ao enviar o e-mail de recuperação.")
    return {"success": True}


def send_welcome_email(email_type: str, email: Optional[str], name: Optional[str],
                       password: Optional[str] = None) -> Dict[str, Any]:
    if not email or not name:
        raise ServiceError("Email and name are required")
    if email_type == "welcome_manual":
        sent = email_service.send_welcome_manual_email(email, name, password)
    elif email_type == "welcome_self":
        sent = email_service.send_welcome_self_email(email, name)
    else:
        raise ServiceError("Invalid email type")
    if not sent:
        raise ServiceError("Falha ao enviar e-mail.", status_code=500)
    return {"success": True}


# --- Super Admin ---
def perform_admin_action(db, action: str, user_id: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
    if action not in ADMIN_ACTIONS:
        raise ServiceError("Invalid action")
    if action not in ("create_user", "reset_password_email") and not user_id:
        raise ServiceError("userId is required")

    try:
        if action == "delete":
            auth.delete_user(user_id)
            db.collection("usuarios").document(user_id).delete()
            return {"message": "User deleted successfully"}

        if action == "suspend":
            banned = bool(payload.get("banned"))
            auth.update_user(user_id, disabled=banned)
            return {"message": "User suspended" if banned else "User activated"}

        if action == "reset_password_email":
            send_password_recovery(payload.get("email"))
            return {"message": "Password reset email sent"}

        if action == "update_password":
            if not payload.get("password"):
                raise ServiceError("password is required")
            auth.update_user(user_id, password=payload["password"])
            return {"message": "Password updated"}

        if action == "update_profile":
            data = payload.get("data") or {}
            if not data:
                raise ServiceError("data is required")
            db.collection("usuarios").document(user_id).update(data)
            return {"message": "Profile updated"}

        # create_user
        if not payload.get("email") or not payload.get("password"):
            raise ServiceError("email and password are required")
        profile = {
            "tipo": payload.get("tipo"),
            "telefone": payload.get("telefone"),
            "establishment_id": payload.get("establishment_id"),
        }
        user = create_user_with_profile(db, payload["email"], payload["password"],
                                        payload.get("nome") or payload["email"], profile)
        return {"user": {"uid": user.uid, "email": user.email}}
    except auth.UserNotFoundError:
        raise NotFoundError("User not found")
    except FirebaseError as e:
        raise ServiceError(str(e))


def admin_reset_password(user_id: Optional[str], new_password: Optional[str], requester_email: str = None) -> Dict[str, Any]:
    if not user_id or not new_password:
        raise ServiceError("Missing userId or newPassword in request body")
    logging.info(f"Attempting password reset for User ID: {user_id} by Admin: {requester_email}")
    try:
        user = auth.update_user(user_id, password=new_password)
    except auth.UserNotFoundError:
        raise NotFoundError("User not found")
    except (FirebaseError, ValueError) as e:
        raise ServiceError(str(e))
    return {"message": "Password updated successfully", "user": {"uid": user.uid, "email": user.email}}


def platform_super_admin_exists(db) -> bool:
    query = db.collection("usuarios").where(filter=FieldFilter("platform_role", "==", PLATFORM_SUPER_ADMIN_ROLE))
    return bool(list(query.limit(1).stream()))


def create_super_admin(db, email: str, name: str, password: Optional[str] = None,
                       requester: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Regra de bootstrap: o primeiro super admin pode ser criado sem autenticação.
    Depois disso, só outro super admin cria.
    """
    if platform_super_admin_exists(db):
        if not requester:
            raise UnauthorizedError("Missing Authorization header")
        if not is_super_admin(get_doc(db, "usuarios", requester.get("uid"))):
            raise ForbiddenError("Forbidden")

    user = create_user_with_profile(
        db, email, password or generate_password(12), name,
        {"tipo": SUPER_ADMIN_TIPO, "platform_role": PLATFORM_SUPER_ADMIN_ROLE},
    )
    auth.set_custom_user_claims(user.uid, {"platform_role": PLATFORM_SUPER_ADMIN_ROLE})
    logging.info(f"Super admin {user.uid} criado ({email})")
    return {"success": True, "user": {"uid": user.uid, "email": email}}


# --- Fast track (cadastro + pagamento) ---
def _resolve_fast_track_user(db, user_data: Optional[Dict[str, Any]],
                             current_user: Optional[Dict[str, Any]]):
    """Devolve (user_id, senha_temporaria). Reaproveita o usuário se o e-mail já existe."""
    if not user_data:
        if not current_user:
            raise ServiceError("User not identified")
        return current_user["uid"], None

    existing = find_one(db, "usuarios", "email", user_data["email"])
    if existing:
        logging.info(f"Fast track: reaproveitando usuário existente {existing['id']}")
        return existing["id"], None

    user = create_user_with_profile(
        db, user_data["email"], user_data["password"], user_data["name"],
        {"tipo": "owner", "telefone": user_data.get("phone")},
    )
    return user.uid, user_data["password"]


def acquire_customer(db, gateway: MercadoPagoGateway, payload: Dict[str, Any],
                     current_user: Optional[Dict[str, Any]] = None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Cria (ou reaproveita) o dono, cobra o plano no cartão e, se aprovado,
    ativa o estabelecimento. Pagamento recusado deixa o usuário como lead.
    """
    user_data = payload.get("user_data")
    user_id, temp_password = _resolve_fast_track_user(db, user_data, current_user)

    plan = get_doc(db, "saas_plans", payload["plan_id"])
    if not plan:
        raise ServiceError("Plan not found")

    payment_data = {
        "transaction_amount": float(plan.get("price") or 0),
        "token": payload["token"],
        "description": f"Assinatura {plan.get('name')} (Fast Track)",
        "installments": 1,
        "payment_method_id": payload["payment_method_id"],
        "payer": {"email": payload["payer_email"]},
        "metadata": {"user_id": user_id, "plan_id": plan["id"], "type": "new_subscription"},
    }
    if payload.get("issuer_id"):
        payment_data["issuer_id"] = payload["issuer_id"]
    if payload.get("identification"):
        payment_data["payer"]["identification"] = payload["identification"]

    try:
        payment = gateway.create_payment(payment_data)
    except GatewayError:
        logging.error(f"Fast track: pagamento recusado pelo Mercado Pago para {user_id}. Usuário mantido como lead.")
        raise ServiceError("Payment rejected by Mercado Pago")

    if payment.get("status") != "approved":
        raise ServiceError(f"Payment status: {payment.get('status')}")

    payment_id = str(payment.get("id"))
    # O webhook deste pagamento chega depois e deve ser ignorado
    subscription_service.claim_event(db, f"mp:payment:{payment_id}")

    now = subscription_service.to_datetime(now) or datetime.now(pytz.utc)
    days = subscription_service.plan_days(db, plan["id"])
    establishment = find_one(db, "establishments", "owner_id", user_id)
    if establishment:
        establishment_id = establishment["id"]
        end_date = subscription_service.activate_establishment(
            db, establishment_id, days, plan.get("name"), "mercadopago", now, plan["id"])
    else:
        end_date = subscription_service.compute_new_expiry(None, days, now)
        display_name = (user_data or {}).get("name")
        _, est_ref = db.collection("establishments").add({
            "owner_id": user_id,
            "name": f"{display_name}'s Shop" if display_name else "Minha Barbearia",
            "slug": f"shop-{user_id[:6]}",
            "phone": (user_data or {}).get("phone"),
            "subscription_status": "active",
            "plan_name": plan.get("name"),
            "subscription_end_date": end_date,
            "payment_gateway": "mercadopago",
            "open_hour": "09:00",
            "close_hour": "18:00",
            "work_days": [1, 2, 3, 4, 5, 6],
            "created_at": firestore.SERVER_TIMESTAMP,
        })
        establishment_id = est_ref.id
        db.collection("usuarios").document(user_id).set({"establishment_id": establishment_id}, merge=True)

    db.collection("subscriptions").add({
        "establishment_id": establishment_id,
        "user_id": user_id,
        "plan_id": plan["id"],
        "status": "active",
        "gateway": "mercadopago",
        "current_period_end": end_date,
        "last_payment_status": "paid",
        "retry_count": 0,
        "mp_payment_id": payment_id,
        "updated_at": now,
    })
    db.collection("saas_payments").add({
        "establishment_id": establishment_id,
        "plan_id": plan["id"],
        "amount": plan.get("price"),
        "status": "paid",
        "mp_payment_id": payment_id,
        "gateway": "mercadopago",
        "paid_at": now,
    })
    logging.info(f"Fast track APROVADO: usuário {user_id}, estabelecimento {establishment_id}")
    return {"success": True, "userId": user_id, "temp_password": temp_password,
            "establishment_id": establishment_id, "status": "approved"}
