# barberpro/core/auth.py
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from firebase_admin import auth

from barberpro.core.db import get_db, get_doc

# Define o esquema de autenticação (token Firebase no header Authorization).
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

SUPER_ADMIN_TIPO = "super_admin"
PLATFORM_SUPER_ADMIN_ROLE = "platform_super_admin"


def verify_token(token: str) -> Dict[str, Any]:
    """Valida o ID token do Firebase e devolve as claims decodificadas."""
    try:
        return auth.verify_id_token(token)
    except auth.ExpiredIdTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expirado")
    except (auth.InvalidIdTokenError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido")


async def get_current_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)):
    """
    Dependência FastAPI que exige um token Firebase válido.
    Preflight OPTIONS passa direto (o CORSMiddleware responde antes).
    """
    if request.method == "OPTIONS":
        return None

    if token is None:
        logging.warning("Authentication token not provided for non-OPTIONS request.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verify_token(token)


async def get_optional_user(token: Optional[str] = Depends(oauth2_scheme)):
    """Como get_current_user, mas devolve None quando não há token."""
    if token is None:
        return None
    return verify_token(token)


def is_super_admin(profile: Optional[Dict[str, Any]]) -> bool:
    if not profile:
        return False
    return profile.get("tipo") == SUPER_ADMIN_TIPO or profile.get("platform_role") == PLATFORM_SUPER_ADMIN_ROLE


async def require_super_admin(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_db),
):
    """Só deixa passar usuários com papel de super admin na coleção 'usuarios'."""
    profile = get_doc(db, "usuarios", current_user.get("uid"))
    if not is_super_admin(profile):
        logging.warning(f"Acesso de super admin NEGADO para {current_user.get('uid')} (tipo: {profile.get('tipo') if profile else None})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: Only Super Admin can perform this action")
    return current_user


def get_owned_establishment(db, owner_uid: str, establishment_id: str) -> Dict[str, Any]:
    """Busca o estabelecimento e confirma que pertence ao usuário autenticado."""
    establishment = get_doc(db, "establishments", establishment_id)
    if not establishment or establishment.get("owner_id") != owner_uid:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Establishment not found or unauthorized")
    return establishment
