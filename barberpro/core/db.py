# barberpro/core/db.py
import logging
import os
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore import FieldFilter

from barberpro.core import config

db = None


def init_firebase():
    """Inicializa o Firebase Admin SDK (uma única vez) e devolve o cliente Firestore."""
    global db
    if db is not None:
        return db

    if not firebase_admin._apps:
        cred_path = config.FIREBASE_CREDENTIALS
        if os.path.exists(cred_path):
            firebase_admin.initialize_app(credentials.Certificate(cred_path))
            logging.info(f"Firebase Admin SDK inicializado com: {cred_path}")
        else:
            # Sem arquivo: usa as credenciais padrão do ambiente (Cloud Run, etc.)
            logging.warning(f"Credencial não encontrada em '{cred_path}'. Usando Application Default Credentials.")
            firebase_admin.initialize_app()

    db = firestore.client()
    return db


def get_db():
    """Dependência FastAPI que entrega o cliente Firestore."""
    return init_firebase()


# --- Funções DB ---
def get_doc(db, collection: str, doc_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Busca um documento e devolve os dados com o campo 'id', ou None."""
    if not doc_id:
        return None
    snapshot = db.collection(collection).document(str(doc_id)).get()
    if not snapshot.exists:
        return None
    data = snapshot.to_dict() or {}
    data["id"] = snapshot.id
    return data


def find_one(db, collection: str, field: str, value: Any, order_by: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Primeiro documento onde ``field == value``. Com order_by, pega o mais recente."""
    query = db.collection(collection).where(filter=FieldFilter(field, "==", value))
    if order_by:
        query = query.order_by(order_by, direction=firestore.Query.DESCENDING)
    docs = list(query.limit(1).stream())
    if not docs:
        return None
    data = docs[0].to_dict() or {}
    data["id"] = docs[0].id
    return data


def get_saas_setting(db, key: str) -> Optional[str]:
    """Lê uma configuração global da plataforma (coleção saas_settings)."""
    setting = get_doc(db, "saas_settings", key)
    if setting:
        return setting.get("setting_value")
    return None
