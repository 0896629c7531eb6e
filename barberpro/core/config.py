# barberpro/core/config.py
import logging
import os
from dotenv import load_dotenv

# Carrega variáveis de ambiente do ficheiro .env (desenvolvimento local)
load_dotenv()

# --- Firebase ---
FIREBASE_CREDENTIALS = os.environ.get(
    "FIREBASE_CREDENTIALS",
    os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "credentials.json"),
)

# --- URLs ---
FRONTEND_BASE_URL = os.environ.get("FRONTEND_BASE_URL", "https://www.crdev.app")
API_BASE_URL = os.environ.get("API_BASE_URL", "https://api.crdev.app/api/v1")

# --- Mercado Pago (conta da plataforma) ---
MERCADO_PAGO_ACCESS_TOKEN = os.environ.get("SAAS_MP_ACCESS_TOKEN") or os.environ.get("MERCADO_PAGO_ACCESS_TOKEN")

# --- Iugu ---
IUGU_API_URL = os.environ.get("IUGU_API_URL", "https://api.iugu.com/v1")
IUGU_API_TOKEN = os.environ.get("IUGU_API_TOKEN")
IUGU_WEBHOOK_TOKEN = os.environ.get("IUGU_WEBHOOK_TOKEN")

# --- WhatsApp (gateway Wordnet) ---
WORDNET_API_URL = os.environ.get("WORDNET_API_URL", "https://myhs.app")
WORDNET_INSTANCE_ID = os.environ.get("WORDNET_INSTANCE_ID")
WORDNET_API_TOKEN = os.environ.get("WORDNET_API_TOKEN")

# --- E-mail (Resend) ---
RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
SENDER_EMAIL_ADDRESS = os.environ.get("SENDER_EMAIL_ADDRESS", "nao-responder@crdev.app")

# --- Cron ---
CRON_SECRET = os.environ.get("CRON_SECRET")

# --- Regras de negócio ---
DEFAULT_PLAN_DAYS = int(os.environ.get("DEFAULT_PLAN_DAYS", "30"))
LOCAL_TIMEZONE = "America/Sao_Paulo"

_DEFAULT_ALLOWED_ORIGINS = [
    "https://www.crdev.app",
    "https://crdev.app",
    "http://localhost:5173",
    "http://localhost:3000",
]


def allowed_origins() -> list:
    """Lê CORS_ALLOWED_ORIGINS (separado por vírgula) ou usa a lista padrão."""
    raw = os.environ.get("CORS_ALLOWED_ORIGINS", "")
    if not raw:
        return list(_DEFAULT_ALLOWED_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


if not MERCADO_PAGO_ACCESS_TOKEN:
    logging.warning("MERCADO_PAGO_ACCESS_TOKEN não está configurado. Será lido de saas_settings quando existir.")
if not IUGU_API_TOKEN:
    logging.warning("IUGU_API_TOKEN não está configurado. Integração Iugu indisponível.")
