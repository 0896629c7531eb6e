# barberpro/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from barberpro.core import config
from barberpro.core.errors import GatewayError, ServiceError
from barberpro.routers import (
    account_routes, admin_routes, booking_routes, iugu_routes,
    payment_routes, webhook_routes, whatsapp_routes,
)

# Configuração do logging
logging.basicConfig(level=logging.INFO)

# Cria a instância principal do FastAPI
app = FastAPI(
    title="API BarberPro",
    description="Backend multi-tenant de agendamento e assinaturas para barbearias",
    version="2.0.0",
)

# --- CONFIGURAÇÃO DO CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Erros no formato {"error": "..."} ---
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if isinstance(exc, GatewayError):
        logging.error(f"{request.method} {request.url.path} -> gateway: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Dados inválidos")
    return JSONResponse(status_code=400, content={"error": message})


# --- INCLUSÃO DOS ROTEADORES ---
app.include_router(webhook_routes.router, prefix="/api/v1")
app.include_router(payment_routes.router, prefix="/api/v1")
app.include_router(iugu_routes.router, prefix="/api/v1")
app.include_router(booking_routes.router, prefix="/api/v1")
app.include_router(whatsapp_routes.router, prefix="/api/v1")
app.include_router(account_routes.router, prefix="/api/v1")
app.include_router(admin_routes.router, prefix="/api/v1")
app.include_router(admin_routes.bootstrap_router, prefix="/api/v1")


# --- Rota Raiz Principal ---
@app.get("/", tags=["Root"])
def read_root():
    """Endpoint raiz para verificar o estado da API."""
    return {"status": "API BarberPro está online e operacional!"}
