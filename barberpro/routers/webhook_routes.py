# barberpro/routers/webhook_routes.py
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from barberpro.core import config
from barberpro.core.db import get_db
from barberpro.core.deps import get_platform_gateway_factory
from barberpro.core.errors import ServiceError
from barberpro.services import subscription_service

PAYMENT_TOPICS = ("payment", "payment.created", "payment.updated")
PREAPPROVAL_TOPICS = ("preapproval", "subscription_preapproval")
IUGU_EVENTS = ("invoice.payment_failed", "invoice.payment_succeeded")

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def nest_form_fields(items) -> Dict[str, Any]:
    """Converte chaves com colchetes do form do Iugu ('data[id]') em dicts aninhados."""
    result: Dict[str, Any] = {}
    for key, value in items:
        parts = key.replace("]", "").split("[")
        target = result
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = value
    return result


# --- Mercado Pago ---
def _process_mercadopago(db, gateway_factory, topic: str, resource_id: str) -> str:
    gateway = gateway_factory()
    if topic in PREAPPROVAL_TOPICS:
        return subscription_service.apply_mercadopago_preapproval(db, gateway.get_preapproval(resource_id))
    return subscription_service.apply_mercadopago_payment(db, gateway.get_payment(resource_id))


@router.post("/mercado-pago")
async def webhook_mercado_pago(request: Request, db=Depends(get_db),
                               gateway_factory=Depends(get_platform_gateway_factory)):
    body = await _json_body(request)
    params = request.query_params
    topic = params.get("topic") or params.get("type") or body.get("type") or body.get("topic")
    resource_id = (
        params.get("id")
        or params.get("data.id")
        or (body.get("data") or {}).get("id")
        or body.get("id")
    )
    logging.info(f"Webhook Mercado Pago recebido: Tipo: {topic}, Ação: {body.get('action')}, ID: {resource_id}")

    if topic not in PAYMENT_TOPICS + PREAPPROVAL_TOPICS:
        return {"status": "ignored"}
    if not resource_id:
        return JSONResponse(status_code=400, content={"error": "ID não encontrado"})

    try:
        # SDK síncrono com retentativas: fora do event loop
        result = await run_in_threadpool(_process_mercadopago, db, gateway_factory, topic, str(resource_id))
    except ServiceError as e:
        # 500 para o Mercado Pago reenviar depois
        logging.error(f"Erro ao processar webhook do MP ({topic} {resource_id}): {e.message}")
        return JSONResponse(status_code=500, content={"error": e.message})
    except Exception as e:
        logging.exception(f"Erro ao processar webhook do MP ({topic} {resource_id}): {e}")
        return JSONResponse(status_code=500, content={"error": "Erro interno"})

    return {"status": "recebido", "result": result}


# --- Iugu ---
@router.post("/iugu")
async def webhook_iugu(request: Request, db=Depends(get_db)):
    """O Iugu sempre recebe 200; falhas ficam só no log."""
    if config.IUGU_WEBHOOK_TOKEN and request.query_params.get("token") != config.IUGU_WEBHOOK_TOKEN:
        logging.warning("Webhook Iugu com token inválido. Ignorado.")
        return {"status": "ignored"}

    if "application/x-www-form-urlencoded" in request.headers.get("content-type", ""):
        form = await request.form()
        body = nest_form_fields(form.multi_items())
    else:
        body = await _json_body(request)

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    event = body.get("event") or body.get("type") or data.get("event")
    if event not in IUGU_EVENTS:
        logging.info(f"Webhook Iugu ignorado: {event}")
        return {"status": "ignored"}

    subscription = body.get("subscription") if isinstance(body.get("subscription"), dict) else {}
    customer = body.get("customer") if isinstance(body.get("customer"), dict) else {}
    iugu_subscription_id = body.get("subscription_id") or subscription.get("id") or data.get("subscription_id")
    customer_id = body.get("customer_id") or customer.get("id") or data.get("customer_id")
    establishment_id = body.get("establishment_id") or data.get("establishment_id")
    invoice_id = data.get("id") or body.get("id")

    try:
        sub = subscription_service.resolve_iugu_subscription(db, iugu_subscription_id, establishment_id, customer_id)
        if not sub:
            logging.warning(f"Webhook Iugu {event}: assinatura não encontrada ({iugu_subscription_id})")
            return {"status": "ignored"}

        # Só a fatura identifica a entrega; sem ela não há deduplicação
        event_key = f"iugu:{event}:{invoice_id}" if invoice_id else None
        if event_key and not subscription_service.claim_event(db, event_key):
            return {"status": "duplicate"}
        try:
            if event == "invoice.payment_failed":
                subscription_service.apply_iugu_payment_failed(db, sub)
            else:
                subscription_service.apply_iugu_payment_succeeded(db, sub)
        except Exception:
            if event_key:
                subscription_service.release_event(db, event_key)
            raise
    except Exception as e:
        logging.exception(f"iugu-webhook error: {e}")
        return {"status": "error"}

    return {"status": "recebido"}
