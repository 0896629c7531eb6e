# barberpro/core/deps.py
# Dependências FastAPI dos clientes de gateway (sobrescritas nos testes via dependency_overrides)
from fastapi import Depends

from barberpro.core.db import get_db
from barberpro.services.iugu_service import IuguClient
from barberpro.services.mercadopago_service import MercadoPagoGateway, resolve_platform_token
from barberpro.services.whatsapp_service import WhatsAppClient
from barberpro.services.gateway_service import resolve_iugu_token


def get_platform_gateway_factory(db=Depends(get_db)):
    """
    Devolve uma função que monta o gateway Mercado Pago da plataforma.
    O token só é resolvido quando alguém realmente precisa dele.
    """
    def factory() -> MercadoPagoGateway:
        return MercadoPagoGateway(resolve_platform_token(db))
    return factory


def get_establishment_gateway_factory():
    """Gateway com o token do próprio estabelecimento (PIX de agendamento)."""
    def factory(access_token: str) -> MercadoPagoGateway:
        return MercadoPagoGateway(access_token)
    return factory


def get_iugu_client(db=Depends(get_db)) -> IuguClient:
    return IuguClient(api_token=resolve_iugu_token(db))


def get_whatsapp_client() -> WhatsAppClient:
    return WhatsAppClient()
