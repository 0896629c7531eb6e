# barberpro/core/errors.py
from typing import Any, Optional


class ServiceError(Exception):
    """Erro de negócio que vira uma resposta HTTP ``{"error": message}``."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class ForbiddenError(ServiceError):
    status_code = 403


class UnauthorizedError(ServiceError):
    status_code = 401


class ConfigError(ServiceError):
    status_code = 500


class GatewayError(ServiceError):
    """Falha ao conversar com um gateway externo (Mercado Pago, Iugu, WhatsApp)."""

    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message, status_code)
        self.details = details
