# barberpro/core/models.py
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


# --- Pagamentos (Mercado Pago) ---
class AppointmentPixData(BaseModel):
    price: float = Field(..., gt=0)
    service_name: str
    client_name: Optional[str] = None
    client_email: Optional[EmailStr] = None
    booking_id: Optional[str] = None


class CreatePixPayload(BaseModel):
    establishment_id: str
    appointment_data: AppointmentPixData


class PreapprovalPayload(BaseModel):
    token: str
    payer_email: EmailStr
    plan_type: str
    establishment_id: Optional[str] = None


class ManageSubscriptionPayload(BaseModel):
    action: str
    establishment_id: str


class SubscriptionCheckoutPayload(BaseModel):
    establishment_id: str
    plan_id: str
    payment_method: str = "pix"


class RenewSubscriptionPayload(BaseModel):
    establishment_id: str
    months_to_add: int = Field(1, ge=1, le=12)


class PayerIdentification(BaseModel):
    type: str
    number: str


class NewUserData(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=6)


class AcquireCustomerPayload(BaseModel):
    """Fast track: cria (ou reaproveita) o usuário e cobra o plano no cartão."""
    token: str
    issuer_id: Optional[str] = None
    payment_method_id: str
    card_holder_name: Optional[str] = None
    identification: Optional[PayerIdentification] = None
    payer_email: EmailStr
    plan_id: str
    user_data: Optional[NewUserData] = None
    type: Optional[str] = None


# --- Iugu ---
class IuguChargeItem(BaseModel):
    description: str
    quantity: int = 1
    price_cents: int


class IuguChargePayload(BaseModel):
    payment_token: Optional[str] = None
    amount_cents: Optional[int] = None
    email: Optional[EmailStr] = None
    items: Optional[List[IuguChargeItem]] = None


class IuguSubscriptionPayload(BaseModel):
    payment_token: str
    plano_id: str
    barbeiro_id: str
    email: EmailStr
    nome: str = Field(..., min_length=2)


# --- Agendamentos ---
class BookingPayload(BaseModel):
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    barber_id: str = Field(..., alias="barberId")
    service_id: str = Field(..., alias="serviceId")
    user_id: Optional[str] = Field(None, alias="userId")
    price: Optional[float] = None
    client_name: Optional[str] = Field(None, alias="clientName")
    client_phone: Optional[str] = Field(None, alias="clientPhone")

    class Config:
        # Aceita tanto camelCase (frontend) quanto snake_case
        populate_by_name = True


# --- WhatsApp ---
class WhatsAppSendPayload(BaseModel):
    establishment_id: str
    phone: str = Field(..., min_length=8)
    message_body: str = Field(..., min_length=1)
    message_type: str = "manual"
    test_mode: bool = False


# --- Contas ---
class StaffUserPayload(BaseModel):
    email: EmailStr
    password: Optional[str] = Field(None, min_length=6)
    name: str = Field(..., min_length=2)
    establishment_id: str
    tipo: Literal["barber", "manager", "receptionist"] = "barber"


class ForgotPasswordPayload(BaseModel):
    email: Optional[EmailStr] = None


class SendEmailPayload(BaseModel):
    type: str
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    password: Optional[str] = None


# --- Super Admin ---
class AdminUserActionPayload(BaseModel):
    action: str
    user_id: Optional[str] = Field(None, alias="userId")
    payload: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class AdminResetPasswordPayload(BaseModel):
    user_id: Optional[str] = Field(None, alias="userId")
    new_password: Optional[str] = Field(None, alias="newPassword")

    class Config:
        populate_by_name = True


class SuperAdminPayload(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=2)
    password: Optional[str] = Field(None, min_length=6)


class IuguGatewayPayload(BaseModel):
    account_id: str = Field(..., min_length=1)
    api_token: str = Field(..., min_length=1)


class ActivateProviderPayload(BaseModel):
    provider: str

    @field_validator("provider", mode="after")
    @classmethod
    def provider_lowercase(cls, value: str) -> str:
        return value.strip().lower()


class IuguTriggersPayload(BaseModel):
    target_url: Optional[str] = None
    events: Optional[List[str]] = None
