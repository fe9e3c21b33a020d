from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import Field, field_validator

from services.order_service.enums import PaymentMethod
from shared.schemas import CamelModel


class PaymentInitializeRequest(CamelModel):
    order_id: int
    amount: Decimal = Field(gt=0)
    card_number: str
    expiry_month: str
    expiry_year: str
    cvv: str = Field(pattern=r"^\d{3,4}$")
    client_ip: Optional[str] = None
    installment_count: int = Field(default=0, ge=0, le=12)

    @field_validator("card_number")
    @classmethod
    def normalize_pan(cls, value: str) -> str:
        digits = value.replace(" ", "").replace("-", "")
        if not digits.isdigit() or not 12 <= len(digits) <= 19:
            raise ValueError("card number must be 12-19 digits")
        return digits

    @field_validator("expiry_month", "expiry_year", mode="before")
    @classmethod
    def expiry_as_text(cls, value) -> str:
        return str(value).strip()

    @field_validator("expiry_month")
    @classmethod
    def check_month(cls, value: str) -> str:
        if not value.isdigit() or not 1 <= int(value) <= 12:
            raise ValueError("expiry month must be 1-12")
        return value

    @field_validator("expiry_year")
    @classmethod
    def check_year(cls, value: str) -> str:
        if not value.isdigit() or len(value) not in (2, 4):
            raise ValueError("expiry year must be YY or YYYY")
        return value


class PaymentResult(CamelModel):
    transaction_id: str
    rrn: Optional[str] = None
    auth_code: Optional[str] = None


class PaymentInitializeResponse(CamelModel):
    enrolled: bool
    requires_3d_secure: Optional[bool] = Field(default=None, alias="requires3DSecure")
    acs_url: Optional[str] = None
    pa_req: Optional[str] = None
    term_url: Optional[str] = None
    md: Optional[str] = None
    verify_enrollment_request_id: Optional[str] = None
    payment_result: Optional[PaymentResult] = None


class PaymentStatusResponse(CamelModel):
    order_id: int
    order_number: str
    group_id: str
    payment_status: str
    payment_method: str
    payment_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_error: Optional[str] = None


class OfflinePaymentRequest(CamelModel):
    order_id: int
    method: PaymentMethod


class OfflinePaymentResponse(CamelModel):
    success: bool
    order_id: int
    payment_method: str
    payment_status: str


class ExpireResponse(CamelModel):
    expired: int
    order_ids: List[int] = []
