from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationState(str, Enum):
    WAITING_HOUSE_NUMBER = "WAITING_HOUSE_NUMBER"
    WAITING_MISSING_DATA = "WAITING_MISSING_DATA"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    WAITING_CORRECTION_TYPE = "WAITING_CORRECTION_TYPE"
    WAITING_CORRECTION_VALUE = "WAITING_CORRECTION_VALUE"


class ValidationStatus(str, Enum):
    NOT_FOUND = "not-found"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REQUIRES_MANUAL = "requires-manual"
    CONFLICT = "conflict"


class UserRole(str, Enum):
    ADMIN = "admin"
    OWNER = "owner"
    TENANT = "tenant"


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPEND = "suspend"
    INACTIVE = "inactive"


class VoucherField(str, Enum):
    """Field ids as they travel through chat buttons and list rows."""

    AMOUNT = "monto"
    PAYMENT_DATE = "fecha_pago"
    REFERENCE = "referencia"
    TRANSACTION_TIME = "hora_transaccion"
    HOUSE_NUMBER = "casa"

    @property
    def attribute(self) -> str:
        return _DRAFT_ATTRIBUTES[self]


_DRAFT_ATTRIBUTES = {
    VoucherField.AMOUNT: "amount",
    VoucherField.PAYMENT_DATE: "payment_date",
    VoucherField.REFERENCE: "reference",
    VoucherField.TRANSACTION_TIME: "transaction_time",
    VoucherField.HOUSE_NUMBER: "house_number",
}

# Order in which missing data is requested. The bank reference is optional and never queued.
MISSING_FIELD_ORDER = (
    VoucherField.AMOUNT,
    VoucherField.PAYMENT_DATE,
    VoucherField.TRANSACTION_TIME,
    VoucherField.HOUSE_NUMBER,
)

CORRECTABLE_FIELDS = (
    VoucherField.HOUSE_NUMBER,
    VoucherField.REFERENCE,
    VoucherField.PAYMENT_DATE,
    VoucherField.TRANSACTION_TIME,
)


class VoucherDraft(BaseModel):
    """Working copy of a receipt's fields while the submitter confirms them."""

    amount: str = ""
    payment_date: str = ""
    reference: str = ""
    transaction_time: str = ""
    house_number: Optional[int] = None
    fields_incomplete: bool = False
    missing_prompt: Optional[str] = None

    def missing_fields(self) -> list[VoucherField]:
        missing: list[VoucherField] = []
        for field in MISSING_FIELD_ORDER:
            value = getattr(self, field.attribute)
            if field is VoucherField.HOUSE_NUMBER:
                if value is None:
                    missing.append(field)
            elif not (value or "").strip():
                missing.append(field)
        return missing


class ConversationStatsOut(BaseModel):
    total: int
    by_state: dict[ConversationState, int] = Field(default_factory=dict)


# ── REST voucher API ──


class VoucherOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: datetime
    amount: Decimal
    authorization_number: Optional[str] = None
    confirmation_code: str
    confirmation_status: bool
    url: Optional[str] = None
    number_house: Optional[int] = None
    created_at: Optional[datetime] = None


class VoucherDetailOut(VoucherOut):
    view_url: Optional[str] = None


class VoucherUploadOut(BaseModel):
    """Fields read from a receipt; the caller holds them until it confirms."""

    draft: VoucherDraft
    artifact_handle: str
    original_filename: Optional[str] = None
    valid: bool
    missing_fields: list[VoucherField] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    message: str = ""


class VoucherConfirmIn(BaseModel):
    artifact_handle: str = Field(min_length=1)
    amount: str
    payment_date: str
    transaction_time: Optional[str] = None
    house_number: int
    reference: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class VoucherConfirmOut(BaseModel):
    success: bool = True
    confirmation_code: str
    voucher: VoucherOut
