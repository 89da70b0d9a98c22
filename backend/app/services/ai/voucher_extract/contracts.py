"""Voucher extract scope contracts."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AIVoucherExtractResult(BaseModel):
    """Raw field strings read from a payment receipt.

    Values are not validated here; the conversation treats any blank or invalid
    mandatory value as missing and asks the submitter for it.
    """

    monto: str = ""
    fecha_pago: str = ""
    referencia: str = ""
    hora_transaccion: str = ""
    model_version: str = ""
    raw_extraction: dict[str, Any] = Field(default_factory=dict)

    @field_validator("monto", "fecha_pago", "referencia", "hora_transaccion", mode="before")
    @classmethod
    def _as_text(cls, value):
        if value is None:
            return ""
        return str(value).strip()
