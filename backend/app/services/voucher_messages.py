"""Spanish texts and interactive options sent to submitters."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.config import get_settings
from app.schemas.voucher import VoucherDraft, VoucherField
from app.services.messaging import ButtonOption, ListRow, ListSection

NOT_AVAILABLE = "No disponible"

CONFIRM_ID = "confirm"
CANCEL_ID = "cancel"
CANCEL_ALL_ID = "cancelar_todo"
MANUAL_DATE_ID = "otra"

CONFIRM_CANCEL_BUTTONS = [
    ButtonOption(id=CONFIRM_ID, title="✅ Sí, es correcto"),
    ButtonOption(id=CANCEL_ID, title="❌ No. Editar datos ✏️"),
]

_AFFIRMATIVE = {"si", "sí", "yes", "ok", "confirmar", "confirmo", "correcto", CONFIRM_ID}
_NEGATIVE = {"no", "cancelar", "incorrecto", "error", CANCEL_ID}

FIELD_LABELS = {
    VoucherField.HOUSE_NUMBER: "Número de casa",
    VoucherField.REFERENCE: "Referencia bancaria",
    VoucherField.PAYMENT_DATE: "Fecha de pago",
    VoucherField.TRANSACTION_TIME: "Hora de transacción",
    VoucherField.AMOUNT: "Monto",
}

MONTH_NAMES = (
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
)

PROCESSING_ERROR = (
    "Hubo un error al procesar tu comprobante. Por favor intenta nuevamente "
    "o envía una imagen más clara del comprobante."
)
GENERIC_RETRY = "Hubo un error al registrar tu pago. Por favor intenta nuevamente más tarde."
SESSION_EXPIRED = "Ha expirado la sesión. Por favor envía nuevamente el comprobante."
FLOW_ERROR = "Ocurrió un error en el flujo. Por favor envía nuevamente el comprobante."
CANCELLED = (
    "Entendido, he cancelado el registro. Si necesitas corregir algo, "
    "por favor envía nuevamente el comprobante."
)
CONFIRMATION_RETRY = (
    'No entendí tu respuesta. Por favor responde con "SI" para confirmar el registro '
    'o "NO" para corregir los datos.'
)
INVALID_OPTION = "Opción no válida. Por favor selecciona una opción de la lista."
UNSUPPORTED_MESSAGE = (
    "Por favor envía un comprobante de pago como imagen o PDF. "
    "Mis funciones están limitadas al registro de pagos."
)
ONLY_PDF_SUPPORTED = "Solo puedo procesar documentos PDF. Por favor envía tu comprobante como imagen o PDF."
IDLE_HELP = "Para registrar un pago, envía tu comprobante como imagen o PDF."
CORRECTION_PROMPT = "¿Qué dato deseas corregir?"
CORRECTION_BUTTON = "Seleccionar dato"
DATE_PROMPT = "📅 Selecciona la fecha de pago:"
DATE_BUTTON = "Seleccionar fecha"
MANUAL_DATE_PROMPT = "📅 Por favor escribe la fecha de pago.\n\nFormato: DD/MM/AAAA\nEjemplo: 15/01/2025"


def is_affirmative(reply: str) -> bool:
    return (reply or "").strip().lower() in _AFFIRMATIVE


def is_negative(reply: str) -> bool:
    return (reply or "").strip().lower() in _NEGATIVE


def unsupported_file_type(mime_type: str) -> str:
    return (
        f"El tipo de archivo {mime_type or 'desconocido'} no es soportado. "
        "Por favor envía una imagen (JPG, PNG, etc.) o PDF para registrar tu pago."
    )


def house_number_prompt() -> str:
    settings = get_settings()
    return (
        "Para poder registrar tu pago por favor indica el número de casa a la que corresponde "
        f"el pago: (El valor debe ser entre {settings.house_number_min} y {settings.house_number_max})."
    )


def missing_field_prompt(field: VoucherField, *, first: bool = False) -> str:
    intro = "No pude extraer todos los datos del comprobante.\n\n" if first else ""
    return f"{intro}Por favor proporciona el siguiente dato:\n\n*{FIELD_LABELS[field]}*"


def correction_value_prompt(field: VoucherField) -> str:
    if field is VoucherField.HOUSE_NUMBER:
        return house_number_prompt()
    if field is VoucherField.REFERENCE:
        return "Escribe la referencia bancaria correcta (mínimo 3 caracteres)."
    if field is VoucherField.TRANSACTION_TIME:
        return "Escribe la hora de la transacción en formato HH:MM (ejemplo: 14:30)."
    return f"Escribe el valor correcto para *{FIELD_LABELS[field]}*."


def _value_or_placeholder(value: Optional[object]) -> str:
    if value is None:
        return NOT_AVAILABLE
    text = str(value).strip()
    return text or NOT_AVAILABLE


def confirmation_summary(draft: VoucherDraft) -> str:
    amount = _value_or_placeholder(draft.amount)
    if amount != NOT_AVAILABLE:
        amount = f"${amount}"
    lines = [
        "Por favor, confirma que los siguientes datos son correctos:",
        "",
        f"🏠 Casa: {_value_or_placeholder(draft.house_number)}",
        f"💰 Monto: {amount}",
        f"📅 Fecha: {_value_or_placeholder(draft.payment_date)}",
        f"🔢 Referencia: {_value_or_placeholder(draft.reference)}",
        f"⏰ Hora: {_value_or_placeholder(draft.transaction_time)}",
        "",
        "¿Los datos son correctos?",
    ]
    return "\n".join(lines)


def success_message(*, confirmation_code: str, house_number: int, amount: str) -> str:
    return (
        '¡Perfecto! Tu pago ha sido registrado con el estatus "pendiente verificación en banco".\n\n'
        f"Casa: {house_number}\n"
        f"Monto: ${amount}\n"
        f"Código de confirmación: {confirmation_code}\n\n"
        "Te notificaremos cuando sea verificado. ¡Gracias!"
    )


def duplicate_message(confirmation_code: Optional[str]) -> str:
    return (
        "Este comprobante ya fue registrado anteriormente para la misma casa, fecha y monto.\n\n"
        f"El Código de confirmación de ese registro es: {confirmation_code or NOT_AVAILABLE}"
    )


def correction_sections() -> list[ListSection]:
    return [
        ListSection(
            title="Datos",
            rows=[
                ListRow(id=VoucherField.HOUSE_NUMBER.value, title="Número de casa", description="Corregir el número de casa"),
                ListRow(id=VoucherField.REFERENCE.value, title="Referencia", description="Corregir la referencia bancaria"),
                ListRow(id=VoucherField.PAYMENT_DATE.value, title="Fecha", description="Corregir la fecha de pago"),
                ListRow(
                    id=VoucherField.TRANSACTION_TIME.value,
                    title="Hora",
                    description="Corregir la hora de transacción",
                ),
                ListRow(id=CANCEL_ALL_ID, title="❌ Cancelar registro", description="No registrar este pago"),
            ],
        )
    ]


def business_today() -> date:
    return datetime.now(ZoneInfo(get_settings().business_timezone)).date()


def _long_date(day: date) -> str:
    return f"{day.day} de {MONTH_NAMES[day.month - 1]} {day.year}"


def recent_date_sections(today: Optional[date] = None) -> list[ListSection]:
    today = today or business_today()
    yesterday = today - timedelta(days=1)
    before = today - timedelta(days=2)
    return [
        ListSection(
            title="Fechas recientes",
            rows=[
                ListRow(id="hoy", title=f"Hoy {today.day}", description=_long_date(today)),
                ListRow(id="fecha_1", title=f"Ayer {yesterday.day}", description=_long_date(yesterday)),
                ListRow(id="fecha_2", title=f"Antier {before.day}", description=_long_date(before)),
                ListRow(id=MANUAL_DATE_ID, title="Otra fecha", description="Escribir manualmente"),
            ],
        )
    ]


def resolve_date_shortcut(reply: str, today: Optional[date] = None) -> Optional[str]:
    """``hoy``/``fecha_1``/``fecha_2`` to DD/MM/YYYY; None for anything else."""
    key = (reply or "").strip().lower()
    offsets = {"hoy": 0, "fecha_1": 1, "fecha_2": 2}
    if key not in offsets:
        return None
    day = (today or business_today()) - timedelta(days=offsets[key])
    return day.strftime("%d/%m/%Y")
