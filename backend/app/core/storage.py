import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from supabase import create_client

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


def _file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower()


def build_receipt_path(filename: Optional[str], *, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    token = uuid.uuid4().hex
    ext = _file_extension(filename)
    return f"{now:%Y}/{now:%m}/{token}{ext}"


def get_storage_client():
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise StorageError("Supabase storage credentials are not configured")
    return create_client(settings.supabase_url, key)


def _result_error(result) -> Optional[object]:
    if isinstance(result, dict):
        return result.get("error")
    return getattr(result, "error", None)


def upload_receipt(
    *,
    filename: Optional[str],
    content: bytes,
    content_type: Optional[str],
    client=None,
) -> str:
    """Upload a receipt to the receipts bucket and return its object path (the artifact handle)."""
    settings = get_settings()
    client = client or get_storage_client()
    path = build_receipt_path(filename)
    options = {"content-type": content_type} if content_type else None
    try:
        result = client.storage.from_(settings.receipts_bucket).upload(path, content, options)
    except Exception as exc:
        raise StorageError("Receipt upload failed") from exc
    if _result_error(result):
        raise StorageError(f"Receipt upload failed: {_result_error(result)}")
    logger.info("Receipt uploaded path=%s bytes=%s", path, len(content))
    return path


def delete_artifact(handle: Optional[str], reason: str, *, client=None) -> bool:
    """Best-effort removal of an uploaded receipt. Never raises; returns whether it was deleted."""
    if not handle:
        return False
    settings = get_settings()
    try:
        client = client or get_storage_client()
        result = client.storage.from_(settings.receipts_bucket).remove([handle])
        if _result_error(result):
            logger.warning("Receipt delete rejected path=%s reason=%s", handle, reason)
            return False
    except Exception:
        logger.warning("Receipt delete failed path=%s reason=%s", handle, reason, exc_info=True)
        return False
    logger.info("Receipt deleted path=%s reason=%s", handle, reason)
    return True


def signed_receipt_url(handle: Optional[str], *, expires_in: int, client=None) -> Optional[str]:
    """Temporary download link for a stored receipt, or None when it cannot be signed."""
    if not handle:
        return None
    settings = get_settings()
    try:
        client = client or get_storage_client()
        result = client.storage.from_(settings.receipts_bucket).create_signed_url(handle, int(expires_in))
    except Exception:
        logger.warning("Receipt URL signing failed path=%s", handle, exc_info=True)
        return None
    if isinstance(result, dict):
        return result.get("signedURL") or result.get("signedUrl")
    return getattr(result, "signed_url", None)


class ReceiptStorage:
    """Artifact store handed to the conversation engine."""

    def upload(self, *, filename: Optional[str], content: bytes, content_type: Optional[str]) -> str:
        return upload_receipt(filename=filename, content=content, content_type=content_type)

    def delete(self, handle: Optional[str], reason: str) -> bool:
        return delete_artifact(handle, reason)

    def signed_url(self, handle: Optional[str], expires_in: int) -> Optional[str]:
        return signed_receipt_url(handle, expires_in=expires_in)
