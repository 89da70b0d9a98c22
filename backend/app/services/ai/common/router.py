"""AI Router — resolves provider + model for a scope from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

_DEFAULT_MODELS = {
    "openai": "gpt-4o-mini-2024-07-18",
    "mock": "mock-v1",
}


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model for one call."""

    provider: BaseProvider
    model: str
    max_tokens: int
    timeout_seconds: float


def resolve(scope: str) -> ResolvedConfig:
    """Resolve provider + model for *scope*.

    ``voucher_extract`` reads ``AI_VOUCHER_PROVIDER`` / ``AI_VOUCHER_MODEL`` and
    ``message_classify`` reads ``AI_CLASSIFIER_PROVIDER`` / ``AI_CLASSIFIER_MODEL``;
    any other scope gets the mock provider.
    """
    settings = get_settings()

    provider_name = "mock"
    model = ""
    if scope == "voucher_extract":
        provider_name = (settings.ai_voucher_provider or "mock").lower().strip()
        model = settings.ai_voucher_model.strip()
    elif scope == "message_classify":
        provider_name = (settings.ai_classifier_provider or "mock").lower().strip()
        model = settings.ai_classifier_model.strip()
    else:
        logger.warning("Unknown AI scope %r – using mock", scope)

    provider = get_provider(provider_name)
    if provider.name != provider_name:
        # Fell back; a model name for another provider would be meaningless.
        model = ""

    return ResolvedConfig(
        provider=provider,
        model=model or _DEFAULT_MODELS.get(provider.name, ""),
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
    )
