"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class Attachment:
    """A receipt image or PDF sent alongside the prompt."""

    content: bytes
    mime_type: str
    filename: str = ""

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        attachments: list[Attachment] | None = None,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.0,
        max_tokens: int = 512,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        """Send *prompt* (plus optional files) and return a ``ProviderResult``."""
