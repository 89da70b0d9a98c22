"""OpenAI provider (chat completions with inline image/PDF parts)."""

from __future__ import annotations

import base64
import logging
import time
from typing import Any

from .base import Attachment, BaseProvider, ProviderResult

logger = logging.getLogger(__name__)


def _attachment_part(attachment: Attachment) -> dict[str, Any]:
    encoded = base64.b64encode(attachment.content).decode("ascii")
    if attachment.is_pdf:
        return {
            "type": "file",
            "file": {
                "filename": attachment.filename or "comprobante.pdf",
                "file_data": f"data:application/pdf;base64,{encoded}",
            },
        }
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"},
    }


class OpenAIProvider(BaseProvider):
    name = "openai"

    def __init__(self, api_key: str, *, base_url: str = "https://api.openai.com/v1") -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

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
        import httpx

        model = model or "gpt-4o-mini-2024-07-18"
        t0 = time.monotonic()

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if attachments:
            content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
            content.extend(_attachment_part(a) for a in attachments)
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{self._base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "response_format": {"type": "json_object"},
                    "messages": messages,
                },
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        choice = data["choices"][0]
        text = choice["message"]["content"]
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
