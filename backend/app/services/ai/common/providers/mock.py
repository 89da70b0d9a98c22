"""Mock provider — deterministic voucher extraction for tests and fallback."""

from __future__ import annotations

import json
import time

from .base import Attachment, BaseProvider, ProviderResult

MOCK_VOUCHER = {
    "monto": "",
    "fecha_pago": "",
    "referencia": "",
    "hora_transaccion": "",
}


class MockProvider(BaseProvider):
    name = "mock"

    def __init__(self, payload: dict | None = None) -> None:
        self._payload = dict(MOCK_VOUCHER if payload is None else payload)

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
        t0 = time.monotonic()
        text = json.dumps(self._payload, ensure_ascii=False)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
