from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

import httpx

from quotagate.core.config import Settings, get_settings
from quotagate.core.errors import RelayError
from quotagate.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "chat.relay"


@dataclass(frozen=True)
class RelayResult:
    status_code: int
    body: Any
    tokens_used: int


def tokens_from_body(body: Any) -> int:
    # Read OpenAI-style usage blocks when the relay passes them through.
    if not isinstance(body, dict):
        return 0
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return 0
    total = usage.get("total_tokens")
    if total is None:
        prompt = usage.get("prompt_tokens") or 0
        completion = usage.get("completion_tokens") or 0
        total = prompt + completion if isinstance(prompt, int) and isinstance(completion, int) else 0
    return max(0, int(total)) if isinstance(total, int) else 0


class ChatRelay:
    """Forward admitted chat payloads to the LLM relay.

    The request is bounded by ``relay_timeout_ms``. Timeouts, transport
    errors and 5xx responses raise ``RelayError`` so the caller can skip
    usage recording.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        # Tests inject httpx.MockTransport; production uses the default transport.
        self._transport = transport

    async def forward(self, payload: dict[str, Any]) -> RelayResult:
        settings = self._settings
        headers = {"Content-Type": "application/json"}
        if settings.shared_token:
            headers[settings.shared_token_header] = settings.shared_token
        timeout = settings.relay_timeout_ms / 1000.0

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(settings.relay_url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            self._record(start, success=False)
            logger.warning("relay_timeout url=%s", settings.relay_url)
            raise RelayError("Relay timed out") from exc
        except httpx.HTTPError as exc:
            self._record(start, success=False)
            logger.warning("relay_transport_failed url=%s", settings.relay_url, exc_info=exc)
            raise RelayError(str(exc) or "Relay request failed") from exc

        if response.status_code >= 500:
            self._record(start, success=False)
            raise RelayError(
                f"Relay responded with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body: Any = response.json()
        except ValueError:
            body = {"ok": 200 <= response.status_code < 300, "raw": response.text}

        success = response.status_code < 400
        self._record(start, success=success)
        return RelayResult(
            status_code=response.status_code,
            body=body,
            tokens_used=tokens_from_body(body) if success else 0,
        )

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
