from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from remindrelay.core.config import get_settings
from remindrelay.core.errors import (
    DeliveryError,
    FormatRejectedError,
    GatewayConfigError,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from remindrelay.services.addressing import address_variants
from remindrelay.services.backoff import BackoffConfig, execute_with_backoff
from remindrelay.services.telemetry import increment_counter, record_gateway_call


logger = logging.getLogger(__name__)

ERROR_TRANSIENT = "transient"
ERROR_FORMAT_REJECTED = "format_rejected"
ERROR_TERMINAL = "terminal"
ERROR_INVALID_ADDRESS = "invalid_address"

_DIAGNOSTIC_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    send_path: str
    api_key: str
    instance: str
    timeout_ms: int = 15000
    country_code: str = "55"

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.instance)

    @property
    def endpoint(self) -> str:
        base = self.base_url.strip().rstrip("/")
        path = self.send_path.strip("/")
        return f"{base}/{path}/{self.instance}" if path else f"{base}/{self.instance}"


def default_gateway_config() -> GatewayConfig:
    settings = get_settings()
    return GatewayConfig(
        base_url=settings.gateway_base_url,
        send_path=settings.gateway_send_path,
        api_key=settings.gateway_api_key,
        instance=settings.gateway_instance,
        timeout_ms=settings.gateway_timeout_ms,
        country_code=settings.gateway_country_code,
    )


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    error_kind: str | None = None
    variant: str | None = None
    status_code: int | None = None
    message_id: str | None = None
    attempts: int = 0

    @property
    def transient(self) -> bool:
        return not self.success and self.error_kind == ERROR_TRANSIENT

    def raise_for_failure(self) -> None:
        # Translate a failed result into the delivery error taxonomy for retry helpers.
        if self.success:
            return
        message = self.error or "delivery failed"
        if self.error_kind == ERROR_TRANSIENT:
            raise TransientDeliveryError(message, status_code=self.status_code)
        if self.error_kind == ERROR_FORMAT_REJECTED:
            raise FormatRejectedError(message, status_code=self.status_code)
        raise TerminalDeliveryError(message, status_code=self.status_code)


def _mask(address: str) -> str:
    # Keep recipient numbers out of logs beyond a short prefix.
    return f"{address[:6]}***" if address else ""


def _ack_id(payload: Any) -> str | None:
    # Recognize gateway acknowledgments: a message key/id, or a PENDING status.
    if not isinstance(payload, dict):
        return None
    key = payload.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    if key:
        return str(key)
    for field_name in ("messageId", "message_id", "id"):
        value = payload.get(field_name)
        if value:
            return str(value)
    if str(payload.get("status") or "").upper() == "PENDING":
        return "pending"
    return None


class GatewayClient:
    """Async client for the messaging gateway send endpoint.

    Each send walks the ordered address variants. A 5xx answer, a timeout or a
    network error moves on to the next variant, as does a 400 (that format was
    rejected). Any other 4xx stops the walk. The first recognized
    acknowledgment wins; when every variant fails the last diagnostic is kept.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or default_gateway_config()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(max(0.2, self._config.timeout_ms / 1000.0)),
            transport=transport,
        )

    @property
    def config(self) -> GatewayConfig:
        return self._config

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, address: str, body: str, *, owner_id: str = "") -> DeliveryResult:
        if not self._config.configured:
            raise GatewayConfigError("Messaging gateway base_url and instance must be configured")
        variants = address_variants(address, country_code=self._config.country_code)
        if not variants:
            increment_counter("gateway_invalid_address_total")
            return DeliveryResult(
                success=False,
                error="Recipient address has no usable digits",
                error_kind=ERROR_INVALID_ADDRESS,
            )

        headers = {"Content-Type": "application/json", "apikey": self._config.api_key}
        last_error: str | None = None
        last_status: int | None = None
        gateway_answered = False
        attempts = 0
        for variant in variants:
            attempts += 1
            started = time.monotonic()
            try:
                response = await self._client.post(
                    self._config.endpoint,
                    json={"to": variant, "body": body},
                    headers=headers,
                )
            except httpx.TransportError as exc:
                record_gateway_call(
                    owner_id=owner_id,
                    latency_ms=(time.monotonic() - started) * 1000.0,
                    success=False,
                )
                last_error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
                last_status = None
                logger.info("gateway_variant_network_error variant=%s error=%s", _mask(variant), last_error)
                continue

            latency_ms = (time.monotonic() - started) * 1000.0
            status_code = response.status_code
            if 200 <= status_code < 300:
                try:
                    payload = response.json()
                except ValueError:
                    # A 2xx with a non-JSON body is still an accepted send.
                    record_gateway_call(owner_id=owner_id, latency_ms=latency_ms, success=True)
                    logger.info("gateway_send_accepted_non_json variant=%s", _mask(variant))
                    return DeliveryResult(
                        success=True,
                        variant=variant,
                        status_code=status_code,
                        attempts=attempts,
                    )
                message_id = _ack_id(payload)
                if message_id is not None:
                    record_gateway_call(owner_id=owner_id, latency_ms=latency_ms, success=True)
                    logger.info("gateway_send_accepted variant=%s", _mask(variant))
                    return DeliveryResult(
                        success=True,
                        variant=variant,
                        status_code=status_code,
                        message_id=message_id,
                        attempts=attempts,
                    )
                record_gateway_call(owner_id=owner_id, latency_ms=latency_ms, success=False)
                return DeliveryResult(
                    success=False,
                    error=f"HTTP {status_code}: response carried no acknowledgment",
                    error_kind=ERROR_TERMINAL,
                    variant=variant,
                    status_code=status_code,
                    attempts=attempts,
                )

            record_gateway_call(owner_id=owner_id, latency_ms=latency_ms, success=status_code < 500)
            detail = response.text[:_DIAGNOSTIC_PREVIEW_CHARS]
            last_error = f"HTTP {status_code}: {detail}" if detail else f"HTTP {status_code}"
            last_status = status_code
            if status_code >= 500:
                logger.info("gateway_variant_server_error variant=%s status=%s", _mask(variant), status_code)
                continue
            gateway_answered = True
            if status_code == 400:
                logger.info("gateway_variant_rejected variant=%s", _mask(variant))
                continue
            logger.warning("gateway_send_refused status=%s variant=%s", status_code, _mask(variant))
            return DeliveryResult(
                success=False,
                error=last_error,
                error_kind=ERROR_TERMINAL,
                variant=variant,
                status_code=status_code,
                attempts=attempts,
            )

        increment_counter("gateway_variants_exhausted_total")
        logger.warning("gateway_variants_exhausted count=%s last_error=%s", len(variants), last_error)
        return DeliveryResult(
            success=False,
            error=last_error or "All address variants failed",
            error_kind=ERROR_FORMAT_REJECTED if gateway_answered else ERROR_TRANSIENT,
            status_code=last_status,
            attempts=attempts,
        )


async def send_with_backoff(
    client: GatewayClient,
    address: str,
    body: str,
    *,
    owner_id: str = "",
    config: BackoffConfig | None = None,
    on_retry: Callable[[int, int], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> DeliveryResult:
    # Retry only transient outcomes; a rejected format or a refusal returns at once.
    attempts: list[DeliveryResult] = []

    async def _attempt() -> DeliveryResult:
        result = await client.send(address, body, owner_id=owner_id)
        attempts.append(result)
        result.raise_for_failure()
        return result

    try:
        return await execute_with_backoff(
            _attempt,
            config,
            on_retry,
            retryable=lambda exc: isinstance(exc, TransientDeliveryError),
            sleep=sleep,
        )
    except DeliveryError:
        return attempts[-1]
