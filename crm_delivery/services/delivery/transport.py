from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from crm_delivery.config import settings
from crm_delivery.services.delivery.types import DeliveryErrorKind
from crm_delivery.utils.logger import courier_logger, mask_headers


class CourierRequestError(Exception):
    """Raised by the transport layer; adapters turn it into a failed result."""

    def __init__(
        self,
        kind: DeliveryErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.body = body


@dataclass
class CourierHttpResult:
    request_url: str
    request_headers_masked: Dict[str, Any]
    response_status: int
    response_body: str
    duration_ms: int


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        settings.DELIVERY_HTTP_TIMEOUT_SECONDS,
        connect=settings.DELIVERY_HTTP_CONNECT_TIMEOUT_SECONDS,
    )


async def courier_post(
    *,
    adapter: str,
    action: str,
    url: str,
    body: str,
    headers: Dict[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout_seconds: Optional[float] = None,
) -> CourierHttpResult:
    """POST ``body`` to a courier and return the raw response.

    Every exchange, successful or not, lands in the courier exchange log.
    Timeouts, connection failures and non-2xx answers raise
    :class:`CourierRequestError` with the matching error kind. The whole call
    is bounded by ``timeout_seconds`` even if the courier trickles bytes.
    """

    hard_timeout = timeout_seconds if timeout_seconds is not None else settings.DELIVERY_HTTP_TIMEOUT_SECONDS
    request_data = {"url": url, "headers": headers, "body": body}

    start = time.time()
    try:
        async with httpx.AsyncClient(timeout=default_timeout(), transport=transport) as client:
            resp = await asyncio.wait_for(
                client.post(url, headers=headers, content=body.encode("utf-8")),
                timeout=hard_timeout,
            )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        duration_ms = int((time.time() - start) * 1000)
        message = f"Request timed out after {hard_timeout:g}s"
        courier_logger.log_exchange(adapter, action, request_data, duration_ms=duration_ms, error=message)
        raise CourierRequestError(DeliveryErrorKind.TIMEOUT, message)
    except httpx.RequestError as exc:
        duration_ms = int((time.time() - start) * 1000)
        message = f"Network error: {type(exc).__name__}: {exc}"
        courier_logger.log_exchange(adapter, action, request_data, duration_ms=duration_ms, error=message)
        raise CourierRequestError(DeliveryErrorKind.NETWORK, message)

    duration_ms = int((time.time() - start) * 1000)
    body_text = resp.text or ""

    if resp.status_code < 200 or resp.status_code >= 300:
        message = f"HTTP {resp.status_code}"
        courier_logger.log_exchange(
            adapter,
            action,
            request_data,
            response_status=resp.status_code,
            response_body=body_text,
            duration_ms=duration_ms,
            error=message,
        )
        raise CourierRequestError(
            DeliveryErrorKind.HTTP,
            message,
            status_code=resp.status_code,
            body=body_text,
        )

    courier_logger.log_exchange(
        adapter,
        action,
        request_data,
        response_status=resp.status_code,
        response_body=body_text,
        duration_ms=duration_ms,
    )

    return CourierHttpResult(
        request_url=url,
        request_headers_masked=mask_headers(headers),
        response_status=resp.status_code,
        response_body=body_text,
        duration_ms=duration_ms,
    )
