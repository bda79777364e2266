from __future__ import annotations

from typing import Any

import httpx

DEFAULT_HTTP_TIMEOUT_SECONDS = 60.0


class ServiceUnavailableError(RuntimeError):
    """Raised when a hypervisor or storage endpoint cannot serve a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def build_async_client(
    *,
    verify_tls: bool = False,
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    auth: httpx.Auth | tuple[str, str] | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        verify=verify_tls,
        timeout=httpx.Timeout(timeout_seconds),
        auth=auth,
        headers={"Accept": "application/json"},
    )


def response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as error:
        raise ServiceUnavailableError(
            f"{response.request.method} {response.request.url} returned a non-JSON body",
            status_code=response.status_code,
        ) from error
    return payload if isinstance(payload, dict) else {}


def raise_for_unavailable(response: httpx.Response) -> None:
    if response.is_success:
        return
    reason = response.text.strip()[:300] or response.reason_phrase
    raise ServiceUnavailableError(
        f"{response.request.method} {response.request.url.path} failed with "
        f"HTTP {response.status_code}: {reason}",
        status_code=response.status_code,
    )


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
