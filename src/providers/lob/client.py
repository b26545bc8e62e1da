from __future__ import annotations

import random
import time
from typing import Any

import httpx


LOB_API_BASE = "https://api.lob.com"
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
# Writes are only retried when Lob cannot have acted on the request.
_WRITE_RETRYABLE_STATUS_CODES = {429}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

_EP_POSTCARDS = "/v1/postcards"
_EP_LETTERS = "/v1/letters"


class LobProviderError(Exception):
    """Provider-level exception for Lob integration failures."""

    def __init__(self, message: str, *, ambiguous: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.ambiguous = ambiguous
        self.status_code = status_code

    @property
    def category(self) -> str:
        if self.ambiguous:
            return "ambiguous"
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if (
            "invalid lob api key" in message
            or "endpoint not found" in message
            or "missing lob api key" in message
            or "cannot send both header and query idempotency keys" in message
            or "unexpected lob" in message
            or "http 4" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _build_base_url(base_url: str | None) -> str:
    return (base_url or LOB_API_BASE).rstrip("/")


def _build_basic_auth(api_key: str) -> tuple[str, str]:
    return (api_key, "")


def _backoff(attempt: int) -> None:
    delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
    delay += random.uniform(0, delay * 0.2)
    time.sleep(delay)


def _request_with_retry(
    *,
    method: str,
    url: str,
    auth: tuple[str, str],
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
) -> httpx.Response:
    is_write = method.upper() != "GET"
    retry_statuses = _WRITE_RETRYABLE_STATUS_CODES if is_write else _RETRYABLE_STATUS_CODES
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    auth=auth,
                    headers=headers,
                    params=params,
                    json=json_payload,
                )
        except (httpx.ConnectError, httpx.ConnectTimeout):
            # never reached Lob, safe to retry for any method
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            _backoff(attempt)
            continue
        except httpx.HTTPError:
            if is_write or attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            _backoff(attempt)
            continue

        if response.status_code in retry_statuses and attempt < _MAX_RETRY_ATTEMPTS:
            _backoff(attempt)
            continue
        return response

    assert response is not None
    return response


def build_idempotency_material(
    *,
    header_key: str | None = None,
    query_key: str | None = None,
) -> tuple[dict[str, str], dict[str, str]]:
    if header_key and query_key:
        raise LobProviderError("Cannot send both header and query idempotency keys")

    headers: dict[str, str] = {}
    query: dict[str, str] = {}
    if header_key:
        headers["Idempotency-Key"] = header_key
    if query_key:
        query["idempotency_key"] = query_key
    return headers, query


def _request_json(
    *,
    method: str,
    path: str,
    api_key: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> Any:
    if not api_key:
        raise LobProviderError("Missing Lob API key")

    normalized_key = idempotency_key.strip() if isinstance(idempotency_key, str) else idempotency_key
    if normalized_key == "":
        raise LobProviderError("Idempotency key must be non-empty when provided")

    idempotency_headers, _ = build_idempotency_material(header_key=normalized_key)
    request_headers = {"Accept": "application/json", "Content-Type": "application/json"}
    request_headers.update(idempotency_headers)

    url = f"{_build_base_url(base_url)}{path}"
    is_write = method.upper() != "GET"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            auth=_build_basic_auth(api_key),
            headers=request_headers,
            timeout_seconds=timeout_seconds,
            params=params or None,
            json_payload=json_payload,
        )
    except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
        raise LobProviderError(f"Lob connectivity error: {exc}") from exc
    except httpx.HTTPError as exc:
        raise LobProviderError(f"Lob connectivity error: {exc}", ambiguous=is_write) from exc

    if response.status_code in {401, 403}:
        raise LobProviderError("Invalid Lob API key", status_code=response.status_code)
    if response.status_code == 404:
        raise LobProviderError(f"Lob endpoint not found: {path}", status_code=404)
    if response.status_code >= 400:
        raise LobProviderError(
            f"Lob API returned HTTP {response.status_code}: {response.text[:200]}",
            ambiguous=is_write and response.status_code >= 500,
            status_code=response.status_code,
        )

    try:
        return response.json()
    except ValueError as exc:
        raise LobProviderError("Lob returned non-JSON response", ambiguous=is_write) from exc


def _expect_dict(data: Any, description: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise LobProviderError(f"Unexpected Lob {description} response type")
    return data


def create_postcard(
    api_key: str,
    payload: dict[str, Any],
    *,
    idempotency_key: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        path=_EP_POSTCARDS,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
        idempotency_key=idempotency_key,
    )
    return _expect_dict(data, "create postcard")


def list_postcards(
    api_key: str,
    *,
    params: dict[str, Any] | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        path=_EP_POSTCARDS,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        params=params,
    )
    return _expect_dict(data, "list postcards")


def get_postcard(
    api_key: str,
    postcard_id: str,
    *,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        path=f"{_EP_POSTCARDS}/{postcard_id}",
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
    )
    return _expect_dict(data, "get postcard")


def create_letter(
    api_key: str,
    payload: dict[str, Any],
    *,
    idempotency_key: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        path=_EP_LETTERS,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
        idempotency_key=idempotency_key,
    )
    return _expect_dict(data, "create letter")


def list_letters(
    api_key: str,
    *,
    params: dict[str, Any] | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        path=_EP_LETTERS,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        params=params,
    )
    return _expect_dict(data, "list letters")


def get_letter(
    api_key: str,
    letter_id: str,
    *,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        path=f"{_EP_LETTERS}/{letter_id}",
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
    )
    return _expect_dict(data, "get letter")


LOB_IMPLEMENTED_ENDPOINT_REGISTRY: dict[str, list[dict[str, str]]] = {
    "create_postcard": [{"method": "POST", "path": _EP_POSTCARDS}],
    "list_postcards": [{"method": "GET", "path": _EP_POSTCARDS}],
    "get_postcard": [{"method": "GET", "path": "/v1/postcards/{psc_id}"}],
    "create_letter": [{"method": "POST", "path": _EP_LETTERS}],
    "list_letters": [{"method": "GET", "path": _EP_LETTERS}],
    "get_letter": [{"method": "GET", "path": "/v1/letters/{ltr_id}"}],
}
