from __future__ import annotations

"""Lightweight async HTTP client util.

Focus: GET JSON with a single attempt. Retry/backoff and the overall timeout
budget live in ProviderRuntime so every source gets the same discipline.
"""
from typing import Any, Dict, Optional

import httpx


class HttpError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


async def get_json(
    url: str,
    *,
    timeout: float = 10.0,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """GET ``url`` and decode a JSON object body.

    Raises HttpError for transport failures, non-2xx responses and bodies that
    are not a JSON object. When ``client`` is given it is reused (and not closed).
    """
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout)
    try:
        resp = await http.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        raise HttpError(f"Failed to fetch {_redact(url)}: {type(e).__name__}: {e}") from e
    finally:
        if owns_client:
            await http.aclose()

    if resp.status_code >= 400:
        raise HttpError(
            f"HTTP {resp.status_code} for {_redact(url)}", status_code=resp.status_code
        )
    try:
        data = resp.json()
    except ValueError as e:  # JSON decode
        raise HttpError(f"Invalid JSON from {_redact(url)}: {e}") from e
    if not isinstance(data, dict):
        raise HttpError(f"Unexpected JSON payload type {type(data).__name__} from {_redact(url)}")
    return data


def _redact(url: str) -> str:
    # Paid-tier URLs embed the API key as a path segment.
    parts = url.split("/")
    return "/".join("***" if len(p) >= 20 and p.isalnum() else p for p in parts)
