"""Shared HTTP plumbing for the OpenRouter clients.

Both the embeddings and the chat client talk to OpenAI-compatible endpoints
with raw ``requests``. Transient statuses (429, 5xx) and connection errors
are retried with exponential back-off; anything else fails immediately with
the caller's error class.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Type

import requests

from .errors import DependencyUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def auth_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def post_json(
    url: str,
    api_key: str,
    payload: Dict[str, Any],
    *,
    timeout: float,
    max_retries: int,
    error_cls: Type[DependencyUnavailable] = DependencyUnavailable,
    label: str = "OpenRouter",
) -> Dict[str, Any]:
    """POST *payload* and return the decoded JSON body of a 200 response."""
    if not api_key:
        raise error_cls(f"{label} not configured (OPENROUTER_API_KEY missing)")

    last_error: Optional[Exception] = None
    for attempt in range(max(1, max_retries)):
        wait = 2 ** attempt
        try:
            resp = requests.post(url, headers=auth_headers(api_key), json=payload, timeout=timeout)
        except requests.RequestException as exc:
            logger.warning(
                "%s request error (attempt %d/%d): %s, retrying in %ds",
                label, attempt + 1, max_retries, exc, wait,
            )
            last_error = exc
            time.sleep(wait)
            continue

        if resp.status_code == 200:
            try:
                return resp.json()
            except ValueError as exc:
                raise error_cls(f"{label} returned invalid JSON: {exc}") from exc
        if resp.status_code in RETRYABLE_STATUS:
            logger.warning(
                "%s HTTP %s (attempt %d/%d), retrying in %ds",
                label, resp.status_code, attempt + 1, max_retries, wait,
            )
            last_error = error_cls(f"HTTP {resp.status_code}: {resp.text[:200]}")
            time.sleep(wait)
            continue
        raise error_cls(f"HTTP {resp.status_code}: {resp.text[:500]}")

    raise error_cls(f"{label} failed after {max_retries} attempts: {last_error}")
