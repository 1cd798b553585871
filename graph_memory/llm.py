"""OpenRouter chat client.

Used for two things only: rewriting category summaries and judging whether
Tier 1 already answers a query. Requests go through
:func:`graph_memory.openrouter.post_json`, like the embeddings client. Every
failure surfaces as :class:`LLMError` so callers can fall back.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional

from .config import Config, load_config
from .errors import DependencyUnavailable
from .openrouter import post_json

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class LLMError(DependencyUnavailable):
    """Raised when the chat model is unreachable or returns garbage."""


class OpenRouterChat:
    """Blocking chat-completion calls with an async wrapper."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: int = 2,
        timeout: float = 20.0,
        config: Optional[Config] = None,
    ) -> None:
        cfg = config or load_config()
        self.api_key: str = api_key if api_key is not None else cfg.openrouter_api_key
        self.model: str = model or cfg.chat_model
        self.url = f"{(base_url or cfg.openrouter_base_url).rstrip('/')}/chat/completions"
        self.max_retries = max_retries
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _call_api(self, messages: List[Dict[str, str]], max_tokens: int, temperature: float) -> str:
        body = post_json(
            self.url,
            self.api_key,
            {
                "model": self.model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            timeout=self.timeout,
            max_retries=self.max_retries,
            error_cls=LLMError,
            label="chat model",
        )
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError(f"unexpected chat response: {exc}") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def complete_sync(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 400,
        temperature: float = 0.3,
    ) -> str:
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return self._call_api(messages, max_tokens, temperature).strip()

    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 400,
        temperature: float = 0.3,
    ) -> str:
        return await asyncio.to_thread(self.complete_sync, prompt, system, max_tokens, temperature)

    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        text = await self.complete(prompt, system=system, max_tokens=200, temperature=0.0)
        return parse_json_reply(text)


def parse_json_reply(text: str) -> Dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating code fences."""
    cleaned = _FENCE_RE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise LLMError(f"no JSON object in reply: {text[:120]!r}")
    try:
        data = json.loads(cleaned[start:end + 1])
    except ValueError as exc:
        raise LLMError(f"invalid JSON in reply: {exc}") from exc
    if not isinstance(data, dict):
        raise LLMError("JSON reply is not an object")
    return data
