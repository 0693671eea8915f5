"""Async client for the code-authoring oracle.

OpenAI-compatible chat-completions API. The oracle is an untrusted, fallible
black box: this client only moves text over the wire. Interpreting the
response (fences, emptiness, validity) is the Synthesizer's job.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from kiln.config import KilnSettings

logger = structlog.get_logger().bind(component="oracle")


class OracleClient:
    """Async HTTP client for an OpenAI-compatible completion endpoint."""

    def __init__(
        self,
        settings: KilnSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = settings.oracle_url.rstrip("/")
        self.model = settings.oracle_model
        self.max_tokens = settings.oracle_max_tokens
        self.timeout = settings.oracle_timeout
        self._api_key = settings.oracle_api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ---- Inference ----

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Send a chat completion request.

        Args:
            messages: OpenAI-format messages [{"role": "user", "content": "..."}]
            temperature: Sampling temperature
            max_tokens: Max tokens to generate (defaults to settings)

        Returns:
            Full API response dict

        Raises:
            httpx.HTTPError: transport failure or non-2xx status
        """
        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }

        response = await client.post("/v1/chat/completions", json=payload)
        response.raise_for_status()
        result = response.json()

        message = (result.get("choices") or [{}])[0].get("message") or {}
        if reasoning := message.get("reasoning_content"):
            logger.debug("model_reasoning_content", trace=reasoning[:400], model=self.model)

        logger.debug(
            "chat_completion",
            model=self.model,
            messages_count=len(messages),
            usage=result.get("usage"),
        )
        return result

    async def chat_simple(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> str:
        """Convenience: send a simple prompt, get back just the text.

        Returns an empty string when the response carries no content.
        """
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        result = await self.chat(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        choices = result.get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content")) or ""

    # ---- Health ----

    async def health(self) -> dict[str, Any]:
        """Check server health."""
        client = await self._get_client()
        try:
            response = await client.get("/health")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            return {"status": "error", "error": str(e)}
