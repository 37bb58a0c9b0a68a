"""Model transport: direct httpx calls to the Anthropic Messages API.

Sends one turn (cached context blocks + tool schema + history) and parses
the ordered response blocks, preserving thinking blocks and their
signatures verbatim. Retries are driven by an injected RetryPolicy.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from techne.config import Settings
from techne.context.schemas import CacheBlock
from techne.engine.retry import RetryPolicy
from techne.engine.schemas import AssistantTurn, ConversationTurn, Usage

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 529})

# Provider limit on cache_control breakpoints per request
MAX_CACHE_BREAKPOINTS = 4

# Extended cache TTL beta
_CACHE_TTL_BETA = "extended-cache-ttl-2025-04-11"


class TransportError(RuntimeError):
    """A model call failed. retryable=True means the request may succeed later."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after


class ModelTransport(Protocol):
    async def send_turn(
        self,
        context_blocks: list[CacheBlock],
        tool_schema: list[dict[str, Any]],
        history: list[ConversationTurn],
    ) -> AssistantTurn: ...


def cache_control_for(ttl: int | None) -> dict[str, str] | None:
    """Map a tier lifetime to the provider's cache_control (5m or 1h)."""
    if ttl is None:
        return None
    if ttl >= 3600:
        return {"type": "ephemeral", "ttl": "1h"}
    return {"type": "ephemeral", "ttl": "5m"}


class AnthropicTransport:
    """Anthropic Messages API client with prompt caching and extended thinking."""

    def __init__(
        self,
        settings: Settings,
        retry: RetryPolicy | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._retry = retry or RetryPolicy.from_settings(settings)
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "anthropic-beta": _CACHE_TTL_BETA,
            "content-type": "application/json",
        }

        # Auth token (Bearer) takes precedence over the API key (x-api-key)
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info(
            "Model transport initialized (auth: %s)", "Bearer token" if auth_token else "API key"
        )

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def build_payload(
        self,
        context_blocks: list[CacheBlock],
        tool_schema: list[dict[str, Any]],
        history: list[ConversationTurn],
    ) -> dict[str, Any]:
        """Build the Messages API request.

        Cacheable context blocks carry cache_control breakpoints in tier
        order; the last history message gets the final breakpoint so the
        conversation prefix is reused on the next iteration.
        """
        settings = self._settings
        breakpoints = MAX_CACHE_BREAKPOINTS - (1 if history else 0)

        system: list[dict[str, Any]] = []
        for block in context_blocks:
            entry: dict[str, Any] = {"type": "text", "text": block.text}
            control = cache_control_for(block.cache_ttl)
            if control and breakpoints > 0:
                entry["cache_control"] = control
                breakpoints -= 1
            system.append(entry)

        messages = [t.to_api() for t in history]
        if messages and messages[-1]["content"]:
            last_content = [dict(b) for b in messages[-1]["content"]]
            last_content[-1]["cache_control"] = {"type": "ephemeral"}
            messages[-1] = {"role": messages[-1]["role"], "content": last_content}

        payload: dict[str, Any] = {
            "model": settings.model,
            "max_tokens": settings.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tool_schema:
            payload["tools"] = tool_schema

        if settings.thinking_mode == "manual":
            payload["thinking"] = {"type": "enabled", "budget_tokens": settings.thinking_budget}
        elif settings.thinking_mode == "adaptive":
            payload["thinking"] = {"type": "adaptive"}
        else:
            # Temperature is fixed at 1 while thinking is on
            payload["temperature"] = settings.temperature
        return payload

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def send_turn(
        self,
        context_blocks: list[CacheBlock],
        tool_schema: list[dict[str, Any]],
        history: list[ConversationTurn],
    ) -> AssistantTurn:
        """Send one turn, retrying transient failures.

        Raises TransportError once retries are exhausted or on a
        non-retryable failure.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.build_payload(context_blocks, tool_schema, history)
        return await self._retry.run(
            lambda: self._post(payload),
            retry_on=lambda exc: isinstance(exc, TransportError) and exc.retryable,
            retry_after=lambda exc: getattr(exc, "retry_after", None),
            label="Anthropic API call",
        )

    async def _post(self, payload: dict[str, Any]) -> AssistantTurn:
        assert self._http is not None
        try:
            response = await self._http.post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise TransportError(f"API request timed out: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e}", retryable=True) from e

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as e:
                # Proxies and gateways sometimes answer 200 with an HTML page
                raise TransportError(
                    f"Malformed API response body: {response.text[:200]!r}",
                    retryable=True,
                    status_code=200,
                ) from e
            return self.parse_response(data)

        try:
            error_data = response.json()
            error_type = error_data.get("error", {}).get("type", "unknown")
            error_msg = error_data.get("error", {}).get("message", "unknown error")
        except ValueError:
            error_type = "http_error"
            error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

        retry_after = None
        if "retry-after" in response.headers:
            try:
                retry_after = float(response.headers["retry-after"])
            except ValueError:
                retry_after = None

        raise TransportError(
            f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
            retryable=response.status_code in RETRYABLE_STATUS,
            status_code=response.status_code,
            retry_after=retry_after,
        )

    @staticmethod
    def parse_response(data: dict[str, Any]) -> AssistantTurn:
        """Parse a Messages API response body into an AssistantTurn.

        Unknown block types (e.g. server tool blocks) are skipped.
        """
        if not isinstance(data, dict):
            raise TransportError(
                f"Malformed API response: expected an object, got {type(data).__name__}"
            )
        known = {"text", "thinking", "redacted_thinking", "tool_use"}
        blocks = [b for b in data.get("content", []) if b.get("type") in known]
        usage = data.get("usage") or {}
        try:
            return AssistantTurn(
                blocks=blocks,
                stop_reason=data.get("stop_reason"),
                usage=Usage(
                    input_tokens=usage.get("input_tokens") or 0,
                    output_tokens=usage.get("output_tokens") or 0,
                    cache_creation_input_tokens=usage.get("cache_creation_input_tokens") or 0,
                    cache_read_input_tokens=usage.get("cache_read_input_tokens") or 0,
                ),
            )
        except ValidationError as e:
            raise TransportError(f"Malformed API response: {e}") from e
