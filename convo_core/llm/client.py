"""HTTP transport for the chat-completions endpoint."""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from convo_core.config import Settings
from convo_core.errors import (
    APIError,
    BackgroundTaskError,
    BackgroundTaskTimeoutError,
    ConvoError,
    EmptyResponseError,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
    StreamError,
    VersionError,
)
from convo_core.llm.base import (
    CompletionResult,
    EffortLevel,
    ToolCallRequest,
    Turn,
    Usage,
)
from convo_core.llm.streaming import ContentCallback, StreamAssembler
from convo_core.ratelimit.limiter import RateLimiter, Reservation, estimate_tokens


logger = structlog.get_logger(__name__)

QUOTA_ERROR_CODES = {"insufficient_quota", "quota_exceeded"}
PENDING_STATUSES = {"notstarted", "not_started", "queued", "running", "in_progress"}
FAILED_STATUSES = {"failed", "cancelled", "canceled"}

Message = Union[Turn, Dict[str, Any]]


def parse_retry_after(headers: httpx.Headers) -> Optional[float]:
    """Read a retry-after hint in seconds, if the response carries one."""
    value = headers.get("retry-after-ms")
    if value:
        try:
            return max(float(value) / 1000.0, 0.0)
        except ValueError:
            pass

    value = headers.get("retry-after")
    if value:
        try:
            return max(float(value), 0.0)
        except ValueError:
            return None
    return None


def _header_int(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if not value:
        return None
    try:
        parsed = int(float(value))
    except ValueError:
        return None
    return parsed if parsed > 0 else None


class CompletionClient:
    """
    Chat-completions client bound to the shared rate budget.

    Every request reserves capacity with the rate limiter first and
    reconciles the reservation with the usage the endpoint reports.

    Usage:
        async with CompletionClient(settings, limiter) as client:
            result = await client.complete([Turn.user("Hello")])
    """

    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._http_client: Optional[httpx.AsyncClient] = None
        self.logger = logger.bind(deployment=settings.deployment)

    async def __aenter__(self):
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        self.settings.require_credentials()
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
                headers={
                    "api-key": self.settings.api_key,
                    "Content-Type": "application/json",
                    "User-Agent": "convo-core/2.0.0",
                },
            )
        return self._http_client

    async def close(self) -> None:
        """Close the client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # =========================================================================
    # Requests
    # =========================================================================

    def build_payload(
        self,
        messages: Sequence[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        stream: bool = False,
        model_hint: Optional[str] = None,
        effort_hint: Optional[Union[EffortLevel, str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": [m.to_wire() if isinstance(m, Turn) else m for m in messages],
            "max_completion_tokens": self.settings.max_output_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if effort_hint:
            payload["reasoning_effort"] = EffortLevel(effort_hint).value
        if model_hint:
            payload["model"] = model_hint
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _reserve(self, payload: Dict[str, Any]) -> Reservation:
        estimated = (
            estimate_tokens(json.dumps(payload["messages"], default=str))
            + self.settings.max_output_tokens
        )
        return await self.rate_limiter.wait_for_capacity(estimated)

    async def complete(
        self,
        messages: Sequence[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        model_hint: Optional[str] = None,
        effort_hint: Optional[Union[EffortLevel, str]] = None,
    ) -> CompletionResult:
        """
        Send one non-streaming completion request.

        Raises:
            ConvoError: Classified transport, HTTP or content failure
        """
        client = await self._ensure_client()
        payload = self.build_payload(
            messages, tools, model_hint=model_hint, effort_hint=effort_hint
        )
        reservation = await self._reserve(payload)

        start = time.perf_counter()
        try:
            response = await client.post(self.settings.completions_url, json=payload)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}") from e

        self._apply_rate_limit_headers(response.headers)

        if response.status_code == 202:
            body = await self.poll_background_task(self._operation_location(response))
        else:
            self._raise_for_status(response)
            body = self._json(response)

        result = self.parse_completion(body)
        self._record_usage(result.usage, reservation)

        self.logger.info(
            "completion_received",
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            tool_calls=len(result.tool_calls),
            finish_reason=result.finish_reason,
            total_tokens=result.usage.total_tokens if result.usage else None,
        )

        if not result.content and not result.tool_calls:
            raise EmptyResponseError()
        return result

    async def stream(
        self,
        messages: Sequence[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        on_content: Optional[ContentCallback] = None,
        model_hint: Optional[str] = None,
        effort_hint: Optional[Union[EffortLevel, str]] = None,
    ) -> CompletionResult:
        """
        Send one streaming completion request and assemble the reply.

        Content is forwarded to ``on_content`` as it arrives. A failure
        after content has been forwarded is never retryable.
        """
        client = await self._ensure_client()
        payload = self.build_payload(
            messages,
            tools,
            stream=True,
            model_hint=model_hint,
            effort_hint=effort_hint,
        )
        reservation = await self._reserve(payload)

        assembler = StreamAssembler(on_content=on_content)
        try:
            async with client.stream(
                "POST", self.settings.completions_url, json=payload
            ) as response:
                self._apply_rate_limit_headers(response.headers)
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response)
                result = await assembler.consume(response.aiter_bytes())
        except ConvoError:
            raise
        except httpx.TransportError as e:
            if assembler.content_delivered:
                raise StreamError(f"Stream interrupted: {e}", retryable=False) from e
            raise NetworkError(f"Network error: {e}") from e
        except Exception as e:
            raise StreamError(
                f"Stream failed: {e}",
                retryable=not assembler.content_delivered,
            ) from e

        if assembler.skipped_lines:
            self.logger.warning("stream_lines_skipped", count=assembler.skipped_lines)

        self._record_usage(result.usage, reservation)

        if not result.content and not result.tool_calls:
            raise EmptyResponseError("Empty streamed response from model")
        return result

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _operation_location(self, response: httpx.Response) -> str:
        location = response.headers.get("operation-location")
        if not location:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if isinstance(body, dict):
                location = body.get("operation_location") or body.get("location")
        if not location:
            raise APIError(
                "Background task accepted without an operation location",
                status_code=202,
                retryable=False,
            )
        return location

    async def poll_background_task(
        self,
        operation_url: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Poll a background completion until it reaches a terminal status.

        The poll interval starts at ``background_poll_initial_seconds`` and
        doubles up to ``background_poll_max_seconds``; a retry-after hint on
        the poll response takes precedence.

        Raises:
            BackgroundTaskTimeoutError: If the task outlives ``timeout``
            BackgroundTaskError: If the task fails or reports an unknown status
        """
        client = await self._ensure_client()
        timeout = timeout or self.settings.background_poll_timeout_seconds
        deadline = self._clock() + timeout
        delay = self.settings.background_poll_initial_seconds
        polls = 0

        self.logger.info("background_task_polling", operation_url=operation_url)

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise BackgroundTaskTimeoutError(
                    f"Background task did not complete within {timeout:g}s"
                )

            try:
                response = await client.get(operation_url)
            except httpx.TransportError as e:
                raise NetworkError(f"Network error while polling: {e}") from e
            polls += 1

            if response.status_code >= 400:
                raise BackgroundTaskError(
                    f"Background task poll failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    retryable=response.status_code >= 500,
                )

            body = self._json(response)
            status = str(body.get("status", "")).lower()

            if status == "succeeded":
                self.logger.info("background_task_succeeded", polls=polls)
                result = body.get("result") or body.get("response")
                return result if isinstance(result, dict) else body

            if status in FAILED_STATUSES:
                error = body.get("error") or {}
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise BackgroundTaskError(
                    f"Background task {status}" + (f": {message}" if message else "")
                )

            if status not in PENDING_STATUSES:
                raise BackgroundTaskError(f"Unknown background task status: {status or 'missing'}")

            hint = parse_retry_after(response.headers)
            wait = hint if hint is not None else delay
            await self._sleep(min(wait, remaining))
            delay = min(delay * 2, self.settings.background_poll_max_seconds)

    # =========================================================================
    # Response handling
    # =========================================================================

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise APIError(
                "Invalid JSON in response",
                status_code=response.status_code,
                retryable=True,
            ) from e
        if not isinstance(body, dict):
            raise APIError("Unexpected response shape", status_code=response.status_code)
        return body

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {"message": str(error)} if error else {}

        message = error.get("message") or response.text[:500] or response.reason_phrase
        code = str(error.get("code") or "").lower()

        self.logger.warning("completion_http_error", status=status, code=code or None)

        if status == 429:
            if code in QUOTA_ERROR_CODES:
                raise QuotaExceededError(message)
            raise RateLimitError(message, retry_after=parse_retry_after(response.headers))

        if status == 400 and code == "invalid_api_version":
            raise VersionError(message)

        raise APIError(message, status_code=status)

    def _apply_rate_limit_headers(self, headers: httpx.Headers) -> None:
        tokens = _header_int(headers, "x-ratelimit-limit-tokens")
        requests = _header_int(headers, "x-ratelimit-limit-requests")
        if tokens or requests:
            self.rate_limiter.update_limits(
                tokens_per_minute=tokens,
                requests_per_minute=requests,
            )

    def _record_usage(self, usage: Optional[Usage], reservation: Reservation) -> None:
        if usage and usage.total_tokens:
            self.rate_limiter.record_tokens_used(usage.total_tokens, reservation)

    @staticmethod
    def parse_completion(body: Dict[str, Any]) -> CompletionResult:
        """
        Convert a chat-completions response body.

        Raises:
            APIError: If the body does not have the chat-completions shape
        """
        try:
            return CompletionClient._completion_from_body(body)
        except ValueError as e:
            logger.warning("completion_shape_invalid", error=str(e))
            raise APIError(f"Unexpected response shape: {e}", retryable=False) from e

    @staticmethod
    def _completion_from_body(body: Dict[str, Any]) -> CompletionResult:
        if not isinstance(body, dict):
            raise ValueError("body is not an object")
        choices = body.get("choices") or []
        if not isinstance(choices, list):
            raise ValueError("choices is not a list")
        choice = choices[0] if choices else {}
        if not isinstance(choice, dict):
            raise ValueError("choice is not an object")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ValueError("message is not an object")

        content = message.get("content") or ""
        if isinstance(content, list):
            content = "".join(
                str(part.get("text") or "") for part in content if isinstance(part, dict)
            )
        elif not isinstance(content, str):
            raise ValueError("content is not a string")

        tool_calls = message.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise ValueError("tool_calls is not a list")

        return CompletionResult(
            content=content,
            tool_calls=[ToolCallRequest.from_wire(tc) for tc in tool_calls],
            finish_reason=choice.get("finish_reason"),
            usage=Usage.from_wire(body.get("usage")),
            response_id=body.get("id"),
        )


__all__ = ["CompletionClient", "parse_retry_after"]
