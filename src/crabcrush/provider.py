"""
OpenAI-compatible streaming provider adapter.

One OpenAICompatibleProvider talks to one backend endpoint (DeepSeek,
Qwen, Kimi, GLM, Doubao, or any other /chat/completions server). It
turns a message list into a lazy stream of TextDelta events closed by a
single ChatDone, and owns the transport policy:

- every attempt races the caller's cancellation token against a 30s timeout
- 4xx responses fail immediately and are never retried
- 5xx responses, network errors and timeouts are retried once after 1s
- cancellation aborts without retrying and is reported distinctly

Streamed tool-call fragments are reassembled and delivered on ChatDone.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from crabcrush.cancellation import CancellationToken
from crabcrush.sse import SSEDecoder, ToolCallAccumulator
from crabcrush.tools import ToolDefinition
from crabcrush.types import ChatDone, ChatEvent, Message, TextDelta, Usage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transport policy
REQUEST_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
MAX_RETRIES = 1
RETRY_DELAY = 1.0

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096


# =========================================================================
# Errors
# =========================================================================


class ProviderError(Exception):
    """Error from a model provider."""

    client_error = False

    def __init__(self, message: str, provider_id: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        """True for configuration problems that no retry or provider swap can fix."""
        return self.client_error


class ClientError(ProviderError):
    """The backend rejected the request (HTTP 4xx). Never retried."""


class AuthenticationError(ClientError):
    client_error = True


class InsufficientBalanceError(ClientError):
    client_error = True


class RateLimitError(ClientError):
    client_error = True


class RequestRejectedError(ClientError):
    """Any other 4xx, such as an unknown model name."""


class TransportError(ProviderError):
    """Server-side or network trouble. Retried, then eligible for failover."""


class ServerError(TransportError):
    pass


class ProviderTimeoutError(TransportError):
    pass


class ProviderConnectionError(TransportError):
    pass


class GenerationCancelled(ProviderError):
    """The caller's cancellation token fired. Not a failure."""


class _StreamCancelled(Exception):
    pass


# =========================================================================
# Options
# =========================================================================


@dataclass
class ChatOptions:
    """Per-request options for a chat stream."""
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[ToolDefinition] | None = None
    cancel_token: CancellationToken | None = None


class OpenAICompatibleProvider:
    """
    Streaming client for one OpenAI-compatible backend.

    The client is async and keeps a single httpx.AsyncClient for its
    lifetime; close it with aclose() or use the provider as an async
    context manager.
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        api_key: str,
        default_model: str = "",
        *,
        request_timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            provider_id: Identifier used by the router ("deepseek", "qwen", ...)
            base_url: API root, e.g. https://api.deepseek.com/v1
            api_key: Bearer token for the backend
            default_model: Model used when the request names none
            request_timeout: Seconds allowed per attempt
            max_retries: Retries for server/network errors
            retry_delay: Seconds to wait before retrying
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.id = provider_id
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        timeout = httpx.Timeout(request_timeout, connect=min(DEFAULT_CONNECT_TIMEOUT, request_timeout))
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def chat(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """
        Stream a chat completion.

        Yields TextDelta events followed by exactly one ChatDone. Raises
        ClientError, TransportError or GenerationCancelled when no stream
        could be opened.
        """
        options = options or ChatOptions()
        model = options.model or self.default_model
        payload = self.build_payload(messages, options, model)
        token = options.cancel_token

        logger.debug(f"Sending chat request to {self.id} ({model}) with {len(messages)} messages")
        response = await self._open_with_retry(payload, token)
        try:
            async for event in self._stream_events(response, model, token):
                yield event
        finally:
            await response.aclose()

    def build_payload(
        self, messages: list[Message], options: ChatOptions, model: str
    ) -> dict[str, Any]:
        """Request body for /chat/completions."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
            "temperature": options.temperature if options.temperature is not None else DEFAULT_TEMPERATURE,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if options.tools:
            payload["tools"] = [t.to_openai_schema() for t in options.tools]
        return payload

    # ---------------------------------------------------------------------
    # Transport
    # ---------------------------------------------------------------------

    async def _open_with_retry(
        self, payload: dict[str, Any], token: CancellationToken | None
    ) -> httpx.Response:
        last_error: ProviderError | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(
                    f"Retry attempt {attempt}/{self.max_retries} for {self.id} "
                    f"after {self.retry_delay}s delay..."
                )
                await self._sleep(self.retry_delay, token)
            self._raise_if_cancelled(token)

            try:
                response = await self._race(self._send(payload), token)
            except (TimeoutError, httpx.TimeoutException) as e:
                logger.warning(f"{self.id} request timed out (attempt {attempt + 1}): {e}")
                last_error = ProviderTimeoutError(
                    f"Model response timed out (no response within {self.request_timeout:g}s)",
                    self.id,
                )
                last_error.__cause__ = e
                continue
            except httpx.RequestError as e:
                logger.warning(f"{self.id} request error (attempt {attempt + 1}): {e}")
                last_error = ProviderConnectionError(f"Network error talking to {self.id}: {e}", self.id)
                last_error.__cause__ = e
                continue

            if response.is_success:
                return response

            body = await self._read_error_body(response)
            if response.status_code < 500:
                logger.error(f"{self.id} HTTP error: {response.status_code} - {body[:200]}")
                raise self._classify_client_error(response.status_code, body)

            logger.warning(f"{self.id} server error {response.status_code} (attempt {attempt + 1})")
            last_error = ServerError(
                f"Model API server error ({response.status_code}): {body[:200]}",
                self.id,
                response.status_code,
            )

        logger.error(f"All {self.max_retries + 1} attempts to {self.id} failed. Last error: {last_error}")
        raise last_error or ProviderError("Model call failed", self.id)

    async def _send(self, payload: dict[str, Any]) -> httpx.Response:
        request = self._client.build_request("POST", "/chat/completions", json=payload)
        return await self._client.send(request, stream=True)

    async def _read_error_body(self, response: httpx.Response) -> str:
        try:
            raw = await response.aread()
        except httpx.HTTPError:
            return ""
        finally:
            await response.aclose()
        return raw.decode("utf-8", errors="replace")

    async def _race(self, awaitable: Awaitable[T], token: CancellationToken | None) -> T:
        """
        Await with the request timeout, aborting early if the token fires.

        Raises TimeoutError on timeout and GenerationCancelled on cancellation.
        """
        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter: asyncio.Future[Any] | None = None
        if token is not None:
            cancel_waiter = asyncio.ensure_future(token.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.request_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if task in done:
            return task.result()
        self._raise_if_cancelled(token)
        raise TimeoutError(f"no response from {self.id} within {self.request_timeout}s")

    async def _sleep(self, delay: float, token: CancellationToken | None) -> None:
        if token is None:
            await asyncio.sleep(delay)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(token.wait(), timeout=delay)
        self._raise_if_cancelled(token)

    def _raise_if_cancelled(self, token: CancellationToken | None) -> None:
        if token is not None and token.cancelled:
            raise GenerationCancelled("Generation was interrupted", self.id)

    def _classify_client_error(self, status: int, body: str) -> ClientError:
        """Map a 4xx response to an actionable error."""
        if status in (401, 403):
            return AuthenticationError(
                f"API key is invalid or expired. Check the API key configured for {self.id}.",
                self.id,
                status,
            )
        if status == 429:
            return RateLimitError(
                f"Rate limited by {self.id}: too many requests. Please try again later.",
                self.id,
                status,
            )
        if status == 402 or "insufficient" in body.lower():
            return InsufficientBalanceError(
                f"{self.id} account balance is insufficient. Top up the account and try again.",
                self.id,
                status,
            )
        return RequestRejectedError(
            f"Model API call failed ({status}): {body[:200]}",
            self.id,
            status,
        )

    # ---------------------------------------------------------------------
    # Stream decoding
    # ---------------------------------------------------------------------

    async def _stream_events(
        self,
        response: httpx.Response,
        model: str,
        token: CancellationToken | None,
    ) -> AsyncIterator[ChatEvent]:
        decoder = SSEDecoder()
        accumulator = ToolCallAccumulator()

        try:
            async with contextlib.aclosing(self._frames(response, decoder, token)) as frames:
                async for frame in frames:
                    text, fragments, usage = _read_frame(frame)

                    if text:
                        yield TextDelta(text=text)

                    for fragment in fragments:
                        accumulator.add(fragment)

                    # Some backends send usage before the [DONE] marker.
                    if usage is not None:
                        yield ChatDone(
                            model=model,
                            usage=usage,
                            tool_calls=accumulator.finalize(),
                        )
                        return
        except _StreamCancelled:
            logger.info(f"Stream from {self.id} cancelled by caller")
            yield ChatDone(model=model, cancelled=True)
            return

        yield ChatDone(model=model, tool_calls=accumulator.finalize())

    async def _frames(
        self,
        response: httpx.Response,
        decoder: SSEDecoder,
        token: CancellationToken | None,
    ) -> AsyncIterator[dict[str, Any]]:
        chunks = response.aiter_bytes()
        while not decoder.done:
            chunk = await self._next_chunk(chunks, token)
            if chunk is None:
                for frame in decoder.flush():
                    yield frame
                return
            for frame in decoder.feed(chunk):
                yield frame

    async def _next_chunk(
        self,
        chunks: AsyncIterator[bytes],
        token: CancellationToken | None,
    ) -> bytes | None:
        """Read the next body chunk, or None at end of body."""
        if token is not None and token.cancelled:
            raise _StreamCancelled()

        try:
            if token is None:
                return await _read_chunk(chunks)

            read = asyncio.ensure_future(_read_chunk(chunks))
            cancel_waiter = asyncio.ensure_future(token.wait())
            try:
                done, _ = await asyncio.wait(
                    {read, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancel_waiter.cancel()
                if not read.done():
                    read.cancel()
                    with contextlib.suppress(asyncio.CancelledError, httpx.HTTPError):
                        await read
            if read in done:
                return read.result()
            raise _StreamCancelled()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"Model stream from {self.id} stalled (no data within {self.request_timeout:g}s)",
                self.id,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderConnectionError(f"Stream from {self.id} broke: {e}", self.id) from e

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "OpenAICompatibleProvider":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"OpenAICompatibleProvider(id={self.id!r}, base_url={self.base_url!r})"


def _read_frame(frame: dict[str, Any]) -> tuple[str, list[dict[str, Any]], Usage | None]:
    """
    Pull the text delta, tool-call fragments and usage out of one frame.

    Parts of the wrong shape are ignored, so a non-conforming keep-alive
    or vendor extension never ends the stream.
    """
    text = ""
    fragments: list[dict[str, Any]] = []

    choices = frame.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    delta = choice.get("delta") if isinstance(choice, dict) else None
    if isinstance(delta, dict):
        content = delta.get("content")
        if isinstance(content, str):
            text = content
        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            fragments = [f for f in tool_calls if isinstance(f, dict)]

    usage: Usage | None = None
    raw_usage = frame.get("usage")
    if isinstance(raw_usage, dict) and raw_usage:
        try:
            usage = Usage.from_api(raw_usage)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unreadable usage block: {raw_usage!r}")
    elif raw_usage:
        logger.debug(f"Ignoring unreadable usage block: {raw_usage!r}")

    return text, fragments, usage


async def _read_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None
