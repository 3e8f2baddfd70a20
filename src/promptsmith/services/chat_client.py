"""Streaming chat client: one call interface over several provider wire formats.

``StreamingChatClient.call`` takes the chunk handler as a per-call argument and
returns the full text. Transports only know how to talk to one API family;
the client handles degradation to a single chunk, cancellation and error
normalisation.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
from langchain_openai import ChatOpenAI

from ..config import PipelineConfig
from ..domain.conversation_models import Attachment, ChatMessagePayload
from ..domain.provider_models import ResolvedTarget
from ..errors import AbortError, ProviderCallError


logger = logging.getLogger(__name__)
LOG = logging.getLogger("promptsmith.llm")

ChunkHandler = Callable[[str], None]

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com",
    "anthropic": "https://api.anthropic.com",
    "google": "https://generativelanguage.googleapis.com",
}

_VERSION_SUFFIX = re.compile(r"/v\d+[a-z0-9]*$")


class CancellationHandle:
    """Aborts the single call currently bound to it.

    ``abort()`` with nothing in flight does nothing and returns ``False``; it
    never carries over to a later call.
    """

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None

    @property
    def in_flight(self) -> bool:
        return self._event is not None

    def bind(self) -> asyncio.Event:
        self._event = asyncio.Event()
        return self._event

    def release(self, event: asyncio.Event) -> None:
        if self._event is event:
            self._event = None

    def abort(self) -> bool:
        event = self._event
        if event is None:
            return False
        event.set()
        return True


# ----------------------------------------------------------------------
# URL helpers
# ----------------------------------------------------------------------
def openai_base_url(base_url: Optional[str]) -> str:
    """Base URL for the OpenAI SDK: ends at the version segment (``/v1``)."""
    url = (base_url or DEFAULT_BASE_URLS["openai"]).rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")]
    if not _VERSION_SUFFIX.search(url):
        url += "/v1"
    return url


def anthropic_messages_url(base_url: Optional[str]) -> str:
    url = (base_url or DEFAULT_BASE_URLS["anthropic"]).rstrip("/")
    if "/v1/messages" in url:
        return url
    if url.endswith("/v1"):
        return url + "/messages"
    return url + "/v1/messages"


def google_model_url(base_url: Optional[str], model_id: str, streaming: bool) -> str:
    url = (base_url or DEFAULT_BASE_URLS["google"]).rstrip("/")
    if "/models/" in url:
        url = url.split("/models/")[0]
    if not url.endswith("/v1beta"):
        url += "/v1beta"
    if streaming:
        return f"{url}/models/{model_id}:streamGenerateContent?alt=sse"
    return f"{url}/models/{model_id}:generateContent"


# ----------------------------------------------------------------------
# Attachment helpers
# ----------------------------------------------------------------------
def _is_image(att: Attachment) -> bool:
    return att.type == "image" or att.mime_type.startswith("image/")


def attachment_text(att: Attachment) -> str:
    """Textual stand-in for a non-image attachment."""
    marker = f"[attachment {att.name} ({att.mime_type}, {att.size} bytes)]"
    if att.mime_type.startswith("text/") and att.data:
        try:
            decoded = base64.b64decode(att.data, validate=False).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            return marker
        return f"{marker}\n{decoded}"
    return marker


def _text_with_attachments(msg: ChatMessagePayload) -> str:
    extras = [attachment_text(a) for a in msg.attachments if not _is_image(a)]
    if not extras:
        return msg.content
    return "\n\n".join([msg.content] + extras)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
        return json.dumps(data)[:500]
    return response.text[:500]


# ----------------------------------------------------------------------
# Transports
# ----------------------------------------------------------------------
class ChatTransport(Protocol):
    supports_streaming: bool

    def stream(self, messages: Sequence[ChatMessagePayload]) -> AsyncIterator[str]: ...

    async def complete(self, messages: Sequence[ChatMessagePayload]) -> str: ...


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text") or ""))
        return "".join(parts)
    return ""


class OpenAICompatibleTransport:
    """OpenAI chat completions (and compatible gateways) through ``ChatOpenAI``."""

    supports_streaming = True

    def __init__(self, target: ResolvedTarget, config: PipelineConfig) -> None:
        self.target = target
        self.base_url = openai_base_url(target.provider.base_url)
        self._llm = ChatOpenAI(
            api_key=target.provider.api_key,
            base_url=self.base_url,
            model=target.model.id,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=httpx.Timeout(config.read_timeout, connect=config.connect_timeout),
            max_retries=1,
        )

    @staticmethod
    def to_wire(messages: Sequence[ChatMessagePayload]) -> List[Dict[str, Any]]:
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            images = [a for a in msg.attachments if _is_image(a)]
            text = _text_with_attachments(msg)
            if not images:
                wire.append({"role": msg.role, "content": text})
                continue
            parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
            for img in images:
                parts.append({"type": "image_url", "image_url": {"url": f"data:{img.mime_type};base64,{img.data}"}})
            wire.append({"role": msg.role, "content": parts})
        return wire

    async def stream(self, messages: Sequence[ChatMessagePayload]) -> AsyncIterator[str]:
        async for chunk in self._llm.astream(self.to_wire(messages)):
            text = _content_text(getattr(chunk, "content", ""))
            if text:
                yield text

    async def complete(self, messages: Sequence[ChatMessagePayload]) -> str:
        result = await self._llm.ainvoke(self.to_wire(messages))
        return _content_text(getattr(result, "content", ""))


class _HttpxTransport:
    supports_streaming = True

    def __init__(self, target: ResolvedTarget, config: PipelineConfig) -> None:
        self.target = target
        self.config = config
        # No read timeout unless configured: a slow stream runs until interrupted.
        self._timeout = httpx.Timeout(config.read_timeout, connect=config.connect_timeout)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout)

    def _raise_for_status(self, response: httpx.Response, label: str) -> None:
        if response.status_code >= 400:
            raise ProviderCallError(
                f"{label} API error {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )

    @staticmethod
    async def _sse_payloads(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
        async for line in response.aiter_lines():
            if not line or not line.startswith("data:"):
                continue
            data = line[5:].strip()
            if not data or data == "[DONE]":
                continue
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                yield parsed


class AnthropicTransport(_HttpxTransport):
    """Anthropic Messages API."""

    def __init__(self, target: ResolvedTarget, config: PipelineConfig) -> None:
        super().__init__(target, config)
        self.url = anthropic_messages_url(target.provider.base_url)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.target.provider.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_body(self, messages: Sequence[ChatMessagePayload], streaming: bool) -> Dict[str, Any]:
        system_parts = [m.content for m in messages if m.role == "system"]
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            images = [a for a in msg.attachments if _is_image(a)]
            text = _text_with_attachments(msg)
            if not images:
                wire.append({"role": msg.role, "content": text})
                continue
            blocks: List[Dict[str, Any]] = [
                {"type": "image", "source": {"type": "base64", "media_type": img.mime_type, "data": img.data}}
                for img in images
            ]
            blocks.append({"type": "text", "text": text})
            wire.append({"role": msg.role, "content": blocks})
        body: Dict[str, Any] = {
            "model": self.target.model.id,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": wire,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if streaming:
            body["stream"] = True
        return body

    async def stream(self, messages: Sequence[ChatMessagePayload]) -> AsyncIterator[str]:
        body = self.build_body(messages, streaming=True)
        async with self._client() as client:
            async with client.stream("POST", self.url, json=body, headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, "Anthropic")
                async for event in self._sse_payloads(response):
                    kind = event.get("type")
                    if kind == "content_block_delta":
                        text = (event.get("delta") or {}).get("text") or ""
                        if text:
                            yield text
                    elif kind == "error":
                        err = event.get("error") or {}
                        raise ProviderCallError(f"Anthropic stream error: {err.get('message') or err}")

    async def complete(self, messages: Sequence[ChatMessagePayload]) -> str:
        body = self.build_body(messages, streaming=False)
        async with self._client() as client:
            response = await client.post(self.url, json=body, headers=self._headers())
        self._raise_for_status(response, "Anthropic")
        data = response.json()
        return "".join(
            str(block.get("text") or "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )


class GoogleTransport(_HttpxTransport):
    """Gemini ``generateContent`` / ``streamGenerateContent``."""

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.target.provider.api_key}

    def build_body(self, messages: Sequence[ChatMessagePayload]) -> Dict[str, Any]:
        system_parts = [m.content for m in messages if m.role == "system"]
        contents: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            parts: List[Dict[str, Any]] = [{"text": _text_with_attachments(msg)}]
            for img in (a for a in msg.attachments if _is_image(a)):
                parts.append({"inline_data": {"mime_type": img.mime_type, "data": img.data}})
            contents.append({"role": "model" if msg.role == "assistant" else "user", "parts": parts})
        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
        }
        if system_parts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        return body

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "".join(str(p.get("text") or "") for p in parts if isinstance(p, dict))

    async def stream(self, messages: Sequence[ChatMessagePayload]) -> AsyncIterator[str]:
        url = google_model_url(self.target.provider.base_url, self.target.model.id, streaming=True)
        async with self._client() as client:
            async with client.stream("POST", url, json=self.build_body(messages), headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, "Google")
                async for event in self._sse_payloads(response):
                    text = self._candidate_text(event)
                    if text:
                        yield text

    async def complete(self, messages: Sequence[ChatMessagePayload]) -> str:
        url = google_model_url(self.target.provider.base_url, self.target.model.id, streaming=False)
        async with self._client() as client:
            response = await client.post(url, json=self.build_body(messages), headers=self._headers())
        self._raise_for_status(response, "Google")
        return self._candidate_text(response.json())


TransportFactory = Callable[[ResolvedTarget, PipelineConfig], ChatTransport]


def build_transport(target: ResolvedTarget, config: PipelineConfig) -> ChatTransport:
    api_type = target.api_type
    if api_type == "anthropic":
        return AnthropicTransport(target, config)
    if api_type == "google":
        return GoogleTransport(target, config)
    return OpenAICompatibleTransport(target, config)


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------
class StreamingChatClient:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.config = config or PipelineConfig.from_env()
        self._transport_factory = transport_factory or build_transport

    async def call(
        self,
        messages: Sequence[ChatMessagePayload],
        target: ResolvedTarget,
        *,
        streaming: bool = True,
        on_chunk: Optional[ChunkHandler] = None,
        cancel: Optional[CancellationHandle] = None,
    ) -> str:
        """Run one completion and return the full text.

        With ``streaming`` and ``on_chunk`` the handler sees fragments in
        arrival order; a transport that cannot stream yields exactly one
        chunk. Raises ``AbortError`` when ``cancel`` is aborted mid-call and
        ``ProviderCallError`` for any other failure. An abort that lands in
        the same loop turn as the last chunk still raises ``AbortError``.
        """
        transport = self._transport_factory(target, self.config)
        LOG.info(
            "llm_call_started",
            extra={
                "provider": target.provider.id,
                "model": target.model.id,
                "api_type": target.api_type,
                "streaming": bool(streaming and on_chunk),
                "messages": len(messages),
            },
        )
        work = asyncio.ensure_future(self._run(transport, messages, streaming, on_chunk))
        if cancel is None:
            return await self._finish(work, target)

        event = cancel.bind()
        waiter = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            # An abort wins even when the response finished in the same tick.
            if event.is_set():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
                LOG.info("llm_call_aborted", extra={"provider": target.provider.id, "model": target.model.id})
                raise AbortError()
            return await self._finish(work, target)
        finally:
            cancel.release(event)
            waiter.cancel()
            if not work.done():
                work.cancel()

    async def _finish(self, work: "asyncio.Future[str]", target: ResolvedTarget) -> str:
        try:
            text = await work
        except (AbortError, asyncio.CancelledError):
            raise
        except ProviderCallError as exc:
            LOG.warning("llm_call_failed", extra={"provider": target.provider.id, "err": str(exc)})
            raise
        except Exception as exc:
            LOG.warning("llm_call_failed", extra={"provider": target.provider.id, "err": str(exc)})
            raise ProviderCallError(str(exc) or exc.__class__.__name__, status_code=getattr(exc, "status_code", None)) from exc
        LOG.debug("llm_call_completed", extra={"provider": target.provider.id, "chars": len(text)})
        return text

    @staticmethod
    async def _run(
        transport: ChatTransport,
        messages: Sequence[ChatMessagePayload],
        streaming: bool,
        on_chunk: Optional[ChunkHandler],
    ) -> str:
        if not (streaming and on_chunk is not None):
            return await transport.complete(messages)
        if not transport.supports_streaming:
            text = await transport.complete(messages)
            on_chunk(text)
            return text
        parts: List[str] = []
        async for piece in transport.stream(messages):
            if not piece:
                continue
            parts.append(piece)
            on_chunk(piece)
        return "".join(parts)
