"""Proxy relay between callers and upstream LLM providers.

One relay invocation is one outbound HTTP request. Streamed bytes are handed
to the caller verbatim while being accumulated, and exactly one
``InteractionRecord`` is appended to the audit sink when the invocation ends,
whether it succeeded, failed upstream, failed in transport or was abandoned
by its consumer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from stepchain.logging import get_logger
from stepchain.service.credentials import CredentialCache
from stepchain.service.errors import ConfigurationError, TransportError, UpstreamError
from stepchain.service.providers import (
    ApiDestination,
    CanonicalRequest,
    Provider,
    ProviderAdapter,
    WireRequest,
    build_adapters,
)
from stepchain.service.sse import SSEDecoder
from stepchain.storage.common import AuditSink
from stepchain.storage.models import InteractionRecord

logger = get_logger(__name__)

ABANDONED_MESSAGE = "relay closed before upstream completed"


@dataclass
class LoggingMetadata:
    """Who/what a relay call is for; copied onto the interaction record."""

    actor: Optional[str] = None
    username: Optional[str] = None
    workflow_id: Optional[str] = None
    template_name: Optional[str] = None
    step_index: Optional[int] = None
    prompt_details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PreparedCall:
    request: CanonicalRequest
    destination: ApiDestination
    metadata: LoggingMetadata
    adapter: ProviderAdapter
    wire: WireRequest
    request_payload: Dict[str, Any]

    @property
    def stream(self) -> bool:
        return self.request.stream


@dataclass
class RelayResponse:
    """Buffered result of a non-streamed relay call."""

    status_code: int
    body: bytes
    adapter: ProviderAdapter
    record: Optional[InteractionRecord] = None

    @property
    def success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return json.loads(self.body)

    def text(self) -> str:
        """Generated text extracted from the provider's full response."""
        try:
            return self.adapter.extract_text(self.json())
        except json.JSONDecodeError:
            return ""


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class RelayStream:
    """An open upstream response whose body is relayed chunk by chunk.

    ``status_code`` is known as soon as upstream headers arrive, before any
    body byte is forwarded. :meth:`iter_bytes` may be consumed once.
    """

    def __init__(
        self, relay: "ProxyRelay", prepared: PreparedCall, response: httpx.Response
    ) -> None:
        self._relay = relay
        self._prepared = prepared
        self._response = response
        self._chunks: List[bytes] = []
        self._consumed = False
        self._finalized = False
        self.status_code = response.status_code
        self.record: Optional[InteractionRecord] = None

    @property
    def success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def adapter(self) -> ProviderAdapter:
        return self._prepared.adapter

    @property
    def bytes_sent(self) -> int:
        return sum(len(c) for c in self._chunks)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("relay stream already consumed")
        self._consumed = True
        completed = False
        error: Optional[str] = None
        try:
            async for chunk in self._response.aiter_bytes():
                if not chunk:
                    continue
                self._chunks.append(chunk)
                yield chunk
            completed = True
        except (httpx.HTTPError, httpx.StreamError) as exc:
            error = _error_text(exc)
            logger.error(
                "relay_stream_interrupted",
                provider=self._prepared.request.provider.value,
                model_id=self._prepared.request.model_id,
                bytes_sent=self.bytes_sent,
                error=error,
            )
            raise TransportError(error) from exc
        finally:
            await self._response.aclose()
            self._finalize(completed, error)

    async def aclose(self) -> None:
        """Release the upstream connection without consuming the body."""
        await self._response.aclose()
        self._finalize(False, None)

    def _finalize(self, completed: bool, error: Optional[str]) -> None:
        if self._finalized:
            return
        self._finalized = True
        if error is not None:
            message: Optional[str] = error
        elif not completed:
            message = ABANDONED_MESSAGE
        elif not self.success:
            message = f"HTTP Status {self.status_code}"
        else:
            message = None
        self.record = self._relay.record_interaction(
            self._prepared,
            response_payload=_decode(self._chunks) if self._chunks else (None if error else ""),
            success=completed and self.success,
            error_message=message,
        )


class ProxyRelay:
    """Shared relay service used by the proxy endpoint, steps and summaries."""

    def __init__(
        self,
        credentials: CredentialCache,
        audit: AuditSink,
        *,
        adapters: Optional[Dict[Provider, ProviderAdapter]] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.audit = audit
        self.adapters = adapters or build_adapters()
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    @staticmethod
    def _request_payload(
        request: CanonicalRequest,
        metadata: LoggingMetadata,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "provider": request.provider.value,
            "modelId": request.model_id,
            "promptDetails": {
                "systemInstruction": request.global_instruction or "",
                **metadata.prompt_details,
            },
            "finalApiBody": body,
        }

    def record_interaction(
        self,
        prepared: PreparedCall,
        *,
        response_payload: Optional[str],
        success: bool,
        error_message: Optional[str] = None,
    ) -> Optional[InteractionRecord]:
        return self._append_record(
            prepared.request,
            prepared.metadata,
            prepared.request_payload,
            response_payload=response_payload,
            success=success,
            error_message=error_message,
        )

    def _append_record(
        self,
        request: CanonicalRequest,
        metadata: LoggingMetadata,
        request_payload: Dict[str, Any],
        *,
        response_payload: Optional[str],
        success: bool,
        error_message: Optional[str],
    ) -> Optional[InteractionRecord]:
        record = InteractionRecord(
            actor=metadata.actor,
            username=metadata.username,
            workflow_id=metadata.workflow_id,
            template_name=metadata.template_name,
            step_index=metadata.step_index,
            provider=request.provider.value,
            model_id=request.model_id,
            request_payload=request_payload,
            response_payload=response_payload,
            success=success,
            error_message=error_message,
        )
        try:
            return self.audit.append_interaction(record)
        except Exception as exc:
            logger.error(
                "interaction_log_failed",
                provider=record.provider,
                model_id=record.model_id,
                username=record.username,
                error=str(exc),
            )
            return None

    # ------------------------------------------------------------------
    # invocation
    # ------------------------------------------------------------------

    def prepare(
        self,
        request: CanonicalRequest,
        destination: ApiDestination,
        metadata: Optional[LoggingMetadata] = None,
    ) -> PreparedCall:
        """Resolve the credential and build the wire request; no network I/O."""
        metadata = metadata or LoggingMetadata()
        try:
            adapter = self.adapters[request.provider]
        except KeyError:
            raise ConfigurationError(f"Unsupported provider: {request.provider}")
        credential = self.credentials.resolve(request.provider)
        if not credential:
            message = f"{request.provider.value} API key is not set."
            self._append_record(
                request,
                metadata,
                self._request_payload(request, metadata, None),
                response_payload=None,
                success=False,
                error_message=message,
            )
            logger.warning(
                "relay_credential_missing",
                provider=request.provider.value,
                workflow_id=metadata.workflow_id,
            )
            raise ConfigurationError(message)
        wire = adapter.build_request(request, destination, credential)
        return PreparedCall(
            request=request,
            destination=destination,
            metadata=metadata,
            adapter=adapter,
            wire=wire,
            request_payload=self._request_payload(request, metadata, wire.body),
        )

    def _transport_failure(self, prepared: PreparedCall, exc: httpx.HTTPError) -> TransportError:
        reason = _error_text(exc)
        logger.error(
            "relay_upstream_failed",
            provider=prepared.request.provider.value,
            model_id=prepared.request.model_id,
            error=reason,
        )
        self.record_interaction(
            prepared, response_payload=None, success=False, error_message=reason
        )
        return TransportError("LLM proxy request failed.", detail={"reason": reason})

    async def open(self, prepared: PreparedCall) -> RelayStream:
        """Send the request and return once upstream status and headers arrive."""
        client = self._get_client()
        outbound = client.build_request(
            "POST", prepared.wire.url, headers=prepared.wire.headers, json=prepared.wire.body
        )
        try:
            response = await client.send(outbound, stream=True)
        except httpx.HTTPError as exc:
            raise self._transport_failure(prepared, exc) from exc
        logger.info(
            "relay_stream_opened",
            provider=prepared.request.provider.value,
            model_id=prepared.request.model_id,
            status_code=response.status_code,
        )
        return RelayStream(self, prepared, response)

    async def complete(self, prepared: PreparedCall) -> RelayResponse:
        """Send the request and buffer the whole upstream body."""
        client = self._get_client()
        try:
            response = await client.post(
                prepared.wire.url, headers=prepared.wire.headers, json=prepared.wire.body
            )
        except httpx.HTTPError as exc:
            raise self._transport_failure(prepared, exc) from exc
        body = response.content
        result = RelayResponse(
            status_code=response.status_code, body=body, adapter=prepared.adapter
        )
        result.record = self.record_interaction(
            prepared,
            response_payload=body.decode("utf-8", errors="replace"),
            success=result.success,
            error_message=None if result.success else f"HTTP Status {response.status_code}",
        )
        logger.info(
            "relay_completed",
            provider=prepared.request.provider.value,
            model_id=prepared.request.model_id,
            status_code=response.status_code,
        )
        return result

    # ------------------------------------------------------------------
    # text-level helpers for internal callers
    # ------------------------------------------------------------------

    async def generate_text(
        self,
        request: CanonicalRequest,
        destination: ApiDestination,
        metadata: Optional[LoggingMetadata] = None,
    ) -> str:
        """Run one call to completion and return the generated text."""
        if request.stream:
            pieces = [delta async for delta in self.stream_text(request, destination, metadata)]
            return "".join(pieces)
        result = await self.complete(self.prepare(request, destination, metadata))
        if not result.success:
            raise UpstreamError(f"HTTP Status {result.status_code}")
        return result.text()

    async def stream_text(
        self,
        request: CanonicalRequest,
        destination: ApiDestination,
        metadata: Optional[LoggingMetadata] = None,
    ) -> AsyncIterator[str]:
        """Yield incremental text deltas decoded from a streamed call."""
        stream = await self.open(self.prepare(request, destination, metadata))
        if not stream.success:
            async for _ in stream.iter_bytes():
                pass
            raise UpstreamError(f"HTTP Status {stream.status_code}")
        decoder = SSEDecoder()
        chunks = stream.iter_bytes()
        try:
            async for chunk in chunks:
                for event in decoder.feed(chunk):
                    delta = stream.adapter.extract_delta(event)
                    if delta:
                        yield delta
        finally:
            await chunks.aclose()
        for event in decoder.flush():
            delta = stream.adapter.extract_delta(event)
            if delta:
                yield delta
