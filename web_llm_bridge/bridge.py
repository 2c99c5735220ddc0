from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import httpx

from web_llm_bridge.credentials.pool import CredentialPool
from web_llm_bridge.credentials.types import Credential
from web_llm_bridge.profiles import BridgeProfile, ProviderProfile
from web_llm_bridge.runtime.access import (
    AccessIdentity,
    AccessLease,
    AccessSerializer,
    LeaseOutcome,
)
from web_llm_bridge.streaming.decoder import StreamDecoder, resolved_answer
from web_llm_bridge.streaming.projector import (
    ResponseProjector,
    extract_conversation_id,
    format_conversation_marker,
)
from web_llm_bridge.streaming.transcript import SseTranscriptLogger
from web_llm_bridge.upstream import (
    AUTH_REQUIRED_STATUSES,
    UpstreamClient,
    UpstreamRequestError,
    UpstreamStatusError,
)

logger = logging.getLogger("uvicorn.error")


def awaiting_user_action_message(email: str) -> str:
    return (
        f"The upstream session for account '{email}' was rejected and needs a fresh "
        "sign-in. Run `web-llm-bridge login` for this account, then send the "
        "message again."
    )


@dataclass(slots=True)
class _Delta:
    thinking: str = ""
    answer: str = ""
    replace: str | None = None


class ChatStream:
    """One upstream exchange, held open until the caller drains it.

    The access lease is released exactly once, when iteration ends for any
    reason: upstream finished, upstream broke, or the caller went away.
    """

    def __init__(
        self,
        *,
        session_id: str,
        model: str,
        provider: ProviderProfile,
        credential: Credential,
        lease: AccessLease,
        exit_stack: AsyncExitStack,
        response: httpx.Response | None,
        conversation_id: str | None,
        transcript: SseTranscriptLogger | None,
        awaiting_user_action: bool = False,
    ) -> None:
        self.session_id = session_id
        self.model = model
        self.provider = provider
        self.credential = credential
        self.lease = lease
        self.conversation_id = conversation_id
        self.awaiting_user_action = awaiting_user_action
        self.decoder = StreamDecoder(provider.decoder_profile())
        self.projector = ResponseProjector(model)
        self._exit_stack = exit_stack
        self._response = response
        self._transcript = transcript
        self._thinking_sent = 0
        self._answer_sent = 0
        self.upstream_error: UpstreamRequestError | None = None

    async def iter_sse(self) -> AsyncIterator[bytes]:
        async with aclosing(self._deltas()) as deltas:
            async for delta in deltas:
                if delta.replace is not None:
                    yield self.projector.project_replace(delta.replace).encode()
                    continue
                for frame in self.projector.project_chunk(delta.thinking, delta.answer):
                    yield frame.encode()
        if self.upstream_error is not None:
            trailer = self.projector.project_error(
                str(self.upstream_error), code="upstream_stream_interrupted"
            )
        else:
            trailer = self.projector.project_trailer(self.conversation_id)
        for trailer_frame in trailer:
            yield trailer_frame.encode()

    async def collect(self) -> dict[str, Any]:
        thinking_parts: list[str] = []
        answer_parts: list[str] = []
        async with aclosing(self._deltas()) as deltas:
            async for delta in deltas:
                if delta.replace is not None:
                    answer_parts = [delta.replace]
                    continue
                thinking_parts.append(delta.thinking)
                answer_parts.append(delta.answer)
        if self.upstream_error is not None:
            raise self.upstream_error
        content = "".join(answer_parts)
        if self.conversation_id:
            content += format_conversation_marker(self.conversation_id)
        message: dict[str, Any] = {"role": "assistant", "content": content}
        reasoning = "".join(thinking_parts)
        if reasoning:
            message["reasoning_content"] = reasoning
        return {
            "id": self.projector.completion_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        }

    async def aclose(self) -> None:
        """Release everything held for this exchange. Safe to call repeatedly."""
        await self._exit_stack.aclose()
        if self.lease.release(LeaseOutcome.FAILED):
            logger.info("bridge_stream_abandoned session=%s", self.session_id)

    async def _deltas(self) -> AsyncIterator[_Delta]:
        outcome = LeaseOutcome.FAILED
        try:
            if self.awaiting_user_action:
                yield _Delta(answer=awaiting_user_action_message(self.credential.email))
                outcome = LeaseOutcome.AWAITING_USER_ACTION
                return

            assert self._response is not None
            try:
                async for line in self._response.aiter_lines():
                    if self._transcript is not None:
                        self._transcript.log_line(self.session_id, line)
                    self.decoder.feed([line])
                    delta = self._take_delta()
                    if delta.thinking or delta.answer:
                        yield delta
                    if self.decoder.finished:
                        break
            except httpx.RequestError as exc:
                logger.warning(
                    "bridge_upstream_stream_error session=%s provider=%s error=%s",
                    self.session_id,
                    self.provider.name,
                    exc,
                )
                self.upstream_error = UpstreamRequestError(
                    provider=self.provider.name,
                    message=f"Upstream '{self.provider.name}' stream was interrupted: {exc}",
                )
                return

            self.decoder.flush()
            delta = self._take_delta()
            if delta.thinking or delta.answer:
                yield delta
            correction = self._final_correction()
            if correction is not None:
                yield _Delta(replace=correction)
            outcome = LeaseOutcome.COMPLETED
        finally:
            await self._exit_stack.aclose()
            self.lease.release(outcome)
            logger.info(
                "bridge_stream_end session=%s provider=%s account=%s outcome=%s "
                "thinking_chars=%d answer_chars=%d finished=%s",
                self.session_id,
                self.provider.name,
                self.credential.email,
                outcome.value,
                len(self.decoder.thinking_text),
                len(self.decoder.answer_text),
                self.decoder.finished,
            )
            if self._transcript is not None:
                self._transcript.log_summary(
                    self.session_id,
                    thinking_chars=len(self.decoder.thinking_text),
                    answer_chars=len(self.decoder.answer_text),
                    finished=self.decoder.finished,
                    outcome=outcome.value,
                )

    def _take_delta(self) -> _Delta:
        thinking = self.decoder.thinking_text[self._thinking_sent :]
        answer = self.decoder.answer_text[self._answer_sent :]
        self._thinking_sent += len(thinking)
        self._answer_sent += len(answer)
        return _Delta(thinking=thinking, answer=answer)

    def _final_correction(self) -> str | None:
        corrected = resolved_answer(self.decoder.state, self.decoder.profile)
        if corrected is not None and corrected != self.decoder.answer_text:
            logger.info(
                "bridge_final_correction session=%s streamed_chars=%d final_chars=%d",
                self.session_id,
                len(self.decoder.answer_text),
                len(corrected),
            )
            return corrected
        return None


class ChatBridge:
    """Request → credential → per-identity lease → upstream → decoded stream."""

    def __init__(
        self,
        *,
        pool: CredentialPool,
        serializer: AccessSerializer,
        upstream: UpstreamClient,
        profile: BridgeProfile,
        transcript: SseTranscriptLogger | None = None,
    ) -> None:
        self.pool = pool
        self.serializer = serializer
        self.upstream = upstream
        self.profile = profile
        self.transcript = transcript

    def identity_for(self, provider: ProviderProfile, credential: Credential) -> AccessIdentity:
        if provider.lock_scope == "provider":
            return AccessIdentity(provider=provider.name)
        return AccessIdentity(provider=provider.name, account_id=credential.id)

    def build_payload(
        self,
        provider: ProviderProfile,
        credential: Credential,
        payload: dict[str, Any],
        conversation_id: str | None,
    ) -> dict[str, Any]:
        upstream_payload = dict(payload)
        model = str(payload.get("model") or "")
        upstream_payload["model"] = provider.upstream_model(model)
        upstream_payload["stream"] = True
        if conversation_id and provider.conversation_id_field:
            upstream_payload[provider.conversation_id_field] = conversation_id
        if provider.project_id_field and credential.project_id:
            upstream_payload[provider.project_id_field] = credential.project_id
        return upstream_payload

    async def open(self, payload: dict[str, Any]) -> ChatStream:
        model = str(payload.get("model") or "")
        provider = self.profile.provider_for_model(model)
        credential = await self.pool.acquire()
        identity = self.identity_for(provider, credential)
        lease = await self.serializer.acquire(identity)
        session_id = uuid4().hex[:12]
        exit_stack = AsyncExitStack()
        try:
            messages = payload.get("messages")
            conversation_id = extract_conversation_id(
                messages if isinstance(messages, list) else None
            )
            upstream_payload = self.build_payload(provider, credential, payload, conversation_id)
            if self.transcript is not None:
                self.transcript.log_request(session_id, model, upstream_payload)
            logger.info(
                "bridge_request session=%s model=%s provider=%s account=%s conversation=%s",
                session_id,
                model,
                provider.name,
                credential.email,
                conversation_id or "-",
            )
            response = await exit_stack.enter_async_context(
                self.upstream.open_stream(provider, credential, upstream_payload, conversation_id)
            )
            if provider.conversation_id_header:
                conversation_id = (
                    response.headers.get(provider.conversation_id_header) or conversation_id
                )

            if response.status_code in AUTH_REQUIRED_STATUSES:
                await response.aread()
                await exit_stack.aclose()
                logger.warning(
                    "bridge_awaiting_user_action session=%s provider=%s account=%s status=%d",
                    session_id,
                    provider.name,
                    credential.email,
                    response.status_code,
                )
                return ChatStream(
                    session_id=session_id,
                    model=model,
                    provider=provider,
                    credential=credential,
                    lease=lease,
                    exit_stack=exit_stack,
                    response=None,
                    conversation_id=None,
                    transcript=self.transcript,
                    awaiting_user_action=True,
                )

            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                logger.warning(
                    "bridge_upstream_status session=%s provider=%s status=%d",
                    session_id,
                    provider.name,
                    response.status_code,
                )
                raise UpstreamStatusError(
                    provider=provider.name,
                    status_code=response.status_code,
                    detail=detail[:500],
                )
        except BaseException:
            await exit_stack.aclose()
            lease.release(LeaseOutcome.FAILED)
            raise

        return ChatStream(
            session_id=session_id,
            model=model,
            provider=provider,
            credential=credential,
            lease=lease,
            exit_stack=exit_stack,
            response=response,
            conversation_id=conversation_id,
            transcript=self.transcript,
        )
