"""
Stream relay: re-emits an upstream completion stream as SSE frames
"""
import inspect
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from stream_proxy.config import Config
from stream_proxy.errors import UpstreamError
from stream_proxy.models import ChatRequest, Usage
from stream_proxy.sse import DONE_FRAME, DownstreamSink, content_frame, error_frame
from stream_proxy.upstream import Upstream, translate_error

logger = logging.getLogger(__name__)

STREAM_ERROR = "Stream failed"
GENERIC_STREAM_MESSAGE = "The model provider returned an error"


class RelayState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    UPSTREAM_OPENING = "upstream_opening"
    RELAYING = "relaying"
    DRAINING = "draining"
    CLOSED = "closed"


class RelayOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CLIENT_ABORTED = "client_aborted"


_TRANSITIONS = {
    RelayState.IDLE: {RelayState.VALIDATING},
    RelayState.VALIDATING: {RelayState.UPSTREAM_OPENING, RelayState.CLOSED},
    RelayState.UPSTREAM_OPENING: {RelayState.RELAYING, RelayState.DRAINING, RelayState.CLOSED},
    RelayState.RELAYING: {RelayState.DRAINING, RelayState.CLOSED},
    RelayState.DRAINING: {RelayState.CLOSED},
    RelayState.CLOSED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class RelaySession:
    """State of one proxied streaming completion, owned by a single request"""
    client_id: str = "unknown"
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RelayState = RelayState.IDLE
    outcome: Optional[RelayOutcome] = None
    request: Optional[ChatRequest] = None
    chunks_received: int = 0
    chunks_forwarded: int = 0
    usage: Optional[Usage] = None
    error: Optional[UpstreamError] = None
    started_at: float = field(default_factory=time.monotonic)
    history: List[RelayState] = field(default_factory=lambda: [RelayState.IDLE])

    def transition(self, state: RelayState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def close(self, outcome: RelayOutcome) -> None:
        self.transition(RelayState.CLOSED)
        self.outcome = outcome

    @property
    def closed(self) -> bool:
        return self.state is RelayState.CLOSED


@dataclass(frozen=True)
class RelayResult:
    """Summary handed to the completion callback"""
    session_id: str
    client_id: str
    outcome: RelayOutcome
    request: ChatRequest
    chunks_forwarded: int
    text: str
    usage: Optional[Usage]
    duration: float


CompletionCallback = Callable[[RelayResult], Union[None, Awaitable[None]]]


class StreamRelay:
    """Drives a RelaySession from UPSTREAM_OPENING to CLOSED"""

    def __init__(
        self,
        upstream: Upstream,
        config: Optional[Config] = None,
        on_complete: Optional[CompletionCallback] = None,
        collect_text: bool = True,
    ):
        self.upstream = upstream
        self.config = config or Config()
        self.on_complete = on_complete
        # Reply text is only kept for callbacks that read it
        self.collect_text = collect_text

    def _error_message(self, error: UpstreamError) -> str:
        if self.config.is_development and error.message:
            return error.message
        return GENERIC_STREAM_MESSAGE

    async def run(self, session: RelaySession, sink: DownstreamSink) -> RelayOutcome:
        """
        Relay one completion into sink
        Writes exactly one terminal frame unless the client went away, and
        always closes the sink
        """
        session.transition(RelayState.UPSTREAM_OPENING)
        parts: Optional[List[str]] = [] if self.on_complete and self.collect_text else None
        logger.info("Relay %s opening upstream for %s", session.session_id, session.client_id)

        try:
            if not sink.is_open():
                session.close(RelayOutcome.CLIENT_ABORTED)
            else:
                await self._pump(session, sink, parts)

            if not session.closed:
                session.transition(RelayState.DRAINING)
                if not sink.is_open():
                    session.close(RelayOutcome.CLIENT_ABORTED)
                elif session.error is not None:
                    frame = error_frame(STREAM_ERROR, self._error_message(session.error))
                    sent = await self._write(session, sink, frame)
                    session.close(RelayOutcome.ERROR if sent else RelayOutcome.CLIENT_ABORTED)
                else:
                    sent = await self._write(session, sink, DONE_FRAME)
                    session.close(RelayOutcome.SUCCESS if sent else RelayOutcome.CLIENT_ABORTED)
        finally:
            await sink.close()

        logger.info(
            "Relay %s closed: %s after %d chunks",
            session.session_id, session.outcome.value, session.chunks_forwarded,
        )
        await self._notify(session, parts)
        return session.outcome

    async def _pump(self, session: RelaySession, sink: DownstreamSink, parts: Optional[List[str]]) -> None:
        """Forward upstream deltas until the stream ends, fails or the client leaves"""
        async with aclosing(self.upstream.stream_chat(session.request)) as chunks:
            while True:
                try:
                    chunk = await chunks.__anext__()
                    delta, usage = chunk.delta, chunk.usage
                except StopAsyncIteration:
                    return
                except Exception as e:
                    session.error = translate_error(e)
                    logger.warning("Relay %s upstream error: %s", session.session_id, session.error)
                    return

                if session.state is RelayState.UPSTREAM_OPENING:
                    session.transition(RelayState.RELAYING)
                session.chunks_received += 1

                if not sink.is_open():
                    # Leaving the block closes the upstream generator
                    session.close(RelayOutcome.CLIENT_ABORTED)
                    return

                if usage is not None:
                    session.usage = usage
                if not delta:
                    continue

                if not await self._write(session, sink, content_frame(delta)):
                    session.close(RelayOutcome.CLIENT_ABORTED)
                    return
                session.chunks_forwarded += 1
                if parts is not None:
                    parts.append(delta)

    async def _write(self, session: RelaySession, sink: DownstreamSink, frame: str) -> bool:
        """Send one frame; a failed write means the client is gone"""
        try:
            await sink.send(frame)
        except Exception as e:
            logger.info("Relay %s downstream write failed: %r", session.session_id, e)
            return False
        return True

    async def _notify(self, session: RelaySession, parts: Optional[List[str]]) -> None:
        if self.on_complete is None:
            return
        result = RelayResult(
            session_id=session.session_id,
            client_id=session.client_id,
            outcome=session.outcome,
            request=session.request,
            chunks_forwarded=session.chunks_forwarded,
            text="".join(parts or []),
            usage=session.usage,
            duration=time.monotonic() - session.started_at,
        )
        try:
            ret = self.on_complete(result)
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            # The response is already finished; nothing to report to the client
            logger.exception("Relay %s completion callback failed", session.session_id)
