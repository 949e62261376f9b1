"""Registry of live streaming sessions.

Each session owns one transport connection and one receive-loop task.
``subscribe`` returns immediately; connecting happens inside the task, so
a subscription moves through::

    REQUESTED -> CONNECTING -> STREAMING -> CLOSING -> CLOSED
                                         \\-> BROKEN

``BROKEN`` is terminal. A broken session keeps its registry entry, with
the error that broke it, until the caller unsubscribes. Nothing is
reconnected automatically.

Callbacks run synchronously inside the session's receive loop, in frame
arrival order. A callback that blocks stalls its own session.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from futures_gateway.errors import GatewayConnectionError, ProtocolError
from futures_gateway.records import StreamRecord
from futures_gateway.usdm.decoder import DecodeSpec, decode
from futures_gateway.usdm.transport import (
    CONNECT_ERRORS,
    StreamTransport,
    TransportClosed,
    TransportFactory,
    websocket_factory,
)


log = logging.getLogger(__name__)

Callback = Callable[[StreamRecord], None]
ErrorCallback = Callable[[Exception], None]


class SubscriptionState(str, Enum):
    REQUESTED = "requested"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    BROKEN = "broken"


LIVE_STATES = frozenset({SubscriptionState.REQUESTED, SubscriptionState.CONNECTING, SubscriptionState.STREAMING})


@dataclass(frozen=True)
class SubscriptionHandle:
    """Caller's token for one subscription. Equal by id; ids are never reused."""

    id: int
    kind: str = field(default="", compare=False)


@dataclass(eq=False)
class Session:
    id: int
    uri: str
    decode_spec: DecodeSpec
    shared_key: str | None = None
    state: SubscriptionState = SubscriptionState.REQUESTED
    transport: StreamTransport | None = None
    cancel: bool = False
    error: Exception | None = None
    task: asyncio.Task[None] | None = None
    subscribers: dict[int, tuple[Callback, ErrorCallback | None]] = field(default_factory=dict)
    streaming: asyncio.Event = field(default_factory=asyncio.Event)
    delivered: int = 0


class SessionRegistry:
    def __init__(
        self,
        transport_factory: TransportFactory | None = None,
        *,
        connect_attempts: int = 3,
        connect_backoff_seconds: float = 0.5,
        close_timeout_seconds: float = 5.0,
    ) -> None:
        self._factory = transport_factory or websocket_factory()
        self._connect_attempts = max(1, int(connect_attempts))
        self._connect_backoff = connect_backoff_seconds
        self._close_timeout = close_timeout_seconds

        # Guards _handles/_shared; only subscribe/unsubscribe mutate them.
        self._lock = asyncio.Lock()
        self._handle_ids = itertools.count(1)
        self._session_ids = itertools.count(1)
        self._handles: dict[int, tuple[SubscriptionHandle, Session]] = {}
        self._shared: dict[str, Session] = {}

    # -------- Introspection --------

    def __len__(self) -> int:
        return len({id(session) for _, session in self._handles.values()})

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, SubscriptionHandle) and handle.id in self._handles

    def handles(self) -> list[SubscriptionHandle]:
        return [h for h, _ in self._handles.values()]

    def session_for(self, handle: SubscriptionHandle) -> Session | None:
        entry = self._handles.get(handle.id)
        return entry[1] if entry else None

    def state(self, handle: SubscriptionHandle) -> SubscriptionState:
        session = self.session_for(handle)
        return session.state if session else SubscriptionState.CLOSED

    def error(self, handle: SubscriptionHandle) -> Exception | None:
        session = self.session_for(handle)
        return session.error if session else None

    async def wait_streaming(self, handle: SubscriptionHandle, timeout: float | None = None) -> bool:
        """Wait until the handle's session is streaming. False if it broke or closed first."""
        session = self.session_for(handle)
        if session is None:
            return False
        task = session.task
        waiter = asyncio.ensure_future(session.streaming.wait())
        pending = {waiter} | ({task} if task is not None else set())
        try:
            await asyncio.wait(pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        return session.state is SubscriptionState.STREAMING

    # -------- Lifecycle --------

    async def open(self, uri: str) -> StreamTransport:
        """Connect a transport, retrying a bounded number of times."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._connect_attempts),
                wait=wait_exponential_jitter(
                    initial=self._connect_backoff,
                    max=self._connect_backoff * 10,
                    jitter=self._connect_backoff,
                ),
                retry=retry_if_exception_type(CONNECT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        log.info("reconnect attempt %d uri=%s", attempt.retry_state.attempt_number, uri)
                    transport = await self._factory(uri)
        except CONNECT_ERRORS as e:
            raise GatewayConnectionError(
                f"could not connect to {uri} after {self._connect_attempts} attempt(s): {e}"
            ) from e
        return transport

    async def subscribe(
        self,
        uri: str,
        decode_spec: DecodeSpec,
        callback: Callback,
        *,
        kind: str = "",
        on_error: ErrorCallback | None = None,
        shared_key: str | None = None,
    ) -> SubscriptionHandle:
        """Register a subscription and start its receive loop; does not wait for the connection."""
        async with self._lock:
            handle = SubscriptionHandle(id=next(self._handle_ids), kind=kind)

            if shared_key is not None:
                existing = self._shared.get(shared_key)
                if existing is not None and existing.state in LIVE_STATES and not existing.cancel:
                    existing.subscribers[handle.id] = (callback, on_error)
                    self._handles[handle.id] = (handle, existing)
                    log.debug("handle %d joined shared session %d (%s)", handle.id, existing.id, shared_key)
                    return handle

            session = Session(id=next(self._session_ids), uri=uri, decode_spec=decode_spec, shared_key=shared_key)
            session.subscribers[handle.id] = (callback, on_error)
            self._handles[handle.id] = (handle, session)
            if shared_key is not None:
                self._shared[shared_key] = session
            session.task = asyncio.create_task(self._receive_loop(session), name=f"stream-{session.id}")
            log.info("subscribed handle=%d kind=%s uri=%s", handle.id, kind, uri)
            return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop a subscription and wait for its receive loop to exit. Unknown handles are ignored."""
        async with self._lock:
            entry = self._handles.get(handle.id)
            if entry is None:
                return
            _, session = entry
            if len(session.subscribers) > 1:
                # Shared session still serves other handles.
                session.subscribers.pop(handle.id, None)
                del self._handles[handle.id]
                return
            # Detach first so no new handle joins a session that is going away.
            session.cancel = True
            if session.shared_key is not None and self._shared.get(session.shared_key) is session:
                del self._shared[session.shared_key]

        # The wait for the loop and the transport close happens outside the lock.
        await self._stop(session)

        async with self._lock:
            session.subscribers.pop(handle.id, None)
            self._handles.pop(handle.id, None)
        log.info("unsubscribed handle=%d state=%s", handle.id, session.state.value)

    async def break_session(self, handle: SubscriptionHandle, error: Exception) -> None:
        """Force a session into BROKEN for a fault detected outside its receive loop."""
        async with self._lock:
            session = self.session_for(handle)
            if session is None or session.state not in LIVE_STATES:
                return
            self._mark_broken(session, error)
            session.cancel = True
        await self._stop(session)

    async def close_all(self) -> None:
        for handle in self.handles():
            await self.unsubscribe(handle)

    async def _stop(self, session: Session) -> None:
        session.cancel = True
        if session.state is not SubscriptionState.BROKEN:
            session.state = SubscriptionState.CLOSING
        task = session.task
        if task is not None and not task.done():
            # Wakes a pending recv immediately; the loop closes its transport on the way out.
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if session.state is not SubscriptionState.BROKEN:
            session.state = SubscriptionState.CLOSED

    # -------- Receive loop --------

    async def _receive_loop(self, session: Session) -> None:
        try:
            session.state = SubscriptionState.CONNECTING
            session.transport = await self.open(session.uri)
            if session.cancel:
                return
            session.state = SubscriptionState.STREAMING
            session.streaming.set()
            log.info("session %d streaming uri=%s", session.id, session.uri)

            while not session.cancel:
                raw = await session.transport.recv()
                if session.cancel:
                    break
                record = decode(raw, session.decode_spec)
                self._deliver(session, record)
        except TransportClosed as e:
            if not session.cancel:
                self._mark_broken(session, GatewayConnectionError(f"stream closed by peer: {e}"))
        except ProtocolError as e:
            if not session.cancel:
                self._mark_broken(session, e)
        except OSError as e:
            if not session.cancel:
                error = e if isinstance(e, GatewayConnectionError) else GatewayConnectionError(f"stream transport failed: {e}")
                self._mark_broken(session, error)
        except _CallbackFailed as e:
            self._mark_broken(session, e.error)
        except Exception as e:
            # Anything else still ends the session; CancelledError is not caught here.
            if not session.cancel:
                log.exception("session %d receive loop failed", session.id)
                self._mark_broken(session, e)
        finally:
            await self._close_transport(session)

    def _deliver(self, session: Session, record: StreamRecord) -> None:
        for callback, _ in list(session.subscribers.values()):
            try:
                callback(record)
            except Exception as e:
                log.exception("callback for session %d raised", session.id)
                raise _CallbackFailed(e) from e
        session.delivered += 1

    def _mark_broken(self, session: Session, error: Exception) -> None:
        session.state = SubscriptionState.BROKEN
        session.error = error
        log.error("session %d broken uri=%s: %s", session.id, session.uri, error)
        for _, on_error in list(session.subscribers.values()):
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception:
                log.exception("error callback for session %d raised", session.id)

    async def _close_transport(self, session: Session) -> None:
        transport = session.transport
        if transport is None:
            return
        try:
            await asyncio.wait_for(transport.close(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            log.warning("session %d: transport close timed out", session.id)
        except (OSError, TransportClosed) as e:
            log.warning("session %d: transport close failed: %s", session.id, e)


class _CallbackFailed(Exception):
    def __init__(self, error: Exception) -> None:
        super().__init__(str(error))
        self.error = error
