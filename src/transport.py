"""
Transport router: one message path for WebSocket and WebRTC data-channel
sessions.

Both carriers expose send() / close() / is_open / incoming(); the router
only ever sees a Transport. Inbound messages of one session are handled
strictly one after another, so per-session ordering holds on both carriers.
"""

import asyncio
import inspect
import json
from typing import Callable, Dict, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

import messages
from auth_gate import NOT_AUTHENTICATED, AuthGate
from messages import (
    AudioMessage, AuthMessage, InputMessage, PingMessage, PongMessage, ScreenMessage,
)
from remote_common import (
    ErrorKind, MessageDecodeError, Result, TransportError, UnknownMessageType,
    log_debug, log_info, log_warning,
)
from sessions import Session, SessionRegistry, TransportKind


class Transport:
    kind: TransportKind
    remote_addr: str = ""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send(self, obj: dict):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def incoming(self):
        """Async iterator of raw inbound messages; ends when the carrier closes."""
        raise NotImplementedError
        yield


class SocketTransport(Transport):
    """Text-framed JSON over a Starlette WebSocket (already accepted)."""
    kind = TransportKind.SOCKET

    def __init__(self, ws: WebSocket):
        self.ws = ws
        client = getattr(ws, "client", None)
        self.remote_addr = client.host if client else ""

    @property
    def is_open(self) -> bool:
        return (self.ws.client_state == WebSocketState.CONNECTED
                and self.ws.application_state == WebSocketState.CONNECTED)

    async def send(self, obj: dict):
        if not self.is_open:
            raise TransportError("socket closed")
        try:
            await self.ws.send_text(json.dumps(obj))
        except Exception as e:
            raise TransportError(f"socket send failed: {e}") from e

    async def close(self):
        if self.is_open:
            try:
                await self.ws.close()
            except Exception as e:
                log_debug(f"[Socket] close error: {e}")

    async def incoming(self):
        while True:
            try:
                data = await self.ws.receive_text()
            except WebSocketDisconnect:
                return
            except Exception as e:
                raise TransportError(f"socket receive failed: {e}") from e
            yield data


class PeerTransport(Transport):
    """JSON objects over an aiortc RTCDataChannel. Channel callbacks feed a
    queue so messages are handled in arrival order."""
    kind = TransportKind.PEER

    def __init__(self, channel, pc=None, remote_addr: str = ""):
        self.channel = channel
        self.pc = pc
        self.remote_addr = remote_addr
        self._inbox: asyncio.Queue = asyncio.Queue()
        channel.on("message", self._inbox.put_nowait)
        channel.on("close", lambda: self._inbox.put_nowait(None))

    @property
    def is_open(self) -> bool:
        return self.channel.readyState == "open"

    async def send(self, obj: dict):
        if not self.is_open:
            raise TransportError(f"data channel {self.channel.readyState}")
        try:
            self.channel.send(json.dumps(obj))
        except Exception as e:
            raise TransportError(f"data channel send failed: {e}") from e

    async def close(self):
        self._inbox.put_nowait(None)
        if self.channel.readyState not in ("closing", "closed"):
            self.channel.close()
        if self.pc is not None:
            try:
                await self.pc.close()
            except Exception as e:
                log_debug(f"[Peer] peer connection close error: {e}")

    async def incoming(self):
        while True:
            raw = await self._inbox.get()
            if raw is None:
                return
            yield raw


class TransportRouter:
    def __init__(self, registry: SessionRegistry, auth: AuthGate, translator=None, mute=None,
                 on_screen_request: Optional[Callable] = None):
        self.registry = registry
        self.auth = auth
        self.translator = translator
        self.mute = mute
        self.on_screen_request = on_screen_request
        self._transports: Dict[str, Transport] = {}
        self._ack_counter = 0

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def open_session(self, transport: Transport) -> Session:
        session = self.registry.create(transport.kind, self.auth.auth_required, transport.remote_addr)
        self._transports[session.session_id] = transport
        await self.send(session.session_id, self.auth.greeting(session))
        return session

    async def serve(self, transport: Transport):
        """Run one session until its carrier closes."""
        session = await self.open_session(transport)
        sid = session.session_id
        try:
            async for raw in transport.incoming():
                await self.on_message(sid, raw)
        except TransportError as e:
            if sid in self.registry:
                log_warning(f"[Router] {sid}: {e}")
            else:
                log_debug(f"[Router] {sid} (closed): {e}")
        finally:
            await self.close_session(sid)

    async def close_session(self, session_id):
        transport = self._transports.pop(session_id, None)
        session = self.registry.remove(session_id)
        if session is not None and session.mute_holds and self.mute is not None:
            await self.mute.release(session.mute_holds)
        if transport is not None:
            await transport.close()

    async def close_all(self):
        for session_id in list(self._transports):
            await self.close_session(session_id)

    def get_connection_info(self) -> dict:
        return self.registry.connection_info()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, session_id, obj: dict) -> bool:
        transport = self._transports.get(session_id)
        if transport is None:
            return False
        try:
            await transport.send(obj)
            return True
        except TransportError as e:
            log_warning(f"[Router] Send to {session_id} failed: {e}")
            await self.close_session(session_id)
            return False

    async def broadcast(self, obj: dict) -> int:
        """Send to every authenticated session; returns how many got it."""
        sent = 0
        for session in self.registry.authenticated_sessions():
            if await self.send(session.session_id, obj):
                sent += 1
        return sent

    async def send_to_device(self, device_id, obj: dict) -> bool:
        session = self.registry.find_by_device(device_id)
        if session is None:
            return False
        return await self.send(session.session_id, obj)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def on_message(self, session_id, raw):
        session = self.registry.get(session_id)
        if session is None:
            return
        self.registry.mark_seen(session_id)

        try:
            obj = messages.parse_json(raw)
        except MessageDecodeError as e:
            log_warning(f"[Router] {session_id}: {e}")
            await self.send(session_id, messages.error("Invalid message"))
            return

        if obj['type'] not in messages.PUBLIC_TYPES and not session.authenticated:
            await self.send(session_id, messages.error(NOT_AUTHENTICATED))
            return

        try:
            msg = messages.decode(obj)
        except UnknownMessageType as e:
            log_warning(f"[Router] {session_id}: {e}")
            await self.send(session_id, messages.error("Unknown message type"))
            return
        except MessageDecodeError as e:
            log_warning(f"[Router] {session_id}: {e}")
            await self.send(session_id, messages.error(str(e)))
            return

        await self._dispatch(session, msg)

    async def _dispatch(self, session: Session, msg):
        sid = session.session_id
        if isinstance(msg, PingMessage):
            await self.send(sid, messages.pong(msg.time))
        elif isinstance(msg, PongMessage):
            pass
        elif isinstance(msg, AuthMessage):
            await self.send(sid, self.auth.handle_auth(session, msg))
        elif isinstance(msg, InputMessage):
            if self.translator is None:
                result = Result.failure(ErrorKind.WORKER_UNAVAILABLE, "input disabled")
            else:
                result = await self.translator.translate(msg.event)
            await self.send(sid, messages.ack(self._ack_id(msg.id), result))
        elif isinstance(msg, ScreenMessage):
            await self._screen_request(msg.action)
        elif isinstance(msg, AudioMessage):
            result = await self._audio_hold(session, msg.action == 'start')
            await self.send(sid, messages.ack(self._ack_id(msg.id), result))

    def _ack_id(self, msg_id):
        if msg_id:
            return msg_id
        self._ack_counter += 1
        return self._ack_counter

    async def _screen_request(self, action):
        if self.on_screen_request is None:
            return
        log_info(f"[Router] Screen {action} requested")
        ret = self.on_screen_request(action)
        if inspect.isawaitable(ret):
            await ret

    async def _audio_hold(self, session: Session, hold: bool) -> Result:
        """One mute hold per session while its phone plays host audio."""
        if self.mute is None:
            return Result.failure(ErrorKind.WORKER_UNAVAILABLE, "mute disabled")
        holding = session.mute_holds > 0
        if hold == holding:
            return Result.ok()
        self.registry.adjust_mute_holds(session.session_id, 1 if hold else -1)
        result = await self.mute.set_mute(hold)
        if hold and not result:
            # not held until MUTE sticks, so the phone can ask again
            self.registry.adjust_mute_holds(session.session_id, -1)
            await self.mute.set_mute(False)
        return result
