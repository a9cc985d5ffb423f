#!/usr/bin/env python3
"""
Keymote client: connects to a host, authenticates and sends input.

Auth order on every (re)connect: saved device token first, then PIN.
A rejected token (requirePin) is forgotten so the next attempt uses the PIN.
Dropped connections reconnect with exponential backoff until the attempt
budget runs out; reconnect() always tries immediately.

Run: python remote_client.py ws://192.168.1.10:8765 --pin 123456
"""

import asyncio
import json
import time
import uuid
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from liveness import LatencyTracker, ReconnectPolicy
from remote_common import _task_done, log_debug, log_info, log_warning, setup_logging

PING_INTERVAL = 5.0


class RemoteClient:
    def __init__(self, url: str, pin: Optional[str] = None, token: Optional[str] = None,
                 device_id: Optional[str] = None, computer_name: Optional[str] = None,
                 remember_me: bool = True, policy: Optional[ReconnectPolicy] = None,
                 ping_interval: float = PING_INTERVAL,
                 on_status: Optional[Callable[[str], None]] = None,
                 on_message: Optional[Callable[[dict], None]] = None):
        self.url = url
        self.pin = pin
        self.token = token
        self.device_id = device_id or uuid.uuid4().hex
        self.computer_name = computer_name
        self.remember_me = remember_me
        self.policy = policy or ReconnectPolicy()
        self.ping_interval = ping_interval
        self.latency = LatencyTracker()
        self.on_status = on_status
        self.on_message = on_message

        self.status = "disconnected"
        self.authenticated = False
        self.auth_required = None
        self.last_error: Optional[str] = None
        self._ws = None
        self._closing = False
        self._msg_id = 0
        self._authenticated_event = asyncio.Event()
        self._run_task: Optional[asyncio.Task] = None

    def _set_status(self, status):
        if status == self.status:
            return
        self.status = status
        log_info(f"[Client] {status}")
        if self.on_status:
            self.on_status(status)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def start(self):
        """Connect in the background, reconnecting on drops."""
        self._closing = False
        if self._run_task is None or self._run_task.done():
            self._run_task = asyncio.create_task(self._run(), name="remote-client")
            self._run_task.add_done_callback(_task_done)

    async def wait_authenticated(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._authenticated_event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def reconnect(self):
        """Manual reconnect: never blocked by backoff state."""
        self.policy.reset()
        await self._stop_run()
        self.start()

    async def close(self):
        self._closing = True
        await self._stop_run()
        self._set_status("disconnected")

    async def _stop_run(self):
        task, self._run_task = self._run_task, None
        if self._ws is not None:
            await self._ws.close()
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        while not self._closing:
            self._set_status("connecting")
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    self.policy.reset()
                    await self._session(ws)
            except (OSError, ConnectionClosed, InvalidURI, InvalidHandshake) as e:
                self.last_error = str(e)
                log_debug(f"[Client] connection ended: {e}")
            finally:
                self._ws = None
                self.authenticated = False
                self._authenticated_event.clear()
            if self._closing:
                break
            delay = self.policy.next_delay()
            if delay is None:
                self._set_status("disconnected")
                log_warning(f"[Client] Giving up after {self.policy.max_attempts} attempts")
                return
            self._set_status("reconnecting")
            log_debug(f"[Client] Reconnect attempt {self.policy.attempts} in {delay:.2f}s")
            await asyncio.sleep(delay)

    async def _session(self, ws):
        ping_task = None
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError as e:
                    log_warning(f"[Client] Dropping undecodable frame: {e}")
                    continue
                if not isinstance(msg, dict):
                    log_warning(f"[Client] Dropping non-object frame: {type(msg).__name__}")
                    continue
                await self._handle(msg)
                if self.authenticated and ping_task is None:
                    ping_task = asyncio.create_task(self._ping_loop())
                    ping_task.add_done_callback(_task_done)
        finally:
            if ping_task is not None:
                ping_task.cancel()

    async def _ping_loop(self):
        while True:
            await self.send({'type': 'ping', 'time': int(time.time() * 1000)})
            await asyncio.sleep(self.ping_interval)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _handle(self, msg: dict):
        kind = msg.get('type')
        if kind == 'connected':
            self.auth_required = bool(msg.get('authRequired'))
            if not self.auth_required:
                self._on_authenticated()
            else:
                await self._authenticate()
        elif kind == 'auth_result':
            if msg.get('success'):
                if msg.get('token'):
                    self.token = msg['token']
                self.computer_name = msg.get('computerName') or self.computer_name
                self._on_authenticated()
            else:
                self.last_error = msg.get('error') or 'Authentication failed'
                log_warning(f"[Client] Auth failed: {self.last_error}")
                if msg.get('requirePin'):
                    self.token = None
                    if self.pin:
                        await self._authenticate()
                        return
                self._set_status("auth_failed")
        elif kind == 'pong':
            sent = msg.get('time')
            if isinstance(sent, (int, float)):
                self.latency.add(time.time() * 1000 - sent)
        elif kind == 'ping':
            if self.authenticated:
                await self.send({'type': 'pong', 'time': msg.get('time')})
            else:
                # Before auth only auth/ping are accepted; a ping of our own keeps the session alive
                await self.send({'type': 'ping', 'time': int(time.time() * 1000)})
        elif kind == 'error':
            self.last_error = msg.get('error')
            log_warning(f"[Client] Server error: {self.last_error}")
        if self.on_message:
            self.on_message(msg)

    async def _authenticate(self):
        if self.token:
            await self.send({'type': 'auth', 'token': self.token, 'deviceId': self.device_id})
        elif self.pin:
            auth = {'type': 'auth', 'pin': self.pin, 'deviceId': self.device_id,
                    'rememberMe': self.remember_me}
            if self.computer_name:
                auth['computerName'] = self.computer_name
            await self.send(auth)
        else:
            self._set_status("pin_required")

    def _on_authenticated(self):
        self.authenticated = True
        self._authenticated_event.set()
        self._set_status("connected")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, obj: dict) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(obj))
            return True
        except ConnectionClosed:
            return False

    def _next_id(self):
        self._msg_id += 1
        return self._msg_id

    async def send_text(self, text):
        return await self.send({'type': 'text', 'text': text, 'id': self._next_id()})

    async def send_key(self, key, **modifiers):
        return await self.send({'type': 'key', 'key': key, 'modifiers': modifiers, 'id': self._next_id()})

    async def send_shortcut(self, combo):
        return await self.send({'type': 'shortcut', 'combo': combo, 'id': self._next_id()})

    async def mouse_move(self, dx, dy):
        return await self.send({'type': 'mouse', 'action': 'move', 'dx': dx, 'dy': dy, 'id': self._next_id()})

    async def mouse_move_to(self, x, y):
        return await self.send({'type': 'mouse', 'action': 'moveto', 'x': x, 'y': y, 'id': self._next_id()})

    async def mouse_click(self, button='left'):
        return await self.send({'type': 'mouse', 'action': button, 'id': self._next_id()})

    async def mouse_scroll(self, delta):
        return await self.send({'type': 'mouse', 'action': 'scroll', 'delta': delta, 'id': self._next_id()})

    async def screen(self, start=True):
        return await self.send({'type': 'screen', 'action': 'start' if start else 'stop'})

    async def share_audio(self, playing=True):
        """Tell the host to mute itself while this device plays its audio"""
        return await self.send({'type': 'audio', 'action': 'start' if playing else 'stop', 'id': self._next_id()})

# =============================================================================
#                              CLI
# =============================================================================

async def _type_stdin(client: RemoteClient, timeout: float):
    if not await client.wait_authenticated(timeout):
        print(f"Could not authenticate: {client.last_error or client.status}")
        return 1
    print(f"Connected to {client.computer_name or client.url}. Lines typed here are sent as text (Ctrl-D to quit).")
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, input_line)
        if line is None:
            break
        await client.send_text(line)
        await client.send_key('Enter')
    if client.latency.average is not None:
        print(f"Average latency: {client.latency.average}ms")
    return 0


def input_line():
    try:
        return input()
    except EOFError:
        return None


async def _main_async(args):
    client = RemoteClient(args.url, pin=args.pin, token=args.token, device_id=args.device_id,
                          computer_name=args.name)
    client.start()
    try:
        return await _type_stdin(client, args.timeout)
    finally:
        await client.close()


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Keymote client: type into a remote host")
    parser.add_argument("url", help="Host address, e.g. ws://192.168.1.10:8765")
    parser.add_argument("--pin", default=None)
    parser.add_argument("--token", default=None, help="Saved device token")
    parser.add_argument("--device-id", default=None)
    parser.add_argument("--name", default=None, help="Expected computer name")
    parser.add_argument("--timeout", type=float, default=15.0)
    args = parser.parse_args(argv)
    setup_logging("keymote")
    return asyncio.run(_main_async(args))


if __name__ == "__main__":
    raise SystemExit(main())
