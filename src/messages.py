"""
Wire messages shared by both transports: one JSON object per message.

parse_json() turns raw text into a dict, decode() turns that dict into one
of the typed messages below. Anything unrecognized raises, so the router
decides what to reply instead of silently falling through.
"""

import json
import math
import time
from dataclasses import dataclass
from typing import Optional, Union

from command_translator import (
    InputEvent, Key, Modifiers, MouseAbsolute, MouseButton, MouseMove,
    MouseScroll, Shortcut, Text, MOUSE_BUTTONS,
)
from remote_common import MessageDecodeError, UnknownMessageType

# Types an unauthenticated session may send
PUBLIC_TYPES = frozenset({'auth', 'ping'})

KEYBOARD_TYPES = frozenset({'text', 'key', 'char', 'shortcut'})

_MOUSE_ACTIONS = frozenset(MOUSE_BUTTONS) | {'move', 'moveto', 'scroll'}


@dataclass(frozen=True)
class AuthMessage:
    pin: Optional[str] = None
    token: Optional[str] = None
    device_id: Optional[str] = None
    computer_name: Optional[str] = None
    remember_me: bool = False


@dataclass(frozen=True)
class PingMessage:
    time: Optional[float] = None


@dataclass(frozen=True)
class PongMessage:
    time: Optional[float] = None


@dataclass(frozen=True)
class InputMessage:
    event: InputEvent
    id: Optional[int] = None


@dataclass(frozen=True)
class ScreenMessage:
    action: str  # start | stop


@dataclass(frozen=True)
class AudioMessage:
    action: str  # start | stop
    id: Optional[int] = None


Message = Union[AuthMessage, PingMessage, PongMessage, InputMessage, ScreenMessage, AudioMessage]


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_json(raw) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode('utf-8', errors='replace')
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"Invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MessageDecodeError("Message is not a JSON object")
    if not isinstance(obj.get('type'), str):
        raise MessageDecodeError("Message has no type")
    return obj


def _str(obj, name) -> Optional[str]:
    value = obj.get(name)
    if value is None or value == '':
        return None
    return str(value)


def _num(obj, name, default=0.0) -> float:
    value = obj.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MessageDecodeError(f"Field {name!r} must be a number")
    if not math.isfinite(value):
        raise MessageDecodeError(f"Field {name!r} must be a finite number")
    return value


def _msg_id(obj) -> Optional[int]:
    value = obj.get('id')
    return value if isinstance(value, int) and not isinstance(value, bool) and value else None


def _decode_keyboard(obj) -> InputEvent:
    kind = obj['type']
    if kind == 'text':
        return Text(str(obj.get('text') or ''))
    if kind == 'char':
        return Text(str(obj.get('char') or ''))
    if kind == 'shortcut' and obj.get('combo'):
        return Shortcut(str(obj['combo']))
    name = obj.get('key')
    if not isinstance(name, str) or not name:
        raise MessageDecodeError(f"{kind} message needs a key")
    return Key(name, Modifiers.from_dict(obj.get('modifiers')))


def _decode_mouse(obj) -> InputEvent:
    action = obj.get('action')
    if action not in _MOUSE_ACTIONS:
        raise MessageDecodeError(f"Unknown mouse action: {action!r}")
    if action == 'move':
        return MouseMove(_num(obj, 'dx'), _num(obj, 'dy'))
    if action == 'moveto':
        return MouseAbsolute(_num(obj, 'x'), _num(obj, 'y'))
    if action == 'scroll':
        return MouseScroll(_num(obj, 'delta'))
    return MouseButton(action)


def decode(obj: dict) -> Message:
    kind = obj.get('type')
    if kind == 'auth':
        return AuthMessage(
            pin=_str(obj, 'pin'),
            token=_str(obj, 'token'),
            device_id=_str(obj, 'deviceId'),
            computer_name=_str(obj, 'computerName'),
            remember_me=bool(obj.get('rememberMe')),
        )
    if kind == 'ping':
        return PingMessage(obj.get('time'))
    if kind == 'pong':
        return PongMessage(obj.get('time'))
    if kind in KEYBOARD_TYPES:
        return InputMessage(_decode_keyboard(obj), _msg_id(obj))
    if kind == 'mouse':
        return InputMessage(_decode_mouse(obj), _msg_id(obj))
    if kind in ('screen', 'audio'):
        action = obj.get('action')
        if action not in ('start', 'stop'):
            raise MessageDecodeError(f"Unknown {kind} action: {action!r}")
        if kind == 'screen':
            return ScreenMessage(action)
        return AudioMessage(action, _msg_id(obj))
    raise UnknownMessageType(kind)

# ============================================================================
#                              OUTBOUND
# ============================================================================

def connected(client_id, auth_required, computer_name) -> dict:
    return {
        'type': 'connected',
        'clientId': client_id,
        'serverTime': now_ms(),
        'authRequired': auth_required,
        'computerName': computer_name,
    }


def auth_result(success, token=None, computer_name=None, error=None, require_pin=False) -> dict:
    msg = {'type': 'auth_result', 'success': success}
    if token:
        msg['token'] = token
    if computer_name:
        msg['computerName'] = computer_name
    if error:
        msg['error'] = error
    if require_pin:
        msg['requirePin'] = True
    return msg


def ping() -> dict:
    return {'type': 'ping', 'time': now_ms()}


def pong(client_time=None) -> dict:
    return {'type': 'pong', 'time': client_time if client_time is not None else now_ms()}


def ack(msg_id, result) -> dict:
    msg = {'type': 'ack', 'id': msg_id, 'success': result.success}
    if result.error is not None:
        msg['error'] = result.error.value
    return msg


def error(text) -> dict:
    return {'type': 'error', 'error': text}


def screen_frame(frame) -> dict:
    return {
        'type': 'screen-frame',
        'data': frame.data,
        'width': frame.width,
        'height': frame.height,
        'cursorX': frame.cursor_x,
        'cursorY': frame.cursor_y,
        'timestamp': now_ms(),
    }
