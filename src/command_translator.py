"""
Input events -> actuator worker commands.

Each event becomes exactly one WorkerProcessManager.submit() call. Text is
sent as a single JSON-encoded command no matter how many characters it has.
"""

import json
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from keymap import META_KEY_NAMES, lookup_vk
from remote_common import ErrorKind, Result, UnknownKey, log_debug, log_info, log_warning


@dataclass(frozen=True)
class Modifiers:
    ctrl: bool = False
    alt: bool = False
    shift: bool = False
    win: bool = False

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(bool(data.get('ctrl')), bool(data.get('alt')),
                   bool(data.get('shift')), bool(data.get('win')))

    def to_wire(self) -> str:
        """'ctrl+shift' style list understood by the keyboard worker"""
        return '+'.join(n for n in ('ctrl', 'alt', 'shift', 'win') if getattr(self, n))


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Key:
    name: str
    modifiers: Modifiers = field(default_factory=Modifiers)


@dataclass(frozen=True)
class Shortcut:
    combo: str


@dataclass(frozen=True)
class MouseMove:
    dx: float
    dy: float


@dataclass(frozen=True)
class MouseAbsolute:
    x: float
    y: float


@dataclass(frozen=True)
class MouseButton:
    which: str  # left | right | middle


@dataclass(frozen=True)
class MouseScroll:
    delta: float


InputEvent = Union[Text, Key, Shortcut, MouseMove, MouseAbsolute, MouseButton, MouseScroll]

MOUSE_BUTTONS = ('left', 'right', 'middle')

_MODIFIER_ALIASES = {
    'ctrl': 'ctrl', 'control': 'ctrl',
    'alt': 'alt', 'option': 'alt',
    'shift': 'shift',
    'win': 'win', 'windows': 'win', 'meta': 'win', 'super': 'win', 'cmd': 'win',
}


def parse_combo(combo: str) -> Key:
    """'ctrl+shift+t' -> Key('t', ctrl+shift). The last part is the key;
    a combo that is only modifiers names its last modifier as the key."""
    parts = [p.strip() for p in (combo or '').split('+') if p.strip()]
    if not parts:
        raise UnknownKey(combo)
    *mods, name = parts
    flags = {}
    for m in mods:
        canonical = _MODIFIER_ALIASES.get(m.lower())
        if canonical is None:
            raise UnknownKey(m)
        flags[canonical] = True
    return Key(name, Modifiers(**flags))


class CommandTranslator:
    """Routes input events to the keyboard and mouse workers."""

    def __init__(self, keyboard, mouse):
        self.keyboard = keyboard
        self.mouse = mouse

    def command_for(self, event: InputEvent) -> Tuple[object, str]:
        """Pure mapping: event -> (worker manager, payload). Raises UnknownKey."""
        if isinstance(event, Text):
            return self.keyboard, 'text,' + json.dumps(event.text)
        if isinstance(event, Shortcut):
            return self.command_for(parse_combo(event.combo))
        if isinstance(event, Key):
            mods = event.modifiers
            # A bare Win/Meta press opens the start menu; it has its own command
            if event.name in META_KEY_NAMES and not (mods.ctrl or mods.alt or mods.shift):
                return self.keyboard, 'winkey'
            vk = lookup_vk(event.name)
            if vk is None:
                raise UnknownKey(event.name)
            return self.keyboard, f'key,{vk},{mods.to_wire()}'
        if isinstance(event, MouseMove):
            return self.mouse, f'move,{round(event.dx)},{round(event.dy)}'
        if isinstance(event, MouseAbsolute):
            return self.mouse, f'moveto,{round(event.x)},{round(event.y)}'
        if isinstance(event, MouseButton):
            if event.which not in MOUSE_BUTTONS:
                raise ValueError(f"Unknown mouse button: {event.which!r}")
            return self.mouse, event.which
        if isinstance(event, MouseScroll):
            return self.mouse, f'scroll,{round(event.delta)}'
        raise TypeError(f"Unsupported input event: {event!r}")

    async def translate(self, event: InputEvent) -> Result:
        try:
            worker, payload = self.command_for(event)
        except UnknownKey as e:
            log_warning(f"[Input] {e}")
            return Result.failure(ErrorKind.UNKNOWN_KEY, e.name)
        log_debug(f"[Input] {worker.name} <- {payload[:80]}")
        return await worker.submit(payload)


class MuteController:
    """Reference-counted host mute. Only the 0->1 and 1->0 edges reach the
    worker (plus a retry while holders exist but MUTE has not stuck), so
    overlapping holders converge to the right state."""

    def __init__(self, worker):
        self.worker = worker
        self._count = 0
        self._muted = False

    @property
    def ref_count(self) -> int:
        return self._count

    @property
    def muted(self) -> bool:
        """Last state confirmed by the actuator"""
        return self._muted

    async def set_mute(self, mute: bool) -> Result:
        if mute:
            self._count += 1
            # a failed MUTE is retried by the next holder
            if self._count == 1 or not self._muted:
                return await self._apply(True)
            return Result.ok()
        if self._count == 0:
            return Result.ok()
        self._count -= 1
        if self._count == 0 and self._muted:
            return await self._apply(False)
        return Result.ok()

    async def release(self, holds: int):
        """Drop several holds at once (a session that went away)."""
        for _ in range(min(holds, self._count)):
            await self.set_mute(False)

    async def _apply(self, muted: bool) -> Result:
        result = await self.worker.submit('MUTE' if muted else 'UNMUTE')
        if result:
            self._muted = muted
            log_info(f"[Mute] Host audio {'muted' if muted else 'unmuted'}")
        else:
            log_warning(f"[Mute] {'MUTE' if muted else 'UNMUTE'} failed: {result.error}")
        return result

    async def cleanup(self) -> Optional[Result]:
        """Leave the host unmuted and stop the worker."""
        result = None
        if self._count > 0 or self._muted:
            self._count = 0
            result = await self._apply(False)
        await self.worker.stop()
        return result
