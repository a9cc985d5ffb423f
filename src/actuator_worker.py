#!/usr/bin/env python3
"""
Actuator worker: the long-lived helper process behind one WorkerProcessManager.

Run: python actuator_worker.py keyboard|mouse|mute

Prints READY once its backend is initialized, then answers every
"<seq> <command>" line on stdin with "<seq> <token>" on stdout until EXIT
or EOF. Diagnostics go to stderr (the host logs them).

keyboard:  text,<json string> | key,<vk>,<mods> | winkey      -> OK / ERR
mouse:     move,dx,dy | moveto,x,y | left | right | middle | scroll,delta
mute:      MUTE | UNMUTE                                       -> MUTED / UNMUTED / ERR
"""

import sys
import json
import subprocess

from remote_common import PLATFORM
from keymap import VK_LWIN

WHEEL_DELTA = 120  # one notch, Windows wheel units


def _err(msg):
    print(f"[actuator] {msg}", file=sys.stderr, flush=True)

# ============================================================================
#                              KEYBOARD
# ============================================================================

# VK code -> pynput Key attribute name
_VK_TO_KEY_NAME = {
    0x08: 'backspace', 0x09: 'tab', 0x0D: 'enter', 0x10: 'shift', 0x11: 'ctrl',
    0x12: 'alt', 0x13: 'pause', 0x14: 'caps_lock', 0x1B: 'esc', 0x20: 'space',
    0x21: 'page_up', 0x22: 'page_down', 0x23: 'end', 0x24: 'home',
    0x25: 'left', 0x26: 'up', 0x27: 'right', 0x28: 'down',
    0x2C: 'print_screen', 0x2D: 'insert', 0x2E: 'delete',
    0x5B: 'cmd', 0x5C: 'cmd_r', 0x5D: 'menu',
    0x90: 'num_lock', 0x91: 'scroll_lock',
    0xA0: 'shift_l', 0xA1: 'shift_r', 0xA2: 'ctrl_l', 0xA3: 'ctrl_r',
    0xA4: 'alt_l', 0xA5: 'alt_r',
    0xAD: 'media_volume_mute', 0xAE: 'media_volume_down', 0xAF: 'media_volume_up',
    0xB0: 'media_next', 0xB1: 'media_previous', 0xB3: 'media_play_pause',
}
_VK_TO_KEY_NAME.update({0x70 + i: f'f{i + 1}' for i in range(24)})

# VK code -> character for keys pynput types as characters
_VK_TO_CHAR = {
    0x6A: '*', 0x6B: '+', 0x6D: '-', 0x6E: '.', 0x6F: '/',
    0xBA: ';', 0xBB: '=', 0xBC: ',', 0xBD: '-', 0xBE: '.', 0xBF: '/',
    0xC0: '`', 0xDB: '[', 0xDC: '\\', 0xDD: ']', 0xDE: "'",
}
_VK_TO_CHAR.update({0x30 + i: str(i) for i in range(10)})   # top-row digits
_VK_TO_CHAR.update({0x60 + i: str(i) for i in range(10)})   # numpad digits
_VK_TO_CHAR.update({0x41 + i: chr(ord('a') + i) for i in range(26)})


class KeyboardBackend:
    def __init__(self):
        from pynput.keyboard import Controller, Key, KeyCode
        self._kb = Controller()
        self._Key = Key
        self._KeyCode = KeyCode
        self._modifiers = {'ctrl': Key.ctrl, 'alt': Key.alt, 'shift': Key.shift, 'win': Key.cmd}

    def _resolve(self, vk):
        if PLATFORM == 'windows':
            return self._KeyCode.from_vk(vk)
        name = _VK_TO_KEY_NAME.get(vk)
        if name:
            key = getattr(self._Key, name, None)
            if key is not None:
                return key
        char = _VK_TO_CHAR.get(vk)
        if char:
            return self._KeyCode.from_char(char)
        return None

    def handle(self, payload):
        action, _, rest = payload.partition(',')
        if action == 'text':
            self._kb.type(json.loads(rest))
        elif action == 'key':
            vk_text, _, mods = rest.partition(',')
            key = self._resolve(int(vk_text))
            if key is None:
                raise ValueError(f"no mapping for vk {vk_text}")
            held = [self._modifiers[m] for m in mods.split('+') if m]
            with self._kb.pressed(*held):
                self._kb.tap(key)
        elif action == 'winkey':
            self._kb.tap(self._resolve(VK_LWIN) if PLATFORM == 'windows' else self._Key.cmd)
        else:
            raise ValueError(f"unknown keyboard command {action!r}")
        return 'OK'

# ============================================================================
#                              MOUSE
# ============================================================================

class MouseBackend:
    def __init__(self):
        from pynput.mouse import Controller, Button
        self._mouse = Controller()
        self._buttons = {'left': Button.left, 'right': Button.right, 'middle': Button.middle}

    def handle(self, payload):
        parts = payload.split(',')
        action = parts[0]
        if action == 'move':
            self._mouse.move(int(parts[1]), int(parts[2]))
        elif action == 'moveto':
            self._mouse.position = (int(parts[1]), int(parts[2]))
        elif action in self._buttons:
            self._mouse.click(self._buttons[action])
        elif action == 'scroll':
            delta = int(parts[1])
            steps = int(delta / WHEEL_DELTA)
            if steps == 0 and delta:
                steps = 1 if delta > 0 else -1
            self._mouse.scroll(0, steps)
        else:
            raise ValueError(f"unknown mouse command {action!r}")
        return 'OK'

# ============================================================================
#                              MUTE
# ============================================================================

class MuteBackend:
    """Master output mute. Idempotent: MUTE twice leaves it muted."""

    def __init__(self):
        if PLATFORM == 'linux':
            self._cmd = lambda on: ['pactl', 'set-sink-mute', '@DEFAULT_SINK@', '1' if on else '0']
        elif PLATFORM == 'macos':
            self._cmd = lambda on: ['osascript', '-e',
                                    f"set volume output muted {'true' if on else 'false'}"]
        else:
            self._cmd = None
            _err(f"mute not supported on {PLATFORM}")

    def handle(self, payload):
        if payload not in ('MUTE', 'UNMUTE'):
            raise ValueError(f"unknown mute command {payload!r}")
        if self._cmd is None:
            return 'ERR'
        on = payload == 'MUTE'
        subprocess.run(self._cmd(on), check=True, capture_output=True, timeout=5)
        return 'MUTED' if on else 'UNMUTED'


BACKENDS = {
    'keyboard': KeyboardBackend,
    'mouse': MouseBackend,
    'mute': MuteBackend,
}

# ============================================================================
#                              MAIN LOOP
# ============================================================================

def serve(backend, stdin=None, stdout=None):
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stdout.write("READY\n")
    stdout.flush()
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        if line == 'EXIT':
            break
        seq, _, payload = line.partition(' ')
        try:
            token = backend.handle(payload)
        except Exception as e:
            _err(f"{payload!r} failed: {e}")
            token = 'ERR'
        stdout.write(f"{seq} {token}\n")
        stdout.flush()


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1 or argv[0] not in BACKENDS:
        _err(f"usage: actuator_worker.py {'|'.join(BACKENDS)}")
        return 2
    try:
        backend = BACKENDS[argv[0]]()
    except Exception as e:
        # No READY: the host treats this as a failed start
        _err(f"{argv[0]} backend unavailable: {e}")
        return 1
    serve(backend)
    return 0


if __name__ == "__main__":
    sys.exit(main())
