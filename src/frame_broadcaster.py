"""
Screen streaming: a fixed-rate loop that pulls the latest frame from a
screen source and broadcasts it to every authenticated session.

FfmpegScreenSource runs one ffmpeg process emitting MJPEG on stdout
(x11grab / gdigrab / avfoundation). A reader thread splits the byte stream
into JPEG frames and keeps only the newest one.
"""

import asyncio
import base64
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from typing import Optional

import messages
from remote_common import (
    DEFAULT_FPS, PLATFORM, _task_done,
    log_debug, log_error, log_info, log_warning,
)

MIN_FPS = 1
MAX_FPS = 30
DEFAULT_QUALITY = 60

_SOI = b"\xff\xd8"
_EOI = b"\xff\xd9"
_MAX_BUFFER = 16 * 1024 * 1024


@dataclass(frozen=True)
class ScreenFrame:
    data: str            # data:image/jpeg;base64,... (opaque to the broadcaster)
    width: int
    height: int
    cursor_x: int = 0
    cursor_y: int = 0


class ScreenSource:
    """Capture collaborator. capture() returns None when no frame is ready."""

    def start(self):
        pass

    def stop(self):
        pass

    async def capture(self) -> Optional[ScreenFrame]:
        raise NotImplementedError


def clamp_fps(fps) -> int:
    return max(MIN_FPS, min(MAX_FPS, int(fps)))


class FrameBroadcaster:
    def __init__(self, router, source: Optional[ScreenSource] = None, fps: int = DEFAULT_FPS):
        self.router = router
        self.source = source
        self._fps = clamp_fps(fps)
        self._task: Optional[asyncio.Task] = None
        self.frames_sent = 0

    @property
    def fps(self) -> int:
        return self._fps

    def set_fps(self, fps):
        """Takes effect on the next tick of a running loop."""
        self._fps = clamp_fps(fps)
        log_info(f"[Screen] FPS set to {self._fps}")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start streaming. A second start() while running is a no-op."""
        if self.is_running():
            return False
        if self.source is not None:
            self.source.start()
        self._task = asyncio.create_task(self._run(), name="frame-broadcaster")
        self._task.add_done_callback(_task_done)
        log_info(f"[Screen] Streaming at {self._fps} FPS")
        return True

    async def stop(self):
        """Cancel the loop; no frame is sent after this returns."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.source is not None:
            # ffmpeg teardown waits on the process
            await asyncio.to_thread(self.source.stop)
        log_info("[Screen] Streaming stopped")

    async def handle_request(self, action):
        """screen start/stop control from a session"""
        if action == 'start':
            self.start()
        elif action == 'stop':
            await self.stop()

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            await self.tick()
            next_tick += 1.0 / self._fps
            delay = next_tick - loop.time()
            if delay < 0:
                # Fell behind: don't burst to catch up
                next_tick = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    async def tick(self) -> bool:
        if self.source is None:
            return False
        try:
            frame = await self.source.capture()
        except Exception as e:
            log_warning(f"[Screen] Capture failed: {e}")
            return False
        if frame is None:
            return False
        await self.router.broadcast(messages.screen_frame(frame))
        self.frames_sent += 1
        return True

# ============================================================================
#                          FFMPEG SCREEN SOURCE
# ============================================================================

def detect_screen_size():
    """Primary screen resolution in physical pixels, 1920x1080 if unknown."""
    if PLATFORM == 'windows':
        try:
            import ctypes
            user32 = ctypes.windll.user32
            try:
                ctypes.windll.shcore.SetProcessDpiAwareness(2)
            except Exception:
                user32.SetProcessDPIAware()
            return user32.GetSystemMetrics(0), user32.GetSystemMetrics(1)
        except Exception as e:
            log_debug(f"[Screen] GetSystemMetrics failed: {e}")
    elif PLATFORM == 'macos':
        try:
            result = subprocess.run(['system_profiler', 'SPDisplaysDataType'],
                                    capture_output=True, text=True, timeout=5)
            for line in result.stdout.split('\n'):
                match = re.search(r'Resolution:\s*(\d+)\s*x\s*(\d+)', line)
                if match:
                    return int(match.group(1)), int(match.group(2))
        except Exception as e:
            log_debug(f"[Screen] system_profiler failed: {e}")
    else:
        try:
            result = subprocess.run(['xrandr'], capture_output=True, text=True, timeout=2)
            for line in result.stdout.split('\n'):
                if ' connected' in line:
                    match = re.search(r'(\d+)x(\d+)\+', line)
                    if match:
                        return int(match.group(1)), int(match.group(2))
        except Exception as e:
            log_debug(f"[Screen] xrandr failed: {e}")
    return 1920, 1080


def _get_avfoundation_screen_device():
    """Device string like '2:' for the first 'Capture screen' input ('1:' if unknown)."""
    try:
        p = subprocess.run(
            ['ffmpeg', '-nostdin', '-f', 'avfoundation', '-list_devices', 'true', '-i', ''],
            capture_output=True, text=True, timeout=5,
        )
        for line in (p.stderr or '').splitlines():
            if 'Capture screen' in line:
                m = re.search(r'\[(\d+)\]', line)
                if m:
                    return f'{m.group(1)}:'
    except Exception as e:
        log_debug(f"[Screen] avfoundation device probe failed: {e}")
    return '1:'


def jpeg_qscale(quality: int) -> int:
    """JPEG quality 1..100 -> ffmpeg -q:v 2..31 (lower is better)."""
    quality = max(1, min(100, int(quality)))
    return round(2 + (100 - quality) * 29 / 99)


def build_ffmpeg_cmd(width, height, fps, quality=DEFAULT_QUALITY, display=None, plat=None):
    """ffmpeg command that writes a stream of JPEG frames to stdout (pure function)."""
    plat = plat or PLATFORM
    cmd = ['ffmpeg', '-nostdin', '-loglevel', 'error']
    if plat == 'linux':
        cmd += ['-f', 'x11grab', '-framerate', str(fps),
                '-video_size', f'{width}x{height}', '-i', display or ':0']
    elif plat == 'windows':
        cmd += ['-f', 'gdigrab', '-framerate', str(fps),
                '-offset_x', '0', '-offset_y', '0',  # primary monitor only
                '-video_size', f'{width}x{height}', '-i', 'desktop']
    elif plat == 'macos':
        cmd += ['-f', 'avfoundation', '-framerate', str(fps), '-capture_cursor', '0',
                '-i', _get_avfoundation_screen_device(),
                '-vf', f'scale={width}:{height}']
    else:
        raise RuntimeError(f"Screen capture not supported on {plat}")
    cmd += ['-q:v', str(jpeg_qscale(quality)), '-f', 'image2pipe', '-c:v', 'mjpeg', 'pipe:1']
    return cmd


def split_jpeg_frames(buf: bytearray):
    """Pop every complete JPEG (SOI..EOI) off the front of buf, return them."""
    frames = []
    while True:
        start = buf.find(_SOI)
        if start < 0:
            # Keep a trailing 0xFF, it may be the first half of the next SOI
            del buf[:-1 if buf.endswith(b"\xff") else len(buf)]
            return frames
        end = buf.find(_EOI, start + 2)
        if end < 0:
            del buf[:start]
            return frames
        frames.append(bytes(buf[start:end + 2]))
        del buf[:end + 2]


def _drain_stderr(pipe, label="ffmpeg"):
    """Drain stderr in the background so ffmpeg never blocks on it."""
    try:
        for line in pipe:
            text = line.decode('utf-8', errors='replace').rstrip()
            if text:
                log_error(f"[Screen] {label}: {text}")
    except (OSError, ValueError):
        pass
    finally:
        try:
            pipe.close()
        except Exception as e:
            log_debug(f"[Screen] stderr pipe close error: {e}")


class FfmpegScreenSource(ScreenSource):
    def __init__(self, fps: int = DEFAULT_FPS, quality: int = DEFAULT_QUALITY):
        self.fps = clamp_fps(fps)
        self.quality = quality
        self.width, self.height = 0, 0
        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._latest: Optional[bytes] = None
        self._mouse = None

    def start(self):
        if self._proc is not None and self._proc.poll() is None:
            return
        self.width, self.height = detect_screen_size()
        display = os.environ.get('DISPLAY', ':0') if PLATFORM == 'linux' else None
        cmd = build_ffmpeg_cmd(self.width, self.height, self.fps, self.quality, display)
        popen_kwargs = dict(stdout=subprocess.PIPE, stderr=subprocess.PIPE, bufsize=0)
        if PLATFORM == 'windows':
            popen_kwargs['creationflags'] = 0x08000000  # CREATE_NO_WINDOW
        log_info(f"[Screen] Starting ffmpeg capture {self.width}x{self.height}@{self.fps}")
        try:
            self._proc = subprocess.Popen(cmd, **popen_kwargs)
        except OSError as e:
            log_error(f"[Screen] Could not start ffmpeg: {e}")
            self._proc = None
            return
        self._stop.clear()
        threading.Thread(target=_drain_stderr, args=(self._proc.stderr,),
                         daemon=True, name="ffmpeg-stderr").start()
        self._reader = threading.Thread(target=self._read_frames, args=(self._proc.stdout,),
                                        daemon=True, name="ffmpeg-mjpeg")
        self._reader.start()

    def _read_frames(self, pipe):
        buf = bytearray()
        try:
            while not self._stop.is_set():
                chunk = pipe.read(65536)
                if not chunk:
                    break
                buf.extend(chunk)
                frames = split_jpeg_frames(buf)
                if frames:
                    with self._lock:
                        self._latest = frames[-1]
                elif len(buf) > _MAX_BUFFER:
                    log_warning("[Screen] No JPEG boundary in 16MB of output, resetting buffer")
                    buf.clear()
        except (OSError, ValueError) as e:
            log_debug(f"[Screen] reader ended: {e}")
        log_debug("[Screen] ffmpeg output closed")

    def _cursor(self):
        try:
            if self._mouse is None:
                from pynput.mouse import Controller
                self._mouse = Controller()
            x, y = self._mouse.position
            return int(x), int(y)
        except Exception as e:
            log_debug(f"[Screen] cursor position unavailable: {e}")
            return 0, 0

    async def capture(self) -> Optional[ScreenFrame]:
        with self._lock:
            jpeg, self._latest = self._latest, None
        if jpeg is None:
            return None
        cursor_x, cursor_y = self._cursor()
        data = "data:image/jpeg;base64," + base64.b64encode(jpeg).decode('ascii')
        return ScreenFrame(data, self.width, self.height, cursor_x, cursor_y)

    def stop(self):
        self._stop.set()
        proc, self._proc = self._proc, None
        if proc is None:
            return
        try:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=1)
        except Exception as e:
            log_warning(f"[Screen] ffmpeg cleanup error: {e}")
        with self._lock:
            self._latest = None
        log_info("[Screen] ffmpeg capture stopped")
