"""FrameBroadcaster loop and the ffmpeg MJPEG helpers."""

import asyncio
import threading

import pytest

from frame_broadcaster import (
    FrameBroadcaster, ScreenFrame, ScreenSource, build_ffmpeg_cmd, clamp_fps,
    jpeg_qscale, split_jpeg_frames,
)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"


class FakeRouter:
    def __init__(self):
        self.broadcasts = []

    async def broadcast(self, obj):
        self.broadcasts.append(obj)
        return 1


class CountingSource(ScreenSource):
    def __init__(self, frames=True, fail=False):
        self.frames = frames
        self.fail = fail
        self.started = 0
        self.stopped = 0
        self.stop_threads = []
        self.captures = 0

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1
        self.stop_threads.append(threading.get_ident())

    async def capture(self):
        self.captures += 1
        if self.fail:
            raise OSError("display went away")
        if not self.frames:
            return None
        return ScreenFrame(f"data:image/jpeg;base64,{self.captures}", 800, 600, 1, 2)


class TestHelpers:
    def test_clamp_fps(self):
        assert clamp_fps(0) == 1
        assert clamp_fps(5) == 5
        assert clamp_fps(120) == 30

    def test_jpeg_qscale(self):
        assert jpeg_qscale(100) == 2
        assert jpeg_qscale(1) == 31
        assert jpeg_qscale(60) == 14
        assert jpeg_qscale(500) == 2

    def test_split_complete_and_partial_frames(self):
        first = SOI + b"one" + EOI
        second = SOI + b"two" + EOI
        buf = bytearray(b"noise" + first + second + SOI + b"part")

        frames = split_jpeg_frames(buf)

        assert frames == [first, second]
        assert bytes(buf) == SOI + b"part"

    def test_split_keeps_trailing_marker_byte(self):
        buf = bytearray(b"garbage\xff")
        assert split_jpeg_frames(buf) == []
        assert bytes(buf) == b"\xff"
        buf.extend(b"\xd8abc" + EOI)
        assert split_jpeg_frames(buf) == [SOI + b"abc" + EOI]

    def test_ffmpeg_cmd_linux(self):
        cmd = build_ffmpeg_cmd(1920, 1080, 5, quality=60, display=":1", plat="linux")
        assert cmd[:2] == ["ffmpeg", "-nostdin"]
        assert cmd[cmd.index("-f") + 1] == "x11grab"
        assert cmd[cmd.index("-video_size") + 1] == "1920x1080"
        assert cmd[cmd.index("-i") + 1] == ":1"
        assert cmd[cmd.index("-q:v") + 1] == "14"
        assert cmd[-1] == "pipe:1"

    def test_ffmpeg_cmd_windows(self):
        cmd = build_ffmpeg_cmd(2560, 1440, 10, plat="windows")
        assert "gdigrab" in cmd
        assert cmd[cmd.index("-i") + 1] == "desktop"
        assert cmd[cmd.index("-framerate") + 1] == "10"

    def test_ffmpeg_cmd_unsupported(self):
        with pytest.raises(RuntimeError):
            build_ffmpeg_cmd(800, 600, 5, plat="plan9")


class TestBroadcaster:
    async def test_tick_broadcasts_frame(self):
        router = FakeRouter()
        broadcaster = FrameBroadcaster(router, CountingSource(), fps=5)
        assert await broadcaster.tick() is True
        frame = router.broadcasts[0]
        assert frame["type"] == "screen-frame"
        assert (frame["width"], frame["height"]) == (800, 600)
        assert broadcaster.frames_sent == 1

    async def test_no_frame_no_broadcast(self):
        router = FakeRouter()
        assert await FrameBroadcaster(router, CountingSource(frames=False)).tick() is False
        assert await FrameBroadcaster(router, None).tick() is False
        assert router.broadcasts == []

    async def test_capture_error_is_contained(self):
        router = FakeRouter()
        broadcaster = FrameBroadcaster(router, CountingSource(fail=True))
        assert await broadcaster.tick() is False
        assert router.broadcasts == []

    async def test_start_is_idempotent_and_stop_is_final(self):
        router = FakeRouter()
        source = CountingSource()
        broadcaster = FrameBroadcaster(router, source, fps=30)

        assert broadcaster.start() is True
        assert broadcaster.start() is False
        await asyncio.sleep(0.2)
        await broadcaster.stop()

        sent = len(router.broadcasts)
        assert sent >= 1
        assert source.started == 1
        assert source.stopped == 1
        assert not broadcaster.is_running()

        await asyncio.sleep(0.1)
        assert len(router.broadcasts) == sent

    async def test_source_stop_runs_off_the_loop(self):
        source = CountingSource()
        broadcaster = FrameBroadcaster(FakeRouter(), source, fps=30)
        broadcaster.start()
        await broadcaster.stop()
        assert source.stopped == 1
        assert source.stop_threads[0] != threading.get_ident()

    async def test_stop_when_not_running(self):
        source = CountingSource()
        broadcaster = FrameBroadcaster(FakeRouter(), source)
        await broadcaster.stop()
        assert source.stopped == 0

    async def test_handle_request(self):
        broadcaster = FrameBroadcaster(FakeRouter(), CountingSource(), fps=10)
        await broadcaster.handle_request("start")
        assert broadcaster.is_running()
        await broadcaster.handle_request("stop")
        assert not broadcaster.is_running()

    async def test_set_fps_clamps(self):
        broadcaster = FrameBroadcaster(FakeRouter(), fps=500)
        assert broadcaster.fps == 30
        broadcaster.set_fps(0)
        assert broadcaster.fps == 1
