"""Shared fixtures: fake actuators, fake transports and worker processes."""

import asyncio
import os
import sys

import pytest

import remote_common
from remote_common import Result
from sessions import TransportKind
from worker_process import WorkerState

FAKE_WORKER = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_worker.py")


@pytest.fixture(scope="session", autouse=True)
def _test_logging(tmp_path_factory):
    """Keep test runs out of the repo's logs/ directory."""
    remote_common.setup_logging("keymote-test", log_dir=str(tmp_path_factory.mktemp("logs")))


class RecordingWorker:
    """In-process stand-in for WorkerProcessManager."""

    def __init__(self, name="fake", result=None):
        self.name = name
        self.result = result if result is not None else Result.ok()
        self.payloads = []
        self.stopped = False
        self.state = WorkerState.READY

    async def submit(self, payload):
        self.payloads.append(payload)
        return self.result

    async def stop(self):
        self.stopped = True


class FakeTransport:
    """Transport double: records what was sent, feeds queued inbound text."""

    def __init__(self, kind=TransportKind.SOCKET, remote_addr="192.168.1.20", fail_send=False):
        self.kind = kind
        self.remote_addr = remote_addr
        self.fail_send = fail_send
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    @property
    def is_open(self):
        return not self.closed

    async def send(self, obj):
        from remote_common import TransportError
        if self.fail_send or self.closed:
            raise TransportError("fake send failure")
        self.sent.append(obj)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def feed(self, raw):
        self._inbox.put_nowait(raw)

    async def incoming(self):
        while True:
            raw = await self._inbox.get()
            if raw is None:
                return
            yield raw

    def of_type(self, msg_type):
        return [m for m in self.sent if m.get("type") == msg_type]


@pytest.fixture
def recording_worker():
    return RecordingWorker


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
async def make_worker(tmp_path):
    """Factory for WorkerProcessManagers running tests/fake_worker.py."""
    from worker_process import WorkerProcessManager

    managers = []

    def factory(mode="ok", arg=None, log_file=None, **kwargs):
        argv = [sys.executable, FAKE_WORKER, mode]
        if arg is not None:
            argv.append(str(arg))
        env = dict(os.environ)
        if log_file is not None:
            env["FAKE_WORKER_LOG"] = str(log_file)
        kwargs.setdefault("response_timeout", 5.0)
        kwargs.setdefault("ready_timeout", 10.0)
        kwargs.setdefault("restart_delay", 0.05)
        manager = WorkerProcessManager(mode, argv, env=env, **kwargs)
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        await manager.stop()
