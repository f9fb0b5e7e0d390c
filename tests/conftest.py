"""Shared fixtures: an in-memory stand-in for external processes.

FakeProcess mirrors the ProcessHandle interface but never spawns anything.
Tests drive it explicitly: ``emit()`` delivers a stdout line, ``finish()``
reports an exit. ``terminate()`` exits on the next loop iteration, like a
well-behaved process receiving SIGTERM.
"""

import asyncio
from typing import Optional

import pytest

from hearsay import platform


class FakeProcess:
    """Scriptable replacement for hearsay.process.ProcessHandle."""

    def __init__(self, spawner, argv, on_line=None, on_exit=None, name=None, grace=0.2):
        self.spawner = spawner
        self.argv = list(argv)
        self.name = name or self.argv[0]
        self.on_line = on_line
        self.on_exit = on_exit
        self.returncode: Optional[int] = None
        self.spawn_failed = False
        self.terminated = False
        self.killed = False
        self.exit_calls = 0
        self._exited: Optional[asyncio.Future] = None

    @property
    def text(self) -> str:
        return self.argv[-1]

    @property
    def started(self) -> bool:
        return self._exited is not None

    @property
    def exited(self) -> bool:
        return self._exited is not None and self._exited.done()

    @property
    def running(self) -> bool:
        return self.started and not self.exited

    def start(self):
        loop = asyncio.get_running_loop()
        self._exited = loop.create_future()
        self.spawner.processes.append(self)
        if self.spawner.fail:
            self.spawn_failed = True
            loop.call_soon(self.finish, None)
        return self

    async def wait(self):
        return await asyncio.shield(self._exited)

    def terminate(self):
        self.terminated = True
        if self.running:
            asyncio.get_running_loop().call_soon(self.finish, -15)
        return asyncio.ensure_future(self.wait())

    def kill_now(self):
        # Signal only: the exit is reported later through the loop, as with a real process
        self.killed = True

    def emit(self, line: str) -> None:
        self.on_line(line)

    def finish(self, returncode: Optional[int] = 0) -> None:
        if self._exited is None or self._exited.done():
            return
        self.returncode = returncode
        self._exited.set_result(returncode)
        self.exit_calls += 1
        if self.on_exit is not None:
            self.on_exit(self)


class FakeSpawner:
    """Process factory recording every FakeProcess it creates."""

    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.fail = False

    def __call__(self, argv, on_line=None, on_exit=None, name=None, grace=0.2):
        return FakeProcess(self, argv, on_line=on_line, on_exit=on_exit, name=name)

    def named(self, name: str) -> list[FakeProcess]:
        return [proc for proc in self.processes if proc.name == name]

    def running(self, name: str) -> Optional[FakeProcess]:
        running = [proc for proc in self.named(name) if proc.running and not proc.terminated]
        return running[-1] if running else None

    def spoken(self) -> list[str]:
        return [proc.text for proc in self.named('say')]


async def settle(rounds: int = 10) -> None:
    """Let callbacks and tasks scheduled with call_soon run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def speak_all(spawner: FakeSpawner, speech, limit: int = 50) -> None:
    """Finish 'say' processes one at a time until the queue is idle."""
    for _ in range(limit):
        await settle()
        if not speech.processing_queue:
            return
        proc = spawner.running('say')
        if proc is not None:
            proc.finish(0)
    raise AssertionError('speech queue did not drain')


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture(autouse=True)
def reset_platform_warnings():
    platform.reset_warnings()
    yield
    platform.reset_warnings()
