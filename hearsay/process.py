"""Process handle for the external speech tools.

A ProcessHandle owns exactly one spawned command. It is created and started
synchronously so callers can record it as "the active process" right away;
the actual spawn, stdout line streaming and exit watching happen in a
background task on the running event loop.

Termination is graceful first: SIGTERM to the process and its descendants,
then SIGKILL once the grace window has passed. A command that cannot be
spawned at all (missing binary, permission error) is reported once through
the logger and behaves like a process that exited immediately.

Usage:
    handle = ProcessHandle(['hear'], on_line=print, name='hear').start()
    ...
    await handle.terminate()
    returncode = await handle.wait()

Author:
    Jake Meador <jameador13@gmail.com>
"""

import asyncio
import contextlib
import logging
import signal
from typing import Callable, Optional, Sequence

import psutil

from .lines import LineParser
from .platform import warn_missing_binary

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['ProcessHandle', 'ProcessFactory', 'KILL_GRACE_SECONDS']

logger = logging.getLogger('hearsay')

KILL_GRACE_SECONDS = 0.2


class ProcessHandle:
    """One external process with line streaming and graceful termination."""

    def __init__(
        self,
        argv: Sequence[str],
        on_line: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[['ProcessHandle'], None]] = None,
        name: Optional[str] = None,
        grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        """Prepare a process handle without spawning anything yet.

        Args:
            argv: Command and arguments
            on_line: Called with every non-blank stdout line
            on_exit: Called once with this handle after the process has exited
                (or failed to spawn)
            name: Tag used in log messages (defaults to the executable)
            grace: Seconds between SIGTERM and SIGKILL
        """
        if not argv:
            raise ValueError('argv must not be empty')

        self.argv = list(argv)
        self.name = name or self.argv[0]
        self.grace = grace
        self.on_line = on_line
        self.on_exit = on_exit

        self.returncode: Optional[int] = None
        self.spawn_failed: bool = False
        self.stdout_text: str = ''
        self.stderr_text: str = ''

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._spawned: Optional[asyncio.Event] = None
        self._exited: Optional[asyncio.Future] = None
        self._terminating: Optional[asyncio.Task] = None
        self._terminate_requested: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def exited(self) -> bool:
        return self._exited is not None and self._exited.done()

    @property
    def running(self) -> bool:
        return self.started and not self.exited

    @property
    def terminating(self) -> bool:
        return self._terminate_requested

    def start(self) -> 'ProcessHandle':
        """Schedule the spawn on the running loop and return self."""
        if self._task is not None:
            return self

        loop = asyncio.get_running_loop()
        self._spawned = asyncio.Event()
        self._exited = loop.create_future()
        self._task = loop.create_task(self._run())
        return self

    async def wait(self) -> Optional[int]:
        """Wait for exit and return the exit code (None if spawning failed)."""
        if self._exited is None:
            raise RuntimeError(f'{self.name} was never started')
        return await asyncio.shield(self._exited)

    def terminate(self) -> 'asyncio.Future[None]':
        """Stop the process: SIGTERM now, SIGKILL after the grace window.

        Returns an awaitable that completes once the process has exited. The
        call itself never blocks, so it is safe from synchronous event handlers.
        Repeated calls share the same termination task.
        """
        self._terminate_requested = True
        if self._exited is None:
            # Never started: nothing to stop
            loop = asyncio.get_running_loop()
            done = loop.create_future()
            done.set_result(None)
            return done

        if self._terminating is None:
            self._start_terminating()
        return self._terminating

    def kill_now(self) -> None:
        """Synchronously SIGKILL the process tree. Used during interpreter shutdown."""
        self._terminate_requested = True
        if self._proc is None or self._proc.returncode is not None:
            return
        self._signal_tree(signal.SIGKILL)

    def _start_terminating(self) -> None:
        self._terminating = asyncio.get_running_loop().create_task(self._terminate())
        # Failures are logged whether or not anyone awaits the task
        self._terminating.add_done_callback(self._on_terminated)

    def _on_terminated(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            logger.error(f'[process] Error terminating {self.name}: {error}')

    async def _terminate(self) -> None:
        await self._spawned.wait()
        if self._proc is None or self.exited:
            await asyncio.shield(self._exited)
            return

        logger.debug(f'[process] Terminating {self.name} (PID: {self._proc.pid})')
        self._signal_tree(signal.SIGTERM)

        try:
            await asyncio.wait_for(asyncio.shield(self._exited), timeout=self.grace)
        except asyncio.TimeoutError:
            if not self.exited:
                logger.debug(f'[process] {self.name} ignored SIGTERM, killing')
                self._signal_tree(signal.SIGKILL)
            await asyncio.shield(self._exited)

    def _signal_tree(self, sig: int) -> None:
        """Send ``sig`` to the process and every descendant still alive."""
        children: list[psutil.Process] = []
        with contextlib.suppress(psutil.Error):
            children = psutil.Process(self._proc.pid).children(recursive=True)

        with contextlib.suppress(ProcessLookupError):
            self._proc.send_signal(sig)

        for child in children:
            with contextlib.suppress(psutil.Error):
                child.send_signal(sig)

    async def _run(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.spawn_failed = True
            warn_missing_binary(self.argv[0], e)
            self._spawned.set()
            self._finish(None)
            return

        logger.debug(f'[process] Started {self.name} (PID: {self._proc.pid})')
        self._spawned.set()

        if self._terminate_requested and self._terminating is None:
            # terminate() raced the spawn
            self._start_terminating()

        try:
            await asyncio.gather(self._read_stdout(), self._read_stderr())
            returncode = await self._proc.wait()
        except asyncio.CancelledError:
            self.kill_now()
            self._finish(self._proc.returncode)
            raise

        if self.stdout_text and self.on_line is None:
            logger.debug(f'[process] {self.name} stdout: {self.stdout_text.strip()[:500]}')
        if self.stderr_text:
            logger.debug(f'[process] {self.name} stderr: {self.stderr_text.strip()[:500]}')
        logger.debug(f'[process] {self.name} exited (code: {returncode})')
        self._finish(returncode)

    async def _read_stdout(self) -> None:
        parser = LineParser(self._emit_line) if self.on_line else None
        while chunk := await self._proc.stdout.read(4096):
            if parser:
                parser.feed(chunk)
            else:
                self.stdout_text += chunk.decode('utf-8', errors='replace')
        if parser:
            parser.flush()

    async def _read_stderr(self) -> None:
        while chunk := await self._proc.stderr.read(4096):
            self.stderr_text += chunk.decode('utf-8', errors='replace')

    def _emit_line(self, line: str) -> None:
        try:
            self.on_line(line)
        except Exception as e:
            logger.error(f'[process] {self.name} line handler error: {e}')
            logger.debug('Line handler error details:', exc_info=True)

    def _finish(self, returncode: Optional[int]) -> None:
        if self._exited.done():
            return
        self.returncode = returncode
        self._exited.set_result(returncode)
        if self.on_exit is not None:
            try:
                self.on_exit(self)
            except Exception as e:
                logger.error(f'[process] {self.name} exit handler error: {e}')
                logger.debug('Exit handler error details:', exc_info=True)

    def __repr__(self) -> str:
        state = 'exited' if self.exited else 'running' if self.started else 'new'
        return f'<ProcessHandle {self.name} pid={self.pid} {state}>'


ProcessFactory = Callable[..., ProcessHandle]
