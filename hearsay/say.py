"""Speech queue: ordered text-to-speech output through an external process.

The SpeechQueue owns everything waiting to be spoken and drains it one
utterance at a time, launching the output command (``say`` by default) for
each. Four ways of submitting text are supported:

    - enqueue: append to the queue (FIFO)
    - enqueue_latest: status style updates, only the newest queued one survives
    - polite_interrupt: jump the queue once the current utterance has finished
    - rude_interrupt: cut the current utterance off and speak now; the
      interrupted text is spoken again right afterwards

Between queued items a turn-taking gap is opened so the listening loop can
capture a reply. Before each launch the speech rate is scaled with the
backlog and text repeated from the previous utterance is trimmed away.

Every submission returns an asyncio future that resolves once with True
(serviced) or False (superseded, cleared or halted before it was spoken).

Usage:
    queue = SpeechQueue()
    await queue.enqueue('Build started')
    queue.enqueue_latest('Processing file: 1 of 100')
    queue.rude_interrupt('Tests failed!')
    queue.halt()

Author:
    Jake Meador <jameador13@gmail.com>
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from .gap import DEFAULT_GAP_MS, GapProtocol
from .listeners import ListenerRegistry
from .process import ProcessFactory, ProcessHandle
from .shaping import calculate_rate, reduce_repetition

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['SpeechQueue', 'QueueEntry', 'PendingInterrupt', 'SayStatus', 'MAX_RESCHEDULED']

logger = logging.getLogger('hearsay')

# Upper bound on interrupted utterances waiting to be spoken again
MAX_RESCHEDULED = 3


@dataclass(eq=False)
class QueueEntry:
    """One utterance and the future its caller is waiting on."""

    text: str
    completion: asyncio.Future
    latest: bool = False
    rescheduled: bool = False

    def complete(self, spoken: bool) -> None:
        if not self.completion.done():
            self.completion.set_result(spoken)


@dataclass(eq=False)
class PendingInterrupt(QueueEntry):
    clear_queue: bool = False


@dataclass
class SayStatus:
    """Snapshot of the queue internals, for diagnostics only."""

    processing_queue: bool
    speaking: bool
    queue_length: int
    has_pending_interrupt: bool
    has_active_process: bool
    last_spoken: str = field(default='')


class SpeechQueue:
    """Sequential text-to-speech queue with interruption modes."""

    def __init__(
        self,
        command: Sequence[str] = ('say',),
        voice: str = '',
        min_rate: int = 200,
        max_rate: int = 300,
        word_plateau: int = 30,
        gap_ms: float = DEFAULT_GAP_MS,
        repeat_reduction: bool = True,
        spawn: ProcessFactory = ProcessHandle,
    ) -> None:
        """Initialize an idle queue.

        Args:
            command: Output command; rate, voice and text are appended per utterance
            voice: Voice name passed with -v (empty for the system default)
            min_rate: Words per minute with an empty backlog
            max_rate: Words per minute once word_plateau words are outstanding
            word_plateau: Backlog size (in words) at which the rate saturates
            gap_ms: Turn-taking gap between queued items (0 disables)
            repeat_reduction: Trim text shared with the previous utterance
            spawn: Factory creating process handles (ProcessHandle signature)
        """
        self.command = list(command)
        self.voice = voice
        self.min_rate = min_rate
        self.max_rate = max_rate
        self.word_plateau = word_plateau
        self.repeat_reduction = repeat_reduction
        self.spawn = spawn

        self.queue: list[QueueEntry] = []
        self.pending_interrupt: Optional[PendingInterrupt] = None
        self.latest_entry: Optional[QueueEntry] = None

        self.speaking: bool = False
        self.processing_queue: bool = False
        self.active_process: Optional[ProcessHandle] = None
        self.last_spoken: str = ''
        self.generation: int = 0

        self.gap = GapProtocol(gap_ms)
        self.on_started = ListenerRegistry('speech-started')
        self.on_finished = ListenerRegistry('speech-finished')

        self._current: Optional[QueueEntry] = None
        self._drain_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def speak(
        self,
        text: Union[str, bool, None],
        *,
        interrupt: bool = False,
        clear: bool = False,
        rude: bool = False,
        latest: bool = False,
    ) -> asyncio.Future:
        """Submit text with combinable interruption flags.

        Passing False (or None) instead of text halts all speech. ``clear``
        on its own implies a polite interrupt that empties the queue first.
        """
        if text is False or text is None:
            self.halt()
            return self._resolved(False)
        if text == '':
            return self._resolved(False)

        if rude:
            return self.rude_interrupt(text, clear_queue=clear, latest=latest)
        if interrupt or clear:
            return self.polite_interrupt(text, clear_queue=clear, latest=latest)
        if latest:
            return self.enqueue_latest(text)
        return self.enqueue(text)

    def enqueue(self, text: str) -> asyncio.Future:
        """Append text to the end of the queue."""
        if not text:
            return self._resolved(False)
        self._heal()

        entry = QueueEntry(text, self._new_future())
        self.queue.append(entry)
        logger.debug(f'[say] Queued: {text[:60]} (position {len(self.queue)})')
        self._start_drain()
        return entry.completion

    def enqueue_latest(self, text: str) -> asyncio.Future:
        """Queue a status update that replaces any not-yet-spoken previous one.

        If the latest slot still holds an unspoken entry, its text is replaced
        in place (keeping its position) and its old future resolves False.
        """
        if not text:
            return self._resolved(False)
        self._heal()

        entry = self.latest_entry
        if entry is not None:
            logger.debug(f'[say] Latest replaces: {entry.text[:60]}')
            entry.complete(False)
            entry.text = text
            entry.completion = self._new_future()
        else:
            entry = QueueEntry(text, self._new_future(), latest=True)
            self.queue.append(entry)
            self.latest_entry = entry

        self._start_drain()
        return entry.completion

    def polite_interrupt(self, text: str, clear_queue: bool = False, latest: bool = False) -> asyncio.Future:
        """Speak text as soon as the current utterance ends.

        Only one polite interrupt can wait at a time; a newer one supersedes
        it. With ``clear_queue`` the rest of the queue is dropped when the
        interrupt is serviced.
        """
        if not text:
            return self._resolved(False)
        self._heal()

        if self.pending_interrupt is not None:
            logger.debug(f'[say] Superseding interrupt: {self.pending_interrupt.text[:60]}')
            self._drop_pending_interrupt()
        if latest:
            self._drop_latest()

        entry = PendingInterrupt(text, self._new_future(), latest=latest, clear_queue=clear_queue)
        self.pending_interrupt = entry
        if latest:
            self.latest_entry = entry

        self._start_drain()
        return entry.completion

    def rude_interrupt(self, text: str, clear_queue: bool = False, latest: bool = False) -> asyncio.Future:
        """Cut off the current utterance and speak text immediately.

        The interrupted text is queued again right after ``text`` so it is not
        lost; its caller's future stays pending until that copy is spoken (or
        dropped). Any waiting polite interrupt is dropped; the rest of the queue is
        kept unless ``clear_queue`` is set.
        """
        if not text:
            return self._resolved(False)
        self._heal()

        interrupted = None
        if self.active_process is not None and self._current is not None:
            interrupted = self._current
            logger.debug(f'[say] Rude: interrupted "{interrupted.text[:60]}"')

        self._disrupt()
        if clear_queue:
            self._clear_queue()
        if self.pending_interrupt is not None:
            self._drop_pending_interrupt()
        if latest:
            self._drop_latest()

        self.speaking = False
        self.processing_queue = False

        entry = QueueEntry(text, self._new_future(), latest=latest)
        if latest:
            self.latest_entry = entry
        self.queue.insert(0, entry)

        if interrupted is not None:
            logger.debug(f'[say] Rude: rescheduling "{interrupted.text[:60]}" after rude text')
            # The caller keeps waiting on the re-queued copy; the cut-off drain
            # resolves a detached future instead
            self.queue.insert(1, QueueEntry(interrupted.text, interrupted.completion, rescheduled=True))
            interrupted.completion = self._new_future()
            self._bound_rescheduled()

        self._start_drain()
        return entry.completion

    def halt(self) -> None:
        """Stop speaking and drop everything queued.

        Every outstanding future resolves False. Emits speech-finished if
        speech was in progress. Calling it again is harmless.
        """
        self._disrupt()
        self._clear_queue()
        if self.pending_interrupt is not None:
            self._drop_pending_interrupt()

        was_speaking = self.speaking
        self.speaking = False
        self.processing_queue = False

        if was_speaking:
            logger.debug('[say] Halted')
            self.on_finished.emit()

    # ------------------------------------------------------------------
    # Settings and diagnostics
    # ------------------------------------------------------------------

    def set_gap_duration(self, ms: float) -> None:
        self.gap.set_duration(ms)

    def set_repeat_reduction(self, enabled: bool) -> None:
        self.repeat_reduction = bool(enabled)

    def signal_gap_complete(self) -> None:
        self.gap.signal_complete()

    def status(self) -> SayStatus:
        return SayStatus(
            processing_queue=self.processing_queue,
            speaking=self.speaking,
            queue_length=len(self.queue),
            has_pending_interrupt=self.pending_interrupt is not None,
            has_active_process=self.active_process is not None,
            last_spoken=self.last_spoken,
        )

    def close(self) -> None:
        """Kill the output process immediately (interpreter shutdown)."""
        if self.active_process is not None:
            self.active_process.kill_now()

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def _start_drain(self) -> None:
        if self.processing_queue:
            return
        if not self.queue and self.pending_interrupt is None:
            return

        self.processing_queue = True
        self.speaking = True
        generation = self.generation
        self.on_started.emit()
        self._drain_task = asyncio.get_running_loop().create_task(self._drain(generation))

    async def _drain(self, generation: int) -> None:
        try:
            while self.queue or self.pending_interrupt is not None:
                if generation != self.generation:
                    return

                if self.pending_interrupt is not None:
                    entry = self.pending_interrupt
                    self.pending_interrupt = None
                    if self.latest_entry is entry:
                        self.latest_entry = None
                    if entry.clear_queue:
                        self._clear_queue()
                else:
                    entry = self.queue.pop(0)
                    if self.latest_entry is entry:
                        self.latest_entry = None

                await self._speak_one(entry)
                # Resolve even when cut off so no caller is left waiting
                entry.complete(generation == self.generation)
                if generation != self.generation:
                    return

                if self.queue or self.pending_interrupt is not None:
                    await self.gap.open()
                    if generation != self.generation:
                        return
        except Exception as e:
            logger.error(f'[say] Error processing speech queue: {e}')
            logger.debug('Speech queue error details:', exc_info=True)
        finally:
            # A newer drain or halt() owns the state once the generation moved on
            if generation == self.generation:
                self.speaking = False
                self.processing_queue = False
                self.on_finished.emit()

    async def _speak_one(self, entry: QueueEntry) -> None:
        """Launch the output process for one entry and wait until it exits."""
        text = entry.text
        to_speak = text

        if self.repeat_reduction and self.last_spoken:
            reduced = reduce_repetition(text, self.last_spoken)
            if reduced is None:
                self.last_spoken = text
                return
            to_speak = reduced

        self.last_spoken = text
        rate = calculate_rate(
            to_speak,
            [queued.text for queued in self.queue],
            min_rate=self.min_rate,
            max_rate=self.max_rate,
            plateau=self.word_plateau,
        )

        argv = [*self.command, '-r', str(rate)]
        if self.voice:
            argv.extend(['-v', self.voice])
        argv.append(to_speak)

        logger.debug(f'[say] exec: {" ".join(argv)}')
        handle = self.spawn(argv, name='say').start()
        self.active_process = handle
        self._current = entry

        try:
            await handle.wait()
        finally:
            if self.active_process is handle:
                self.active_process = None
            if self._current is entry:
                self._current = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _disrupt(self) -> None:
        """Invalidate the running drain and stop the output process."""
        self.generation += 1
        self.gap.cancel()

        if self._current is not None:
            self._current = None
        if self.active_process is not None:
            self.active_process.terminate()
            self.active_process = None

    def _clear_queue(self) -> None:
        for entry in self.queue:
            entry.complete(False)
        self.queue.clear()
        if self.latest_entry is not None and self.latest_entry is not self.pending_interrupt:
            self.latest_entry = None

    def _drop_pending_interrupt(self) -> None:
        entry = self.pending_interrupt
        self.pending_interrupt = None
        entry.complete(False)
        if self.latest_entry is entry:
            self.latest_entry = None

    def _drop_latest(self) -> None:
        """Remove the current latest entry wherever it waits."""
        entry = self.latest_entry
        if entry is None:
            return
        self.latest_entry = None
        if entry is self.pending_interrupt:
            self.pending_interrupt = None
        elif entry in self.queue:
            self.queue.remove(entry)
        entry.complete(False)

    def _bound_rescheduled(self) -> None:
        rescheduled = [entry for entry in self.queue if entry.rescheduled]
        for entry in rescheduled[MAX_RESCHEDULED:]:
            logger.debug(f'[say] Dropping rescheduled text: {entry.text[:60]}')
            self.queue.remove(entry)
            entry.complete(False)

    def _heal(self) -> None:
        """Repair a processing flag left set with nothing left to process."""
        if (self.processing_queue and not self.queue and self.pending_interrupt is None
                and self.active_process is None):
            logger.warning('[say] Self-healing: resetting stuck processing state')
            self.generation += 1
            self.processing_queue = False
            self.speaking = False

    def _new_future(self) -> asyncio.Future:
        return asyncio.get_running_loop().create_future()

    def _resolved(self, value: bool) -> asyncio.Future:
        future = self._new_future()
        future.set_result(value)
        return future
