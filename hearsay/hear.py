"""Listening loop: continuous speech recognition through an external process.

The ListeningLoop keeps one input process (``hear`` by default) running
while a listen handler is registered and nothing is being spoken. Each
transcript line is passed to the handler as a streaming update; once no new
line has arrived for the silence timeout, the last line is delivered again
as the final text of the utterance and the input process is restarted so the
next utterance starts clean.

The loop follows the speech queue:
    - speech started: stop listening (do not transcribe our own voice)
    - gap started: listen for a reply between queued utterances
    - gap ended: stop listening again
    - speech finished: resume continuous listening

Every intentional stop bumps a generation counter. Timers, output lines and
exit notifications carry the generation they were created under and are
ignored once it no longer matches, so an abandoned process can never restart
the loop or leak text into the next utterance.

Usage:
    def on_text(text, stop, is_final):
        if is_final:
            print(text)
            stop()

    loop = ListeningLoop(speech_queue, mute)
    loop.listen(on_text, silence_timeout_ms=2500)

Author:
    Jake Meador <jameador13@gmail.com>
"""

import asyncio
import enum
import logging
from typing import Callable, Optional, Sequence

from .correction import Corrector, PassthroughCorrector
from .mute import MuteState
from .process import ProcessFactory, ProcessHandle
from .say import SpeechQueue

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['ListeningLoop', 'ListenState', 'ListenHandler', 'DEFAULT_SILENCE_MS', 'RESTART_DELAY']

logger = logging.getLogger('hearsay')

DEFAULT_SILENCE_MS = 2500

# Pause before relaunching an input process that exited on its own
RESTART_DELAY = 0.1

ListenHandler = Callable[[str, Callable[[], None], bool], None]


class ListenState(enum.Enum):
    IDLE = 'idle'
    LISTENING = 'listening'
    AWAITING_RESTART = 'awaiting_restart'


class ListeningLoop:
    """Coordinator for the speech recognition process."""

    def __init__(
        self,
        speech: SpeechQueue,
        mute: Optional[MuteState] = None,
        command: Sequence[str] = ('hear',),
        corrector: Optional[Corrector] = None,
        spawn: ProcessFactory = ProcessHandle,
    ) -> None:
        self.speech = speech
        self.mute = mute if mute is not None else MuteState()
        self.command = list(command)
        self.corrector = corrector if corrector is not None else PassthroughCorrector()
        self.spawn = spawn

        self.state = ListenState.IDLE
        self.active_process: Optional[ProcessHandle] = None
        self.handler: Optional[ListenHandler] = None
        self.silence_timeout_ms: float = DEFAULT_SILENCE_MS
        self.last_transcript: str = ''
        self.should_continue: bool = False
        self.in_gap: bool = False
        self.suppressed: bool = speech.speaking
        self.generation: int = 0

        self._silence_timer: Optional[asyncio.TimerHandle] = None
        self._restart_handle: Optional[asyncio.Handle] = None
        self._unregister_gap: list[Callable[[], None]] = []
        self._unregister = [
            speech.on_started.on(self._on_speech_started),
            speech.on_finished.on(self._on_speech_finished),
            self.mute.on_change.on(self._on_mute_changed),
        ]

    @property
    def listening(self) -> bool:
        return self.state is ListenState.LISTENING

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def listen(self, handler: Optional[ListenHandler], silence_timeout_ms: float = DEFAULT_SILENCE_MS) -> None:
        """Start listening, swap the handler, or stop (handler=None/False).

        Calling again while listening replaces the handler without restarting
        the input process. The silence timer is re-armed only when the
        timeout changed. While speech is playing, listening starts once the
        speech queue finishes.
        """
        if not handler:
            self.stop()
            return

        timeout_changed = silence_timeout_ms != self.silence_timeout_ms
        self.silence_timeout_ms = silence_timeout_ms
        self.handler = handler

        if not self._unregister_gap:
            self._unregister_gap = [
                self.speech.gap.on_start.on(self._on_gap_started),
                self.speech.gap.on_end.on(self._on_gap_ended),
            ]

        if self.active_process is not None:
            logger.debug('[hear] Hot-swapping handler')
            if timeout_changed:
                self._arm_silence_timer()
            return

        if self.speech.speaking and not self.in_gap:
            logger.debug('[hear] Speech active, waiting for it to finish')
            return

        if self.mute.muted:
            logger.debug('[hear] Muted, waiting for unmute')
            return

        self._start_listening()

    def stop(self) -> None:
        """Stop listening and forget the handler."""
        logger.debug('[hear] Stopping')
        self.should_continue = False
        self.handler = None
        self._halt_process()

        for unregister in self._unregister_gap:
            unregister()
        self._unregister_gap = []

    def close(self) -> None:
        """Stop listening and detach from the speech queue and mute state."""
        self.stop()
        for unregister in self._unregister:
            unregister()
        self._unregister = []

    def kill_now(self) -> None:
        """Kill the input process immediately (interpreter shutdown)."""
        if self.active_process is not None:
            self.active_process.kill_now()

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def _on_speech_started(self) -> None:
        logger.debug(f'[hear] Speech started (listening: {self.active_process is not None})')
        self.suppressed = True
        self._halt_process()

    def _on_speech_finished(self) -> None:
        logger.debug(f'[hear] Speech finished (handler: {self.handler is not None})')
        self.suppressed = False
        self.in_gap = False
        self.last_transcript = ''
        if self.handler is not None and self.active_process is None:
            self._request_start()

    def _on_gap_started(self) -> None:
        logger.debug(f'[hear] Gap started (handler: {self.handler is not None})')
        self.in_gap = True
        self.last_transcript = ''
        if self.handler is not None and self.active_process is None:
            self._request_start(during_speech=True)

    def _on_gap_ended(self) -> None:
        logger.debug(f'[hear] Gap ended (listening: {self.active_process is not None})')
        self.in_gap = False
        self._halt_process()

    def _on_mute_changed(self, muted: bool) -> None:
        if muted:
            self._halt_process()
        elif self.handler is not None and self.active_process is None:
            if not self.speech.speaking or self.in_gap:
                self._request_start(during_speech=self.in_gap)

    # ------------------------------------------------------------------
    # Process management
    # ------------------------------------------------------------------

    def _request_start(self, during_speech: bool = False, delay: float = 0.0) -> None:
        """Schedule a (re)start guarded by the current generation."""
        self._cancel_restart()
        self.state = ListenState.AWAITING_RESTART
        generation = self.generation
        loop = asyncio.get_running_loop()
        if delay > 0:
            self._restart_handle = loop.call_later(delay, self._restart_if_current, generation, during_speech)
        else:
            self._restart_handle = loop.call_soon(self._restart_if_current, generation, during_speech)

    def _restart_if_current(self, generation: int, during_speech: bool) -> None:
        self._restart_handle = None
        blocked = (
            generation != self.generation
            or self.handler is None
            or self.active_process is not None
            or self.mute.muted
            or (self.speech.speaking and not (during_speech and self.in_gap))
        )
        if blocked:
            logger.debug('[hear] Restart skipped (stale or blocked)')
            if self.state is ListenState.AWAITING_RESTART:
                self.state = ListenState.IDLE
            return
        self._start_listening()

    def _start_listening(self) -> None:
        logger.debug('[hear] Starting input process')
        self._cancel_restart()
        self.last_transcript = ''
        self.should_continue = True
        self.corrector.reset_cache()

        generation = self.generation
        handle = self.spawn(
            self.command,
            on_line=lambda line: self._on_line(generation, line),
            on_exit=lambda proc: self._on_exit(generation, proc),
            name='hear',
        )
        self.active_process = handle
        self.state = ListenState.LISTENING
        handle.start()

        # Covers an input process that never prints anything
        self._arm_silence_timer()

    def _halt_process(self) -> None:
        """Abandon the current input process (and any pending restart)."""
        self.generation += 1
        self._cancel_restart()
        self._clear_silence_timer()
        self.last_transcript = ''

        if self.active_process is not None:
            self.active_process.terminate()
            self.active_process = None
            logger.debug('[hear] Input process stopped')
        self.state = ListenState.IDLE

    def _relaunch(self) -> None:
        """Replace the input process right away for the next utterance."""
        self.generation += 1
        self._clear_silence_timer()
        if self.active_process is not None:
            self.active_process.terminate()
            self.active_process = None
        self._start_listening()

    def _on_line(self, generation: int, line: str) -> None:
        if generation != self.generation:
            return

        self.last_transcript = line
        self._arm_silence_timer()

        if self.handler is not None and not self._output_blocked():
            self._call_handler(self.corrector.correct(line, False), False)

    def _on_exit(self, generation: int, handle: ProcessHandle) -> None:
        if generation != self.generation:
            return

        logger.debug(f'[hear] Input process exited on its own (code: {handle.returncode})')
        if self.active_process is handle:
            self.active_process = None
        self._clear_silence_timer()
        self.state = ListenState.IDLE

        if handle.spawn_failed:
            return
        if self.should_continue and self.handler is not None:
            self._request_start(during_speech=self.in_gap, delay=RESTART_DELAY)

    # ------------------------------------------------------------------
    # Silence detection
    # ------------------------------------------------------------------

    def _arm_silence_timer(self) -> None:
        self._clear_silence_timer()
        generation = self.generation
        self._silence_timer = asyncio.get_running_loop().call_later(
            self.silence_timeout_ms / 1000, self._on_silence, generation
        )

    def _clear_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None

    def _on_silence(self, generation: int) -> None:
        self._silence_timer = None
        if generation != self.generation:
            return

        if not self.last_transcript or self.handler is None:
            if self.handler is not None and self.active_process is not None:
                self._arm_silence_timer()
            return

        text = self.last_transcript
        self.last_transcript = ''
        logger.debug(f'[hear] Silence: final "{text}"')

        if self.should_continue and self.active_process is not None:
            self._relaunch()

        if self._output_blocked():
            logger.debug('[hear] Final text discarded (muted)')
            return

        self._call_handler(self.corrector.correct(text, True), True)

        if self.in_gap:
            logger.debug('[hear] Reply captured, ending gap early')
            self.speech.gap.signal_complete()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _output_blocked(self) -> bool:
        return self.mute.muted or (self.suppressed and not self.in_gap)

    def _call_handler(self, text: str, is_final: bool) -> None:
        handler = self.handler
        if handler is None:
            return
        try:
            handler(text, self.stop, is_final)
        except Exception as e:
            logger.error(f'[hear] Listen handler error: {e}')
            logger.debug('Listen handler error details:', exc_info=True)

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
