"""hearsay main module - turn-taking speech output and recognition.

This module provides the HearSay class that wires the speech queue, the
listening loop and the mute flag together and exposes them as one public
API. Speech output and recognition are delegated to external command line
tools (``say`` and ``hear`` on macOS); hearsay coordinates who talks when.

Features:
    - Queued speech with polite, rude, clearing and "latest wins" submissions
    - Backlog-aware speech rate and trimming of repeated status text
    - Continuous listening that pauses while speaking and resumes afterwards
    - Turn-taking gaps between queued utterances to capture replies
    - Mute flag that silences recognition without losing the handler
    - Loopback mode to measure recognition of our own speech

Usage:
    # Programmatic usage
    from hearsay import HearSay

    async def main():
        hs = HearSay()
        hs.listen(lambda text, stop, final: final and print(text))
        await hs.speak('What is the magic word?')

    # CLI usage
    python -m hearsay say "Hello there" --rude
    python -m hearsay hear --once

Author:
    Jake Meador <jameador13@gmail.com>
"""

import asyncio
import atexit
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union

from . import config
from .correction import Corrector
from .hear import ListenHandler, ListeningLoop
from .loopback import DEFAULT_LOOPBACK_SILENCE_MS, loopback
from .mute import MuteState
from .platform import check_binary, check_platform
from .process import ProcessFactory, ProcessHandle
from .say import SayStatus, SpeechQueue

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['HearSay', 'setup_logging', 'main']

logger = logging.getLogger('hearsay')

EXIT_CODES = {signal.SIGINT: 130, signal.SIGTERM: 143}


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """Configure root logging for CLI use.

    Args:
        debug: Enable debug logging
        log_file: Optional path of a debug log file
    """
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = '%(asctime)s [%(levelname)s] %(message)s'
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('[%(asctime)s.%(msecs)03d] %(message)s', datefmt='%H:%M:%S'))
        log_handlers.append(file_handler)

    logging.basicConfig(level=log_level, format=log_format, handlers=log_handlers, force=True)


class HearSay:
    """Speech output queue plus listening loop with shared lifecycle events."""

    def __init__(
        self,
        config_dict: Optional[dict[str, Any]] = None,
        config_path: Optional[str] = None,
        corrector: Optional[Corrector] = None,
        spawn: ProcessFactory = ProcessHandle,
    ) -> None:
        """Initialize hearsay with configuration.

        Args:
            config_dict: Optional config dictionary merged over the defaults
                (skips config files and environment variables)
            config_path: Optional path to config file (JSON or YAML)
            corrector: Optional transcript corrector for the listening loop
            spawn: Process factory for both external commands
        """
        if config_dict is not None:
            self.config: dict[str, Any] = config.merge_dicts(config.default_config(), config_dict)
            self.config_file: Optional[Path] = None
        else:
            self.config, self.config_file = config.load_config(config_path)

        cfg = self.config
        self.spawn = spawn
        self.silence_timeout_ms: float = cfg['silence_timeout_ms']
        self.hear_command: list[str] = list(cfg['hear_command'])

        self.mute = MuteState()
        self.speech = SpeechQueue(
            command=cfg['say_command'],
            voice=cfg['voice'],
            min_rate=cfg['min_rate'],
            max_rate=cfg['max_rate'],
            word_plateau=cfg['word_plateau'],
            gap_ms=float(cfg['gap_seconds']) * 1000,
            repeat_reduction=cfg['repeat_reduction'],
            spawn=spawn,
        )
        self.hearing = ListeningLoop(
            self.speech,
            self.mute,
            command=self.hear_command,
            corrector=corrector,
            spawn=spawn,
        )

        logger.debug(
            f'Rate: {cfg["min_rate"]}-{cfg["max_rate"]} wpm (plateau {cfg["word_plateau"]} words), '
            f'voice: {cfg["voice"] or "default"}, gap: {cfg["gap_seconds"]}s'
        )

        atexit.register(self._cleanup)

    # ------------------------------------------------------------------
    # Speech output
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
        """Queue text to be spoken; returns a future resolved when it is done.

        Pass False to stop all speech and clear the queue.

        Options:
            interrupt: Skip to be next in queue (waits for current speech, last wins)
            clear: Clear the queue (implies interrupt)
            rude: Cut off current speech immediately; it is rescheduled after this text
            latest: Only the last call with this flag wins
        """
        return self.speech.speak(text, interrupt=interrupt, clear=clear, rude=rude, latest=latest)

    def is_speaking(self) -> bool:
        return self.speech.speaking

    @property
    def last_spoken(self) -> str:
        return self.speech.last_spoken

    def status(self) -> SayStatus:
        return self.speech.status()

    def set_gap_duration(self, ms: float) -> None:
        """Set the pause between queued items in milliseconds (0 disables)."""
        self.speech.set_gap_duration(ms)

    def set_repeat_reduction(self, enabled: bool) -> None:
        self.speech.set_repeat_reduction(enabled)

    def signal_gap_complete(self) -> None:
        """End the current turn-taking gap early."""
        self.speech.signal_gap_complete()

    # ------------------------------------------------------------------
    # Speech recognition
    # ------------------------------------------------------------------

    def listen(self, handler: Union[ListenHandler, bool, None], silence_timeout_ms: Optional[float] = None) -> None:
        """Listen continuously; handler(text, stop, is_final). Pass False to stop."""
        if silence_timeout_ms is None:
            silence_timeout_ms = self.silence_timeout_ms
        self.hearing.listen(handler or None, silence_timeout_ms)

    async def loopback(
        self,
        text: str,
        silence_timeout_ms: float = DEFAULT_LOOPBACK_SILENCE_MS,
        on_line: Optional[Callable[[str, bool], None]] = None,
    ) -> str:
        """Speak text and return what the input process transcribed meanwhile."""
        return await loopback(
            self.speech,
            text,
            silence_timeout_ms=silence_timeout_ms,
            on_line=on_line,
            command=self.hear_command,
            spawn=self.spawn,
        )

    def set_muted(self, enabled: bool) -> None:
        self.mute.set_muted(enabled)

    def is_muted(self) -> bool:
        return self.mute.muted

    # ------------------------------------------------------------------
    # Lifecycle subscriptions
    # ------------------------------------------------------------------

    def on_speech_started(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self.speech.on_started.on(callback)

    def on_speech_finished(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self.speech.on_finished.on(callback)

    def on_gap_started(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback for gaps between queue items (replies can be captured)."""
        return self.speech.gap.on_start.on(callback)

    def on_gap_ended(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self.speech.gap.on_end.on(callback)

    def on_mute_changed(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        return self.mute.on_change.on(callback)

    # ------------------------------------------------------------------
    # Environment and shutdown
    # ------------------------------------------------------------------

    def check_binaries(self) -> dict[str, bool]:
        """Report which external commands can be found (warns once per missing one)."""
        check_platform()
        return {
            self.config['say_command'][0]: check_binary(self.config['say_command'][0]),
            self.hear_command[0]: check_binary(self.hear_command[0]),
        }

    def install_signal_handlers(self) -> None:
        """Terminate external processes on SIGINT/SIGTERM, then exit 130/143."""
        loop = asyncio.get_running_loop()
        for sig in EXIT_CODES:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda signum, frame: self._on_signal(signal.Signals(signum)))

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.debug(f'Received {sig.name}, shutting down')
        self._cleanup()
        sys.exit(EXIT_CODES[sig])

    def shutdown(self) -> None:
        """Stop speaking and listening, terminating every external process."""
        self.hearing.close()
        self.speech.halt()
        atexit.unregister(self._cleanup)

    def _cleanup(self) -> None:
        """Kill external processes without needing a running event loop."""
        self.speech.close()
        self.hearing.kill_now()


def main() -> None:
    """CLI entry point - delegates to __main__.main()."""
    from . import __main__
    __main__.main()


if __name__ == '__main__':
    main()
