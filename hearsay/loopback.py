"""Speaker to microphone loopback.

Speaks text through the speech queue while an independent input process
listens, and returns what was transcribed. Useful for checking recognition
accuracy end to end. The input process here is not managed by the listening
loop, so it keeps running while speech plays.

Author:
    Jake Meador <jameador13@gmail.com>
"""

import asyncio
import logging
from typing import Callable, Optional, Sequence

from .process import ProcessFactory, ProcessHandle
from .say import SpeechQueue

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['loopback', 'DEFAULT_LOOPBACK_SILENCE_MS']

logger = logging.getLogger('hearsay')

DEFAULT_LOOPBACK_SILENCE_MS = 1800


async def loopback(
    speech: SpeechQueue,
    text: str,
    silence_timeout_ms: float = DEFAULT_LOOPBACK_SILENCE_MS,
    on_line: Optional[Callable[[str, bool], None]] = None,
    command: Sequence[str] = ('hear',),
    spawn: ProcessFactory = ProcessHandle,
) -> str:
    """Speak ``text`` and return the transcript heard meanwhile.

    The silence window only starts once speech has finished; each new line
    re-arms it. ``on_line`` receives every line with is_final=False and the
    result with is_final=True.

    Returns:
        Last transcribed line, or an empty string if nothing was heard or the
        input process could not be started.
    """
    loop = asyncio.get_running_loop()
    result: asyncio.Future = loop.create_future()
    last_text = ''
    speech_done = False
    timer: Optional[asyncio.TimerHandle] = None

    def notify(line: str, is_final: bool) -> None:
        if on_line is None:
            return
        try:
            on_line(line, is_final)
        except Exception as e:
            logger.error(f'[loopback] Line callback error: {e}')

    def cancel_timer() -> None:
        nonlocal timer
        if timer is not None:
            timer.cancel()
            timer = None

    def finish() -> None:
        if result.done():
            return
        cancel_timer()
        logger.debug(f'[loopback] Heard: "{last_text}"')
        notify(last_text, True)
        result.set_result(last_text)

    def arm_timer() -> None:
        nonlocal timer
        cancel_timer()
        if speech_done:
            timer = loop.call_later(silence_timeout_ms / 1000, finish)

    def handle_line(line: str) -> None:
        nonlocal last_text
        if result.done():
            return
        last_text = line
        arm_timer()
        notify(line, False)

    def handle_exit(proc: ProcessHandle) -> None:
        if result.done():
            return
        cancel_timer()
        if proc.spawn_failed:
            logger.debug('[loopback] Input process unavailable, stopping speech')
            speech.halt()
            result.set_result('')
        else:
            logger.debug('[loopback] Input process exited early')
            result.set_result(last_text)

    def handle_spoken(_: asyncio.Future) -> None:
        nonlocal speech_done
        speech_done = True
        if not result.done():
            arm_timer()

    handle = spawn(list(command), on_line=handle_line, on_exit=handle_exit, name='loopback').start()
    speech.speak(text).add_done_callback(handle_spoken)

    try:
        return await result
    finally:
        cancel_timer()
        if not handle.exited:
            await handle.terminate()
