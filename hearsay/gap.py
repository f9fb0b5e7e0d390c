"""Turn-taking gap between consecutive queued utterances.

While the speech queue still has work, it pauses between items and opens a
gap. Subscribers of ``on_start`` (the listening loop) may capture a reply
during the gap. The gap closes on whichever comes first: the configured
duration elapsing, or ``signal_complete()`` being called because a reply was
captured. ``on_end`` fires in both cases, and also when the gap is cancelled
because the speech queue was halted or rudely interrupted.

Author:
    Jake Meador <jameador13@gmail.com>
"""

import asyncio
import logging
from typing import Optional

from .listeners import ListenerRegistry

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['GapProtocol', 'DEFAULT_GAP_MS']

logger = logging.getLogger('hearsay')

DEFAULT_GAP_MS = 2000


class GapProtocol:
    """Race between a gap timer and an explicit completion signal."""

    def __init__(self, duration_ms: float = DEFAULT_GAP_MS) -> None:
        self.duration_ms = duration_ms
        self.on_start = ListenerRegistry('gap-started')
        self.on_end = ListenerRegistry('gap-ended')
        self._completion: Optional[asyncio.Future] = None

    @property
    def is_open(self) -> bool:
        return self._completion is not None

    def set_duration(self, ms: float) -> None:
        """Set the gap length in milliseconds. Zero or less disables gaps."""
        self.duration_ms = ms

    async def open(self) -> bool:
        """Run one gap to completion.

        Returns:
            True if the gap ended through ``signal_complete()``, False if it timed
            out, was cancelled or collapsed to zero length (disabled, or nobody
            listening).
        """
        if self.duration_ms <= 0 or not self.on_start.count():
            return False

        completion = asyncio.get_running_loop().create_future()
        self._completion = completion
        logger.debug(f'[gap] Opened ({self.duration_ms}ms)')
        self.on_start.emit()

        try:
            await asyncio.wait({completion}, timeout=self.duration_ms / 1000)
        finally:
            signalled = completion.done() and not completion.cancelled()
            # cancel() may already have closed this gap and emitted gap-ended
            if self._completion is completion:
                self._close(completion, 'speech captured' if signalled else 'timeout')

        return signalled

    def signal_complete(self) -> None:
        """End the open gap early. Does nothing if no gap is open."""
        completion = self._completion
        if completion is not None and not completion.done():
            logger.debug('[gap] Completion signalled')
            completion.set_result(None)

    def cancel(self) -> None:
        """Close the open gap right away, emitting gap-ended before returning.

        Used when the drain that opened the gap is disrupted, so subscribers
        see gap-ended ahead of any speech-finished that follows.
        """
        completion = self._completion
        if completion is not None:
            self._close(completion, 'cancelled')

    def _close(self, completion: asyncio.Future, reason: str) -> None:
        if not completion.done():
            completion.cancel()
        self._completion = None
        logger.debug(f'[gap] Closed ({reason})')
        self.on_end.emit()
