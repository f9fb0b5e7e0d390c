"""Mute flag for speech recognition output."""

import logging

from .listeners import ListenerRegistry

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['MuteState']

logger = logging.getLogger('hearsay')


class MuteState:
    """Process-lifetime mute flag.

    While muted the listening loop stops its input process and never emits
    transcript events. Listeners on ``on_change`` receive the new value and
    only fire when the value actually changes.
    """

    def __init__(self, muted: bool = False) -> None:
        self._muted = muted
        self.on_change = ListenerRegistry('mute-changed')

    @property
    def muted(self) -> bool:
        return self._muted

    def set_muted(self, enabled: bool) -> None:
        enabled = bool(enabled)
        if enabled == self._muted:
            return
        self._muted = enabled
        logger.info(f'[hear] {"Muted" if enabled else "Unmuted"}')
        self.on_change.emit(enabled)

    def __bool__(self) -> bool:
        return self._muted
