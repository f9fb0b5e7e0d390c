"""Multi-subscriber event registry for hearsay lifecycle notifications.

Every lifecycle event (speech started/finished, gap started/ended, mute changed)
is published through a ListenerRegistry. Subscribing returns an unregister
callable so callers never need to hold on to the registry itself.

Usage:
    started = ListenerRegistry('speech-started')
    unregister = started.on(lambda: print('speaking'))
    started.emit()
    unregister()

Author:
    Jake Meador <jameador13@gmail.com>
"""

import logging
from typing import Any, Callable

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['ListenerRegistry']

logger = logging.getLogger('hearsay')


class ListenerRegistry:
    """Ordered list of callbacks with opaque unregister handles."""

    def __init__(self, name: str = 'event') -> None:
        self.name = name
        self._listeners: list[Callable[..., Any]] = []

    def on(self, listener: Callable[..., Any]) -> Callable[[], None]:
        """Register a listener, returning a function that removes it again.

        The same callable may be registered more than once; each unregister
        handle removes exactly one registration and is safe to call twice.
        """
        self._listeners.append(listener)
        removed = False

        def unregister() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unregister

    def emit(self, *args: Any) -> None:
        """Call every listener in registration order.

        A failing listener is logged and skipped so the remaining listeners
        still run and the emitting component keeps a consistent state.
        """
        # Snapshot: listeners may unregister themselves while running
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception as e:
                logger.error(f'[{self.name}] Listener error: {e}')
                logger.debug(f'[{self.name}] Listener error details:', exc_info=True)

    def count(self) -> int:
        return len(self._listeners)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
