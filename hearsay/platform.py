"""Platform and external binary checks.

hearsay drives two external command line tools: an output process that speaks
text (``say`` by default) and an input process that prints transcript lines
(``hear`` by default). Both ship on, or are built for, macOS. Missing tools are
reported once through the logger and never raise.

Author:
    Jake Meador <jameador13@gmail.com>
"""

import logging
import shutil
import sys
from typing import Optional

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['check_platform', 'check_binary', 'warn_missing_binary', 'reset_warnings']

logger = logging.getLogger('hearsay')

INSTALL_HINTS = {
    'hear': 'Install with: brew install hear (see https://sveinbjorn.org/hear)',
}

_warned: set[str] = set()
_available: dict[str, bool] = {}


def check_platform() -> bool:
    """Return True on macOS, warning once on any other platform."""
    is_macos = sys.platform == 'darwin'
    if not is_macos and 'platform' not in _warned:
        _warned.add('platform')
        logger.warning(f'hearsay is built for macOS speech tools. Current platform: {sys.platform}')
    return is_macos


def check_binary(name: str) -> bool:
    """Return True if ``name`` resolves on PATH. Results are cached per name."""
    if name not in _available:
        _available[name] = shutil.which(name) is not None
    if not _available[name]:
        warn_missing_binary(name)
    return _available[name]


def warn_missing_binary(name: str, error: Optional[BaseException] = None) -> None:
    """Log a single warning per executable that could not be launched."""
    if name in _warned:
        logger.debug(f'[process] {name} unavailable: {error}')
        return
    _warned.add(name)
    detail = f' ({error})' if error else ''
    logger.warning(f'"{name}" command not found{detail}')
    if hint := INSTALL_HINTS.get(name):
        logger.warning(hint)


def reset_warnings() -> None:
    """Forget previous warnings and lookups (mostly useful in tests)."""
    _warned.clear()
    _available.clear()
