"""Newline framing for transcript streams."""

import codecs
from typing import Callable, Union

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['LineParser']


class LineParser:
    """Accumulate stream chunks and hand complete, non-blank lines to a callback.

    Partial lines (and multi-byte characters split across chunks) stay
    buffered until the rest arrives. Blank lines are dropped; other lines are
    passed on without their line terminator.
    """

    def __init__(self, on_line: Callable[[str], None], encoding: str = 'utf-8') -> None:
        self.on_line = on_line
        self._decoder = codecs.getincrementaldecoder(encoding)(errors='replace')
        self._buffer = ''

    def feed(self, chunk: Union[bytes, str]) -> None:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        lines = self._buffer.split('\n')
        self._buffer = lines.pop()

        for line in lines:
            line = line.rstrip('\r')
            if line.strip():
                self.on_line(line)

    def flush(self) -> None:
        """Emit whatever is left in the buffer (stream closed without a newline)."""
        rest = self._buffer + self._decoder.decode(b'', final=True)
        self._buffer = ''
        rest = rest.rstrip('\r')
        if rest.strip():
            self.on_line(rest)

    __call__ = feed
