"""Transcript correction hook.

Speech recognizers tend to mangle project specific vocabulary. A corrector can
be plugged into the listening loop to rewrite transcript lines before they
reach the listen handler. The correction engine itself lives outside hearsay;
this module only defines the interface and a passthrough default.
"""

from typing import Protocol, runtime_checkable

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['Corrector', 'PassthroughCorrector']


@runtime_checkable
class Corrector(Protocol):
    def correct(self, text: str, is_final: bool) -> str:
        """Return corrected text for a streaming (is_final=False) or final line."""
        ...

    def reset_cache(self) -> None:
        """Drop per-utterance caches. Called when a new listening session starts."""
        ...


class PassthroughCorrector:
    """Corrector that returns text unchanged."""

    def correct(self, text: str, is_final: bool) -> str:
        return text

    def reset_cache(self) -> None:
        pass
