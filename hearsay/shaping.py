"""Text shaping applied right before an utterance is handed to the output process.

Two transformations:
    - Rate shaping: the speech rate scales linearly with the number of words
      still waiting to be spoken, so long backlogs are read faster.
    - Repetition reduction: consecutive utterances that share a leading or
      trailing part (status lines such as "Processing file: 1 of 100") only
      speak the part that changed.

Embedded control tags such as ``[[slnc 500]]`` or ``[[rate 250]]`` are opaque:
they are never cut in half and never counted as words.

Author:
    Jake Meador <jameador13@gmail.com>
"""

import logging
import math
import re
from typing import Iterable, Optional

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = [
    'CONTROL_TAG_PATTERN',
    'count_words',
    'calculate_rate',
    'reduce_repetition',
    'strip_control_tags',
]

logger = logging.getLogger('hearsay')

CONTROL_TAG_PATTERN = re.compile(r'\[\[[^\[\]]*\]\]')


def strip_control_tags(text: str) -> str:
    return CONTROL_TAG_PATTERN.sub(' ', text)


def count_words(text: str) -> int:
    """Count whitespace separated words, ignoring control tags."""
    return len(strip_control_tags(text).split())


def calculate_rate(
    text: str,
    queued: Iterable[str] = (),
    min_rate: int = 200,
    max_rate: int = 300,
    plateau: int = 30,
) -> int:
    """Pick a speech rate (words per minute) for ``text``.

    The rate grows linearly from ``min_rate`` to ``max_rate`` with the total
    word count of ``text`` plus everything still queued, saturating once
    ``plateau`` words are outstanding.
    """
    queued = list(queued)
    word_count = count_words(text) + sum(count_words(item) for item in queued)
    plateau = max(plateau, 1)
    scale = min(word_count, plateau) / plateau
    rate = math.floor(min_rate + scale * (max_rate - min_rate) + 0.5)
    logger.debug(f'[say] rate={rate} ({word_count} words in {len(queued) + 1} items)')
    return rate


def _is_word(char: str) -> bool:
    return char.isalnum() or char == '_'


def _char(text: str, index: int) -> str:
    return text[index] if 0 <= index < len(text) else ''


def reduce_repetition(new_text: str, last_text: str) -> Optional[str]:
    """Strip the part ``new_text`` shares with ``last_text`` at both ends.

    The common prefix and suffix are measured character by character, then
    moved to word boundaries (never cutting a word or a control tag in half)
    and widened over adjacent punctuation and whitespace. Control tags inside
    the removed parts are kept so rate and volume settings still apply.

    Returns:
        The text left to speak, or None if nothing new remains.

    Examples:
        >>> reduce_repetition('Processing file: 2 of 100', 'Processing file: 1 of 100')
        '2'
        >>> reduce_repetition('Done', 'Done') is None
        True
    """
    length = len(new_text)

    # Common prefix
    prefix = 0
    while prefix < length and prefix < len(last_text) and new_text[prefix] == last_text[prefix]:
        prefix += 1
    while prefix > 0 and _is_word(_char(new_text, prefix - 1)) and _is_word(_char(new_text, prefix)):
        prefix -= 1
    while prefix < length and not _is_word(new_text[prefix]):
        prefix += 1

    # Common suffix, never overlapping the prefix
    suffix = 0
    max_suffix = min(length - prefix, len(last_text) - prefix)
    while suffix < max_suffix and new_text[length - 1 - suffix] == last_text[len(last_text) - 1 - suffix]:
        suffix += 1
    while (suffix > 0 and _is_word(_char(new_text, length - suffix))
           and _is_word(_char(new_text, length - suffix - 1))):
        suffix -= 1
    while suffix < length - prefix and not _is_word(new_text[length - 1 - suffix]):
        suffix += 1

    end = length - suffix
    tags = [(m.start(), m.end()) for m in CONTROL_TAG_PATTERN.finditer(new_text)]
    for start, stop in tags:
        if start < prefix < stop:
            prefix = start
        if start < end < stop:
            end = stop
    end = max(end, prefix)

    middle = new_text[prefix:end].strip()
    if not strip_control_tags(middle).strip():
        logger.debug(f'[say] reduce_repetition: skipping duplicate "{new_text}"')
        return None

    head = [new_text[start:stop] for start, stop in tags if stop <= prefix]
    tail = [new_text[start:stop] for start, stop in tags if start >= end]
    result = ' '.join(head + [middle] + tail)

    if result != new_text:
        logger.debug(f'[say] reduce_repetition: "{new_text}" -> "{result}"')
    return result
