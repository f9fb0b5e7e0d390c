"""Tests for the turn-taking gap."""

import asyncio
import time

import pytest

from hearsay.gap import GapProtocol


def _record(gap):
    events = []
    gap.on_start.on(lambda: events.append('start'))
    gap.on_end.on(lambda: events.append('end'))
    return events


@pytest.mark.asyncio
async def test_gap_collapses_without_listeners():
    """Test that a gap nobody listens to returns immediately."""
    gap = GapProtocol(5000)
    ended = []
    gap.on_end.on(lambda: ended.append(True))

    started = time.monotonic()
    assert await gap.open() is False
    assert time.monotonic() - started < 0.5
    assert ended == []


@pytest.mark.asyncio
async def test_gap_disabled_with_zero_duration():
    """Test that a zero duration disables the gap entirely."""
    gap = GapProtocol(0)
    events = _record(gap)

    assert await gap.open() is False
    assert events == []


@pytest.mark.asyncio
async def test_gap_times_out():
    """Test that an unsignalled gap ends after its duration."""
    gap = GapProtocol(50)
    events = _record(gap)

    started = time.monotonic()
    assert await gap.open() is False
    elapsed = time.monotonic() - started

    assert 0.04 <= elapsed < 1.0
    assert events == ['start', 'end']
    assert gap.is_open is False


@pytest.mark.asyncio
async def test_gap_ends_early_on_signal():
    """Test that signal_complete ends the gap before the timer."""
    gap = GapProtocol(5000)
    events = _record(gap)
    gap.on_start.on(lambda: asyncio.get_running_loop().call_later(0.01, gap.signal_complete))

    started = time.monotonic()
    assert await gap.open() is True
    assert time.monotonic() - started < 1.0
    assert events == ['start', 'end']


@pytest.mark.asyncio
async def test_signal_while_closed_is_noop():
    """Test that signalling without an open gap changes nothing."""
    gap = GapProtocol(50)
    events = _record(gap)

    gap.signal_complete()
    assert gap.is_open is False
    assert await gap.open() is False
    assert events == ['start', 'end']


@pytest.mark.asyncio
async def test_set_duration():
    gap = GapProtocol()
    _record(gap)
    gap.set_duration(0)

    assert await gap.open() is False
    assert gap.duration_ms == 0


@pytest.mark.asyncio
async def test_cancel_closes_gap_once():
    """Test that cancel emits the end event immediately and open() does not repeat it."""
    gap = GapProtocol(5000)
    events = _record(gap)

    waiter = asyncio.ensure_future(gap.open())
    await asyncio.sleep(0)
    assert gap.is_open

    gap.cancel()
    assert events == ['start', 'end']
    assert gap.is_open is False

    assert await waiter is False
    assert events == ['start', 'end']


@pytest.mark.asyncio
async def test_cancel_while_closed_is_noop():
    gap = GapProtocol(50)
    events = _record(gap)

    gap.cancel()
    assert events == []
    assert gap.is_open is False
