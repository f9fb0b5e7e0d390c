"""Tests for the listening loop and its coordination with the speech queue."""

import asyncio
import logging

import pytest

from conftest import settle, speak_all
from hearsay.hear import RESTART_DELAY, ListeningLoop, ListenState
from hearsay.mute import MuteState
from hearsay.say import SpeechQueue

SILENCE_MS = 40


class Recorder:
    """Listen handler that records every call."""

    def __init__(self, stop_on_final=False):
        self.calls = []
        self.stop_on_final = stop_on_final

    def __call__(self, text, stop, is_final):
        self.calls.append((text, is_final))
        if is_final and self.stop_on_final:
            stop()

    @property
    def finals(self):
        return [text for text, is_final in self.calls if is_final]

    @property
    def partials(self):
        return [text for text, is_final in self.calls if not is_final]


@pytest.fixture
def speech(spawner):
    return SpeechQueue(gap_ms=0, repeat_reduction=False, spawn=spawner)


@pytest.fixture
def mute():
    return MuteState()


@pytest.fixture
def hearing(spawner, speech, mute):
    return ListeningLoop(speech, mute, spawn=spawner)


async def _silence():
    await asyncio.sleep(SILENCE_MS / 1000 * 2.5)


@pytest.mark.asyncio
async def test_listen_starts_input_process(spawner, hearing):
    """Test that registering a handler launches the input command."""
    hearing.listen(Recorder(), SILENCE_MS)

    proc = spawner.running('hear')
    assert proc is not None
    assert proc.argv == ['hear']
    assert hearing.state is ListenState.LISTENING


@pytest.mark.asyncio
async def test_streaming_lines_then_single_final(spawner, hearing):
    """Test that each line streams and silence delivers the last line once as final."""
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS)
    first = spawner.running('hear')

    first.emit('what is')
    first.emit('what is the magic word')
    assert handler.partials == ['what is', 'what is the magic word']

    await _silence()
    await _silence()

    assert handler.finals == ['what is the magic word']
    # Relaunched for the next utterance
    assert first.terminated
    second = spawner.running('hear')
    assert second is not None and second is not first


@pytest.mark.asyncio
async def test_silence_without_text_emits_nothing(spawner, hearing):
    """Test that a silent input process never produces a final."""
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS)

    await _silence()

    assert handler.calls == []
    assert len(spawner.named('hear')) == 1
    assert hearing.listening


@pytest.mark.asyncio
async def test_new_line_resets_silence_timer(spawner, hearing):
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS * 3)
    proc = spawner.running('hear')

    proc.emit('one')
    await asyncio.sleep(SILENCE_MS * 2 / 1000)
    proc.emit('one two')
    await asyncio.sleep(SILENCE_MS * 2 / 1000)
    assert handler.finals == []

    await asyncio.sleep(SILENCE_MS * 3 / 1000)
    assert handler.finals == ['one two']


@pytest.mark.asyncio
async def test_speech_pauses_and_resumes_listening(spawner, speech, hearing):
    """Test that our own speech stops recognition and it restarts afterwards."""
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS)
    before = spawner.running('hear')

    speech.speak('hello')
    assert before.terminated
    assert hearing.state is ListenState.IDLE

    # Lines from the abandoned process are ignored
    before.emit('hello')
    assert handler.calls == []

    await speak_all(spawner, speech)
    await settle()

    after = spawner.running('hear')
    assert after is not None and after is not before
    assert hearing.listening


@pytest.mark.asyncio
async def test_stale_exit_does_not_restart(spawner, speech, hearing):
    """Test that the exit of a deliberately stopped process causes no restart."""
    hearing.listen(Recorder(), SILENCE_MS)
    speech.speak('talking')
    await asyncio.sleep(RESTART_DELAY * 2)

    assert len(spawner.named('hear')) == 1
    assert spawner.running('hear') is None


@pytest.mark.asyncio
async def test_listen_while_speaking_waits(spawner, speech, hearing):
    """Test that listening begins only once speech has finished."""
    speech.speak('hold on')
    hearing.listen(Recorder(), SILENCE_MS)
    assert spawner.named('hear') == []

    await speak_all(spawner, speech)
    await settle()
    assert spawner.running('hear') is not None


@pytest.mark.asyncio
async def test_unexpected_exit_restarts_after_delay(spawner, hearing):
    """Test that an input process dying on its own is relaunched shortly after."""
    hearing.listen(Recorder(), SILENCE_MS * 10)
    proc = spawner.running('hear')

    proc.finish(1)
    await settle()
    assert spawner.running('hear') is None
    assert hearing.state is ListenState.AWAITING_RESTART

    await asyncio.sleep(RESTART_DELAY * 2)
    assert len(spawner.named('hear')) == 2
    assert spawner.running('hear') is not None


@pytest.mark.asyncio
async def test_missing_binary_does_not_loop(spawner, hearing):
    """Test that an unspawnable input command is not retried forever."""
    spawner.fail = True
    hearing.listen(Recorder(), SILENCE_MS)

    await asyncio.sleep(RESTART_DELAY * 3)
    assert len(spawner.named('hear')) == 1
    assert hearing.state is ListenState.IDLE


@pytest.mark.asyncio
async def test_mute_stops_and_unmute_restarts(spawner, mute, hearing):
    """Test that muting stops recognition and unmuting brings it back."""
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS)
    first = spawner.running('hear')

    mute.set_muted(True)
    assert first.terminated
    first.emit('secret')
    await _silence()
    assert handler.calls == []

    mute.set_muted(False)
    await settle()
    second = spawner.running('hear')
    assert second is not None and second is not first

    second.emit('public')
    assert handler.partials == ['public']


@pytest.mark.asyncio
async def test_listen_while_muted_waits_for_unmute(spawner, mute, hearing):
    mute.set_muted(True)
    hearing.listen(Recorder(), SILENCE_MS)
    assert spawner.named('hear') == []

    mute.set_muted(False)
    await settle()
    assert spawner.running('hear') is not None


@pytest.mark.asyncio
async def test_handler_hot_swap_keeps_process(spawner, hearing):
    """Test that a second listen() swaps the handler without a new process."""
    old, new = Recorder(), Recorder()
    hearing.listen(old, SILENCE_MS)
    hearing.listen(new, SILENCE_MS)

    assert len(spawner.named('hear')) == 1
    spawner.running('hear').emit('hi')

    assert old.calls == []
    assert new.partials == ['hi']


@pytest.mark.asyncio
async def test_listen_none_stops(spawner, hearing):
    hearing.listen(Recorder(), SILENCE_MS)
    proc = spawner.running('hear')

    hearing.listen(None)

    assert proc.terminated
    assert hearing.handler is None
    assert hearing.state is ListenState.IDLE


@pytest.mark.asyncio
async def test_stop_from_handler(spawner, hearing):
    """Test that calling stop() inside the handler ends listening for good."""
    handler = Recorder(stop_on_final=True)
    hearing.listen(handler, SILENCE_MS)
    spawner.running('hear').emit('goodbye')

    await _silence()
    await asyncio.sleep(RESTART_DELAY * 2)

    assert handler.finals == ['goodbye']
    assert spawner.running('hear') is None
    assert hearing.handler is None


@pytest.mark.asyncio
async def test_handler_errors_are_logged(spawner, hearing, caplog):
    """Test that an exception in the handler does not break the loop."""
    def broken(text, stop, is_final):
        raise RuntimeError('handler failed')

    hearing.listen(broken, SILENCE_MS)
    with caplog.at_level(logging.ERROR, logger='hearsay'):
        spawner.running('hear').emit('boom')

    assert 'Listen handler error' in caplog.text
    assert hearing.listening


@pytest.mark.asyncio
async def test_reply_during_gap_ends_gap_early(spawner):
    """Test that a reply captured between queued items shortens the gap."""
    speech = SpeechQueue(gap_ms=5000, repeat_reduction=False, spawn=spawner)
    hearing = ListeningLoop(speech, spawn=spawner)
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS)

    speech.speak('question one')
    speech.speak('question two')
    await settle()
    spawner.running('say').finish(0)
    await settle()

    # Gap open: listening for a reply while speech is still in progress
    assert speech.gap.is_open
    reply = spawner.running('hear')
    assert reply is not None
    reply.emit('yes')
    assert handler.partials == ['yes']

    await _silence()
    await settle()

    assert handler.finals == ['yes']
    assert not speech.gap.is_open
    assert spawner.running('say').text == 'question two'
    assert spawner.running('hear') is None

    hearing.close()
    speech.halt()


async def _open_gap(spawner, speech):
    """Finish the first of two queued utterances so the gap opens."""
    speech.speak('question one')
    speech.speak('question two')
    await settle()
    spawner.running('say').finish(0)
    await settle()
    assert speech.gap.is_open


@pytest.mark.asyncio
async def test_halt_during_gap_resumes_listening(spawner):
    """Test that halting speech mid-gap leaves the loop listening, not idle."""
    speech = SpeechQueue(gap_ms=5000, repeat_reduction=False, spawn=spawner)
    hearing = ListeningLoop(speech, spawn=spawner)
    hearing.listen(Recorder(), SILENCE_MS)
    await _open_gap(spawner, speech)
    in_gap = spawner.running('hear')
    assert in_gap is not None

    speech.halt()
    await settle()

    assert not speech.gap.is_open
    assert not speech.speaking
    assert in_gap.terminated
    resumed = spawner.running('hear')
    assert resumed is not None and resumed is not in_gap
    assert hearing.state is ListenState.LISTENING

    hearing.close()


@pytest.mark.asyncio
async def test_rude_during_gap_stops_gap_listener(spawner):
    """Test that rude speech mid-gap closes the gap and silences recognition."""
    speech = SpeechQueue(gap_ms=5000, repeat_reduction=False, spawn=spawner)
    hearing = ListeningLoop(speech, spawn=spawner)
    hearing.listen(Recorder(), SILENCE_MS)
    await _open_gap(spawner, speech)
    in_gap = spawner.running('hear')

    speech.speak('urgent', rude=True)
    await settle()

    assert not speech.gap.is_open
    assert in_gap.terminated
    assert spawner.running('hear') is None
    assert hearing.state is ListenState.IDLE
    assert spawner.running('say').text == 'urgent'

    # The next gap listens again before the remaining text
    spawner.running('say').finish(0)
    await settle()
    assert speech.gap.is_open
    assert spawner.running('hear') is not None
    assert hearing.state is ListenState.LISTENING

    hearing.close()
    speech.halt()


@pytest.mark.asyncio
async def test_unmute_during_gap_listens_again(spawner, mute):
    """Test that unmuting while a gap is open restarts the gap listener."""
    speech = SpeechQueue(gap_ms=5000, repeat_reduction=False, spawn=spawner)
    hearing = ListeningLoop(speech, mute, spawn=spawner)
    hearing.listen(Recorder(), SILENCE_MS)
    await _open_gap(spawner, speech)
    in_gap = spawner.running('hear')

    mute.set_muted(True)
    assert in_gap.terminated
    assert hearing.state is ListenState.IDLE

    mute.set_muted(False)
    await settle()
    assert speech.gap.is_open
    resumed = spawner.running('hear')
    assert resumed is not None and resumed is not in_gap
    assert hearing.state is ListenState.LISTENING

    hearing.close()
    speech.halt()


@pytest.mark.asyncio
async def test_corrector_rewrites_transcripts(spawner, speech):
    class Upper:
        resets = 0

        def correct(self, text, is_final):
            return text.upper()

        def reset_cache(self):
            self.resets += 1

    corrector = Upper()
    hearing = ListeningLoop(speech, spawn=spawner, corrector=corrector)
    handler = Recorder()
    hearing.listen(handler, SILENCE_MS)
    spawner.running('hear').emit('magic word')
    await _silence()

    assert handler.calls[0] == ('MAGIC WORD', False)
    assert handler.finals == ['MAGIC WORD']
    # Once for the first session and once after the relaunch
    assert corrector.resets == 2

    hearing.close()
