"""hearsay - Turn-taking speech output and recognition for command line agents."""

__author__ = 'Jake Meador <jameador13@gmail.com>'
__version__ = '0.1.0'

from .hearsay import HearSay, main, setup_logging
from .hear import ListeningLoop, ListenState
from .say import SayStatus, SpeechQueue
from . import config

__all__ = ['HearSay', 'ListeningLoop', 'ListenState', 'SayStatus', 'SpeechQueue', 'main', 'setup_logging', 'config']
