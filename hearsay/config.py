"""Configuration system for hearsay.

This module handles configuration loading and merging for the speech queue and
listening loop. Settings come from built-in defaults, an optional JSON or YAML
config file, environment variables and CLI overrides, in that order.

Usage:
    config, config_file = load_config(
        config_path='hearsay.yaml',
        overrides={'min_rate': 180, 'voice': 'Samantha'}
    )

Environment variables:
    MIN_RATE, MAX_RATE        Speech rate range (words per minute)
    WORD_QUEUE_PLATEAU        Backlog size at which the maximum rate is reached
    VOICE                     Voice name for the output command
    SAY_QUEUE_BREAK           Gap between queued utterances in seconds (0 disables)
    HEAR_SILENCE_MS           Silence that ends an utterance, in milliseconds
    SAY_REPEAT_REDUCTION      Trim repeated text (1/0, true/false)
    HEAR_SAY_DEBUG            Enable debug logging (1/true)
    HEAR_SAY_DEBUG_LOG        Path of a debug log file
    SAY_COMMAND, HEAR_COMMAND Output and input commands (shell syntax)

Author:
    Jake Meador <jameador13@gmail.com>
"""

import contextlib
import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = [
    'default_config',
    'merge_dicts',
    'find_config_file',
    'load_config_file',
    'env_overrides',
    'load_config',
    'parse_set_string',
    'apply_key_path',
]

logger = logging.getLogger('hearsay')

TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


def default_config() -> dict[str, Any]:
    """Return a fresh copy of the built-in defaults."""
    return {
        'min_rate': 200,
        'max_rate': 300,
        'word_plateau': 30,
        'voice': '',
        'gap_seconds': 2,
        'silence_timeout_ms': 2500,
        'repeat_reduction': True,
        'debug': False,
        'debug_log': None,
        'say_command': ['say'],
        'hear_command': ['hear'],
    }


def merge_dicts(base: dict, override: dict) -> dict:
    """Recursively merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


def find_config_file(custom_path: Optional[str] = None) -> Optional[Path]:
    """Find config file in order: custom path, CWD hearsay.json, CWD hearsay.yaml."""
    if custom_path:
        path = Path(custom_path)
        if not path.exists():
            raise FileNotFoundError(f'Config file not found: {custom_path}')
        return path

    cwd = Path.cwd()
    if (json_config := cwd / 'hearsay.json').exists():
        return json_config

    if (yaml_config := cwd / 'hearsay.yaml').exists():
        return yaml_config

    return None


def load_config_file(path: Path) -> dict:
    """Load config file (JSON or YAML)."""
    content = path.read_text(encoding='utf-8')

    if path.suffix.lower() == '.json':
        data = json.loads(content)
    elif path.suffix.lower() in ('.yaml', '.yml'):
        data = yaml.safe_load(content)
    else:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError:
            data = json.loads(content)

    return data or {}


def _parse_number(name: str, raw: str, allow_zero: bool = False) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f'Ignoring invalid {name}={raw!r} (expected a number)')
        return None
    if value < 0 or (value == 0 and not allow_zero):
        return None
    return value


def _parse_bool(name: str, raw: str) -> Optional[bool]:
    lowered = raw.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    logger.warning(f'Ignoring invalid {name}={raw!r} (expected true/false)')
    return None


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect config overrides from environment variables.

    Unset, empty, zero or invalid numeric values keep their defaults, except
    SAY_QUEUE_BREAK=0 which disables the gap.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for var, key in (('MIN_RATE', 'min_rate'), ('MAX_RATE', 'max_rate'), ('WORD_QUEUE_PLATEAU', 'word_plateau')):
        if raw := environ.get(var):
            if (value := _parse_number(var, raw)) is not None:
                overrides[key] = int(value)

    if raw := environ.get('SAY_QUEUE_BREAK'):
        if (value := _parse_number('SAY_QUEUE_BREAK', raw, allow_zero=True)) is not None:
            overrides['gap_seconds'] = value

    if raw := environ.get('HEAR_SILENCE_MS'):
        if (value := _parse_number('HEAR_SILENCE_MS', raw)) is not None:
            overrides['silence_timeout_ms'] = value

    if voice := environ.get('VOICE'):
        overrides['voice'] = voice

    if raw := environ.get('SAY_REPEAT_REDUCTION'):
        if (enabled := _parse_bool('SAY_REPEAT_REDUCTION', raw)) is not None:
            overrides['repeat_reduction'] = enabled

    if raw := environ.get('HEAR_SAY_DEBUG'):
        overrides['debug'] = raw.strip().lower() in ('1', 'true')

    if path := environ.get('HEAR_SAY_DEBUG_LOG'):
        overrides['debug_log'] = path

    for var, key in (('SAY_COMMAND', 'say_command'), ('HEAR_COMMAND', 'hear_command')):
        if raw := environ.get(var):
            overrides[key] = shlex.split(raw)

    return overrides


def _normalize(config: dict) -> dict:
    """Coerce command settings given as strings into argv lists."""
    for key in ('say_command', 'hear_command'):
        if isinstance(config.get(key), str):
            config[key] = shlex.split(config[key])
    return config


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[dict] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> tuple[dict, Optional[Path]]:
    """Load configuration: defaults < config file < environment < overrides."""
    config = default_config()

    config_file = find_config_file(config_path)
    if config_file:
        logger.info(f'Loading config: {config_file}')
        config = merge_dicts(config, load_config_file(config_file))
    else:
        logger.debug('No config file found, using defaults')

    if env := env_overrides(environ):
        logger.debug(f'Applying environment overrides: {env}')
        config = merge_dicts(config, env)

    if overrides:
        logger.debug(f'Applying overrides: {overrides}')
        config = merge_dicts(config, overrides)

    return _normalize(config), config_file


def apply_key_path(config: dict, key_path: str, value: Any) -> dict:
    """Apply value to nested key path."""
    keys = key_path.split('.')
    current = config

    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value
    return config


def parse_set_string(set_string: str) -> dict[str, Any]:
    """Parse space-separated key=value pairs (values are JSON-decoded when possible).

    Raises:
        ValueError: If a pair has no '=' separator
    """
    overrides: dict[str, Any] = {}

    for pair in shlex.split(set_string):
        if '=' not in pair:
            raise ValueError(f'Invalid override format (expected key=value): {pair}')

        key_path, value = pair.split('=', 1)

        with contextlib.suppress(json.JSONDecodeError, ValueError):
            value = json.loads(value)

        overrides = apply_key_path(overrides, key_path, value)

    return overrides
