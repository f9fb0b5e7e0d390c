"""CLI entry point for hearsay.

This module provides a subcommand-based CLI around the HearSay API.

Usage:
    python -m hearsay say <text> [--interrupt] [--clear] [--rude] [--latest]
    python -m hearsay hear [--timeout MS] [--once]
    python -m hearsay loopback <text> [--timeout MS]
    python -m hearsay check

Global options (before the subcommand):
    --config PATH        Config file (JSON or YAML)
    --set "KEY=VALUE ..."  Override config values
    --debug              Enable debug logging
    --log-file PATH      Also write logs to a file

Author:
    Jake Meador <jameador13@gmail.com>
"""

import argparse
import asyncio
import logging
import sys

from . import config
from .hearsay import HearSay, setup_logging

__author__ = 'Jake Meador <jameador13@gmail.com>'
__all__ = ['main', 'build_parser']

logger = logging.getLogger('hearsay')


def create_hearsay(args: argparse.Namespace) -> HearSay:
    """Build a HearSay instance from global CLI options and set up logging."""
    overrides = config.parse_set_string(args.set) if args.set else None
    loaded_config, config_file = config.load_config(config_path=args.config, overrides=overrides)

    debug = args.debug or loaded_config['debug']
    log_file = args.log_file or loaded_config['debug_log']
    setup_logging(debug=debug, log_file=log_file)
    if config_file:
        logger.debug(f'Config file: {config_file}')

    return HearSay(config_dict=loaded_config)


async def _say(args: argparse.Namespace) -> int:
    hs = create_hearsay(args)
    hs.install_signal_handlers()
    try:
        await hs.speak(
            ' '.join(args.text),
            interrupt=args.interrupt,
            clear=args.clear,
            rude=args.rude,
            latest=args.latest,
        )
    finally:
        hs.shutdown()
    return 0


async def _hear(args: argparse.Namespace) -> int:
    hs = create_hearsay(args)
    hs.install_signal_handlers()
    done = asyncio.Event()

    def on_text(text: str, stop, is_final: bool) -> None:
        if not is_final:
            print(f'... {text}', flush=True)
            return
        print(f'>>> {text}', flush=True)
        if args.once:
            stop()
            done.set()

    hs.listen(on_text, args.timeout)
    logger.info('Listening... (Ctrl+C to stop)')
    try:
        await done.wait()
    finally:
        hs.shutdown()
    return 0


async def _loopback(args: argparse.Namespace) -> int:
    hs = create_hearsay(args)
    hs.install_signal_handlers()
    try:
        heard = await hs.loopback(' '.join(args.text), silence_timeout_ms=args.timeout)
    finally:
        hs.shutdown()
    print(heard)
    return 0 if heard else 1


def cmd_say(args: argparse.Namespace) -> int:
    """Speak text and wait until it has been spoken."""
    return asyncio.run(_say(args))


def cmd_hear(args: argparse.Namespace) -> int:
    """Print transcribed speech until interrupted."""
    return asyncio.run(_hear(args))


def cmd_loopback(args: argparse.Namespace) -> int:
    """Speak text and print what the recognizer heard."""
    return asyncio.run(_loopback(args))


def cmd_check(args: argparse.Namespace) -> int:
    """Report whether the external commands are available."""
    hs = create_hearsay(args)
    available = hs.check_binaries()

    print('hearsay Status')
    print('=' * 50)
    print(f'Platform: {sys.platform}')
    for name, found in available.items():
        print(f'{name}: {"✓ found" if found else "✗ not found"}')
    return 0 if all(available.values()) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hearsay',
        description='hearsay - Turn-taking speech output and recognition',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', type=str, help='Path to config file (JSON or YAML)')
    parser.add_argument('--set', type=str, metavar='KEY=VALUE ...', help='Set config values')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--log-file', type=str, help='Write logs to file')

    subparsers = parser.add_subparsers(dest='command', help='Subcommands')

    # SAY subcommand
    say_parser = subparsers.add_parser('say', help='Speak text')
    say_parser.add_argument('text', nargs='+', help='Text to speak')
    say_parser.add_argument('--interrupt', action='store_true', help='Skip ahead of queued speech')
    say_parser.add_argument('--clear', action='store_true', help='Clear queued speech first')
    say_parser.add_argument('--rude', action='store_true', help='Cut off current speech')
    say_parser.add_argument('--latest', action='store_true', help='Replace the previous latest request')
    say_parser.set_defaults(func=cmd_say)

    # HEAR subcommand
    hear_parser = subparsers.add_parser('hear', help='Print transcribed speech')
    hear_parser.add_argument('--timeout', type=float, default=None, metavar='MS',
                             help='Silence (ms) that ends an utterance')
    hear_parser.add_argument('--once', action='store_true', help='Exit after the first utterance')
    hear_parser.set_defaults(func=cmd_hear)

    # LOOPBACK subcommand
    loopback_parser = subparsers.add_parser('loopback', help='Speak text and print what was heard')
    loopback_parser.add_argument('text', nargs='+', help='Text to speak')
    loopback_parser.add_argument('--timeout', type=float, default=1800, metavar='MS',
                                 help='Silence (ms) after speech before returning')
    loopback_parser.set_defaults(func=cmd_loopback)

    # CHECK subcommand
    check_parser = subparsers.add_parser('check', help='Check platform and external commands')
    check_parser.set_defaults(func=cmd_check)

    return parser


def main() -> None:
    """Parse CLI arguments and execute subcommand."""
    parser = build_parser()
    args = parser.parse_args()

    if not hasattr(args, 'func'):
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(args.func(args))
    except (FileNotFoundError, ValueError) as e:
        print(f'ERROR: {e}', file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    main()
