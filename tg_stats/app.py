from __future__ import annotations

import argparse
import os
import signal
import sys
import textwrap
import time
from collections.abc import Callable
from importlib import metadata
from typing import TYPE_CHECKING, Any

from .botlog import BotLog
from .config import DEFAULT_WRITE_INTERVAL, BotConfig
from .durations import parse_duration
from .engine import UpdateProcessor
from .keywords import KeywordMatcher
from .metadata_store import MetadataStore, StoreError, find_snapshots, snapshot_filename
from .telegram_api import TelegramAPI

if TYPE_CHECKING:
    from types import FrameType

PACKAGE_NAME = 'tg-stats'
POLL_RETRY_SLEEP_SECONDS = 2.0


class PollingError(RuntimeError):
    """Too many consecutive getUpdates failures."""


def _version() -> str:
    try:
        return metadata.version(PACKAGE_NAME)
    except metadata.PackageNotFoundError:
        return 'dev'


class ShutdownFlag:
    """Cooperative stop request, checked once per poll iteration.

    The first SIGINT/SIGTERM asks the loop to finish the current batch and exit
    (the store is flushed on the way out). A second one exits immediately.
    """

    def __init__(self, *, log: BotLog | None = None, force_exit: Callable[[int], Any] = os._exit) -> None:
        self._log = log or BotLog()
        self._force_exit = force_exit
        self._set = False

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def handle_signal(self, signum: int, frame: FrameType | None = None) -> None:
        if self._set:
            self._force_exit(1)
            return
        self._log.info('Interrupt signal received, waiting for requests to finish')
        self._log.warn('Press twice to force quit and lose recent data')
        self._set = True

    def install(self) -> None:
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)


def poll(
    api: TelegramAPI,
    processor: UpdateProcessor,
    stop: ShutdownFlag,
    *,
    timeout_seconds: int,
    max_failures: int = 32,
    log: BotLog | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> None:
    log = log or BotLog()
    offset: int | None = None
    failures = 0
    log.info(f'Starting polling, timeout {int(timeout_seconds)}s')

    while not stop.is_set():
        try:
            updates = api.get_updates(offset=offset, timeout=timeout_seconds)
        except Exception as e:
            failures += 1
            log.warn(f'[tg] getUpdates failed ({failures}/{max_failures}): {str(e)[:300]}')
            if failures > max_failures:
                raise PollingError(f'getUpdates failed {failures} times in a row') from e
            sleep(POLL_RETRY_SLEEP_SECONDS)
            continue
        failures = 0

        if not updates:
            continue

        ids = [u.get('update_id') for u in updates]
        next_id = max((i for i in ids if isinstance(i, int)), default=None)
        if next_id is not None:
            offset = next_id + 1
            log.debug(f'next_id = {next_id}')

        processor.process_updates(updates)


def _duration_arg(raw: str) -> float:
    seconds = parse_duration(raw)
    if seconds is None:
        raise argparse.ArgumentTypeError(f'invalid duration: {raw!r} (example: "30 min")')
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tg-stats',
        description='A Telegram bot that keeps per-chat message statistics',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """
            Environment:
              MFJ_API_TOKEN   bot token (if not given on the command line)
              MFJ_KEYWORDS    comma separated keywords that earn points (default: kesko)
              MFJ_DATA_DIR    directory for messages-*.json.gz snapshots (default: .)

            Examples:
              tg-stats 123456:ABC --write-interval "10 min"
              tg-stats -v --poll-timeout 30
            """
        ).strip(),
    )
    parser.add_argument('bot_api_token', nargs='?', help='Telegram bot API token')
    parser.add_argument('--poll-timeout', type=int, default=None, help='polling timeout in seconds (default: 60)')
    parser.add_argument(
        '--write-interval',
        type=_duration_arg,
        default=None,
        help=f'database file write interval (default: {DEFAULT_WRITE_INTERVAL!r})',
    )
    parser.add_argument('--data-dir', default=None, help='where snapshots are read from and written to')
    parser.add_argument('-v', '--verbose', action='store_true', help='log more information')
    return parser


def _bot_username(api: TelegramAPI, log: BotLog) -> str:
    try:
        me = api.get_me().get('result') or {}
    except Exception as e:
        log.warn(f'[tg] getMe failed, commands addressed to other bots are not filtered: {str(e)[:200]}')
        return ''
    username = me.get('username') if isinstance(me, dict) else None
    return username.strip() if isinstance(username, str) else ''


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = BotConfig.from_env().with_cli_overrides(args)
    log = BotLog(path=cfg.log_path, verbose=cfg.verbose)

    if not cfg.tg_token:
        print('ERROR: Please supply a Telegram bot API token', file=sys.stderr)
        return 2

    log.info(f'Starting version {_version()}')

    api = TelegramAPI(token=cfg.tg_token, root_url=cfg.tg_api_root_url)
    stop = ShutdownFlag(log=log)
    stop.install()

    write_path = cfg.data_dir / snapshot_filename(cfg.snapshot_prefix)
    try:
        store = MetadataStore.from_backups(
            find_snapshots(cfg.data_dir, cfg.snapshot_prefix),
            write_path,
            write_interval=cfg.write_interval_seconds,
            log=log,
        )
    except StoreError as e:
        log.error(f'Cannot initialize metadata storage: {e}')
        return 1

    username = _bot_username(api, log)
    if username:
        log.info(f'Running as @{username}')

    try:
        with store:
            processor = UpdateProcessor(
                api=api,
                store=store,
                keywords=KeywordMatcher(cfg.keywords),
                bot_username=username,
                live_window=cfg.live_window,
                log=log,
            )
            poll(
                api,
                processor,
                stop,
                timeout_seconds=cfg.poll_timeout_seconds,
                max_failures=cfg.max_poll_failures,
                log=log,
            )
    except (PollingError, StoreError) as e:
        log.error(f'{PACKAGE_NAME} encountered an unrecoverable error: {e}')
        return 1

    log.info('Stopped')
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
