from __future__ import annotations

import argparse
import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path

from .durations import parse_duration

DEFAULT_WRITE_INTERVAL = '30 min'
DEFAULT_KEYWORDS = ('kesko',)
POLL_TIMEOUT_RANGE = (1, 600)

_TRUE_WORDS = frozenset({'1', 'true', 'yes', 'y', 'on'})
_FALSE_WORDS = frozenset({'0', 'false', 'no', 'n', 'off'})


def _parse_dotenv_line(raw_line: str) -> tuple[str, str] | None:
    """`KEY=VALUE` or `export KEY=VALUE`; comments and blank lines give None."""
    line = raw_line.strip()
    if not line or line.startswith('#'):
        return None
    line = line.removeprefix('export ').lstrip()
    key, sep, value = line.partition('=')
    key = key.strip()
    if not sep or not key:
        return None
    return key, value.strip().strip('\'"')


def _load_dotenv(path: Path) -> None:
    """Copy variables from an optional env file; variables already set win."""
    try:
        content = path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return
    for raw_line in content.splitlines():
        parsed = _parse_dotenv_line(raw_line)
        if parsed is not None:
            os.environ.setdefault(*parsed)


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name) or '').strip().lower()
    if v in _TRUE_WORDS:
        return True
    if v in _FALSE_WORDS:
        return False
    return default


def _env_int(name: str, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    """Integer env var, falling back to `default` when unset or malformed, then clamped."""
    try:
        value = int((os.getenv(name) or '').strip())
    except ValueError:
        value = default
    if lo is not None:
        value = max(lo, value)
    if hi is not None:
        value = min(hi, value)
    return value


def _env_list_str(name: str) -> list[str]:
    return [part.strip() for part in (os.getenv(name) or '').split(',') if part.strip()]


def _env_duration_seconds(name: str, default: str) -> float:
    seconds = parse_duration(os.getenv(name) or '')
    if seconds is None:
        seconds = parse_duration(default)
    return float(seconds or 0.0)


@dataclass(frozen=True)
class BotConfig:
    # Telegram
    tg_token: str
    tg_api_root_url: str
    poll_timeout_seconds: int
    max_poll_failures: int

    # Metadata store
    data_dir: Path
    snapshot_prefix: str
    write_interval_seconds: float

    # Engine
    keywords: list[str]
    live_window: int

    # Logging
    verbose: bool
    log_path: Path | None

    @classmethod
    def from_env(cls) -> BotConfig:
        # Load optional env files (if present).
        _load_dotenv(Path('.env'))
        _load_dotenv(Path('.env.tg_stats'))

        tg_token = (os.getenv('MFJ_API_TOKEN') or '').strip()
        tg_api_root_url = (os.getenv('MFJ_API_ROOT_URL') or 'https://api.telegram.org').strip()
        lo, hi = POLL_TIMEOUT_RANGE
        poll_timeout_seconds = _env_int('MFJ_POLL_TIMEOUT_SECONDS', 60, lo=lo, hi=hi)
        max_poll_failures = _env_int('MFJ_MAX_POLL_FAILURES', 32, lo=1)

        data_dir = Path(os.getenv('MFJ_DATA_DIR') or '.')
        snapshot_prefix = (os.getenv('MFJ_SNAPSHOT_PREFIX') or 'messages').strip() or 'messages'
        write_interval_seconds = _env_duration_seconds('MFJ_WRITE_INTERVAL', DEFAULT_WRITE_INTERVAL)

        # An explicitly empty MFJ_KEYWORDS disables keyword points.
        if os.getenv('MFJ_KEYWORDS') is None:
            keywords = list(DEFAULT_KEYWORDS)
        else:
            keywords = _env_list_str('MFJ_KEYWORDS')
        live_window = _env_int('MFJ_LIVE_WINDOW', 100, lo=0)

        verbose = _env_bool('MFJ_VERBOSE', False)
        log_path_raw = (os.getenv('MFJ_LOG_PATH') or '').strip()
        log_path = Path(log_path_raw) if log_path_raw else None

        return cls(
            tg_token=tg_token,
            tg_api_root_url=tg_api_root_url,
            poll_timeout_seconds=poll_timeout_seconds,
            max_poll_failures=max_poll_failures,
            data_dir=data_dir,
            snapshot_prefix=snapshot_prefix,
            write_interval_seconds=write_interval_seconds,
            keywords=keywords,
            live_window=live_window,
            verbose=verbose,
            log_path=log_path,
        )

    def with_cli_overrides(self, args: argparse.Namespace) -> BotConfig:
        changes: dict[str, object] = {}
        token = (getattr(args, 'bot_api_token', None) or '').strip()
        if token:
            changes['tg_token'] = token
        if getattr(args, 'poll_timeout', None) is not None:
            lo, hi = POLL_TIMEOUT_RANGE
            changes['poll_timeout_seconds'] = max(lo, min(hi, int(args.poll_timeout)))
        if getattr(args, 'write_interval', None) is not None:
            changes['write_interval_seconds'] = float(args.write_interval)
        if getattr(args, 'data_dir', None):
            changes['data_dir'] = Path(args.data_dir)
        if getattr(args, 'verbose', False):
            changes['verbose'] = True
        return dataclasses.replace(self, **changes)
