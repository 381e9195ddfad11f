from __future__ import annotations

import gzip
import json
import os
import time
import zlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from .botlog import BotLog

SNAPSHOT_PREFIX = 'messages'
SNAPSHOT_SUFFIX = '.json.gz'


class StoreError(Exception):
    pass


class StoreIOError(StoreError):
    """Snapshot file could not be opened, read or written."""


class SnapshotDecodeError(StoreError):
    """Snapshot bytes are not a valid gzip-compressed metadata document."""


@dataclass
class MetadataContent:
    """The persisted aggregate.

    - chat_id -> user_id -> message timestamps (arrival order)
    - keyword -> chat_id -> user_id -> points
    - user_id -> last seen display name
    """

    timestamps_by_chat_user: dict[int, dict[int, list[int]]] = field(default_factory=dict)
    keyword_scores_by_keyword_chat_user: dict[str, dict[int, dict[int, int]]] = field(default_factory=dict)
    user_names: dict[int, str] = field(default_factory=dict)

    def message_counts_by_user(self, chat_id: int, after_unix_ts: int = 0) -> list[tuple[int, int]]:
        """(user_id, messages newer than the cutoff), most active first; ties keep first-seen order."""
        users = self.timestamps_by_chat_user.get(int(chat_id)) or {}
        counts = [(user_id, sum(1 for t in ts if t > after_unix_ts)) for user_id, ts in users.items()]
        result = [(user_id, n) for user_id, n in counts if n > 0]
        result.sort(key=lambda e: e[1], reverse=True)
        return result

    def scores_by_user(self, keyword: str, chat_id: int) -> list[tuple[int, int]]:
        chats = self.keyword_scores_by_keyword_chat_user.get(str(keyword)) or {}
        users = chats.get(int(chat_id)) or {}
        result = [(user_id, score) for user_id, score in users.items() if score > 0]
        result.sort(key=lambda e: e[1], reverse=True)
        return result

    def to_json_obj(self) -> dict[str, Any]:
        return {
            'timestamps_by_chat_user': {
                str(chat_id): {str(user_id): list(ts) for user_id, ts in users.items()}
                for chat_id, users in self.timestamps_by_chat_user.items()
            },
            'keyword_scores_by_keyword_chat_user': {
                keyword: {
                    str(chat_id): {str(user_id): int(score) for user_id, score in users.items()}
                    for chat_id, users in chats.items()
                }
                for keyword, chats in self.keyword_scores_by_keyword_chat_user.items()
            },
            'user_names': {str(user_id): name for user_id, name in self.user_names.items()},
        }

    @classmethod
    def from_json_obj(cls, data: object) -> MetadataContent:
        if not isinstance(data, dict):
            raise SnapshotDecodeError('snapshot root is not an object')
        try:
            timestamps = {
                int(chat_id): {int(user_id): [int(t) for t in _as_list(ts)] for user_id, ts in _as_dict(users).items()}
                for chat_id, users in _as_dict(data.get('timestamps_by_chat_user') or {}).items()
            }
            scores = {
                str(keyword): {
                    int(chat_id): {int(user_id): int(score) for user_id, score in _as_dict(users).items()}
                    for chat_id, users in _as_dict(chats).items()
                }
                for keyword, chats in _as_dict(data.get('keyword_scores_by_keyword_chat_user') or {}).items()
            }
            names = {int(user_id): _as_str(name) for user_id, name in _as_dict(data.get('user_names') or {}).items()}
        except (TypeError, ValueError) as e:
            raise SnapshotDecodeError(f'malformed snapshot: {e}') from e
        return cls(
            timestamps_by_chat_user=timestamps,
            keyword_scores_by_keyword_chat_user=scores,
            user_names=names,
        )


def _as_dict(v: object) -> dict[Any, Any]:
    if not isinstance(v, dict):
        raise TypeError(f'expected object, got {type(v).__name__}')
    return v


def _as_list(v: object) -> list[Any]:
    if not isinstance(v, list):
        raise TypeError(f'expected array, got {type(v).__name__}')
    return v


def _as_str(v: object) -> str:
    if not isinstance(v, str):
        raise TypeError(f'expected string, got {type(v).__name__}')
    return v


def encode_content(content: MetadataContent) -> bytes:
    raw = json.dumps(content.to_json_obj(), ensure_ascii=False, separators=(',', ':'))
    return gzip.compress(raw.encode('utf-8'))


def decode_content(blob: bytes) -> MetadataContent:
    try:
        raw = gzip.decompress(blob)
        data = json.loads(raw.decode('utf-8'))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SnapshotDecodeError(str(e)) from e
    return MetadataContent.from_json_obj(data)


def load_content(path: Path) -> MetadataContent:
    try:
        blob = Path(path).read_bytes()
    except OSError as e:
        raise StoreIOError(f'cannot read {path}: {e}') from e
    return decode_content(blob)


def snapshot_filename(prefix: str = SNAPSHOT_PREFIX, now: float | None = None) -> str:
    ts = time.strftime('%Y-%m-%dT%H-%M-%S', time.localtime(time.time() if now is None else now))
    return f'{prefix}-{ts}{SNAPSHOT_SUFFIX}'


def find_snapshots(directory: Path, prefix: str = SNAPSHOT_PREFIX) -> list[Path]:
    """Snapshot candidates, newest first (filenames embed a sortable timestamp)."""
    try:
        entries = [p for p in Path(directory).iterdir() if p.is_file() and p.name.startswith(prefix)]
    except OSError:
        return []
    entries.sort(key=lambda p: p.name, reverse=True)
    return entries


class MetadataStore:
    """Owns the in-memory aggregate and the snapshot file it is flushed to.

    Every mutation may flush the whole document once `write_interval` seconds
    have passed since the last flush. `close()` (or leaving the `with` block)
    always flushes.
    """

    def __init__(
        self,
        *,
        content: MetadataContent,
        file: IO[bytes],
        path: Path,
        write_interval: float,
        log: BotLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._content = content
        self._file: IO[bytes] | None = file
        self.path = path
        self.write_interval = float(write_interval)
        self._log = log or BotLog()
        self._clock = clock
        self._last_written = clock()

    # -----------------------------
    # Construction
    # -----------------------------
    @staticmethod
    def _open_backing_file(path: Path) -> IO[bytes]:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
            return path.open('r+b')
        except OSError as e:
            raise StoreIOError(f'cannot open {path}: {e}') from e

    @classmethod
    def open(
        cls,
        write_path: Path,
        *,
        write_interval: float,
        source: Path | None = None,
        log: BotLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> MetadataStore:
        log = log or BotLog()
        write_path = Path(write_path)
        log.info(f'Initializing metadata storage, path: {write_path}, write interval: {int(write_interval)}s')

        content = MetadataContent()
        if source is not None:
            try:
                content = load_content(Path(source))
            except SnapshotDecodeError as e:
                log.info(f'Failed to load {source}, initializing new ({e})')

        return cls(
            content=content,
            file=cls._open_backing_file(write_path),
            path=write_path,
            write_interval=write_interval,
            log=log,
            clock=clock,
        )

    @classmethod
    def from_backups(
        cls,
        candidates: Iterable[Path],
        write_path: Path,
        *,
        write_interval: float,
        log: BotLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> MetadataStore:
        log = log or BotLog()
        write_path = Path(write_path)
        content: MetadataContent | None = None
        for candidate in candidates:
            log.info(f'Trying to load {candidate}')
            try:
                content = load_content(Path(candidate))
            except StoreError as e:
                log.warn(f'Failed to load {candidate}: {e}')
                continue
            break
        if content is None:
            log.info('Failed to load backups, starting fresh')
            content = MetadataContent()

        log.info(f'Initializing metadata storage, path: {write_path}, write interval: {int(write_interval)}s')
        return cls(
            content=content,
            file=cls._open_backing_file(write_path),
            path=write_path,
            write_interval=write_interval,
            log=log,
            clock=clock,
        )

    # -----------------------------
    # Mutations
    # -----------------------------
    def add_message(self, chat_id: int, user_id: int, timestamp: int) -> None:
        users = self._content.timestamps_by_chat_user.setdefault(int(chat_id), {})
        users.setdefault(int(user_id), []).append(int(timestamp))
        self._maybe_sync()

    def add_user_name(self, user_id: int, name: str) -> None:
        self._content.user_names[int(user_id)] = str(name)
        self._maybe_sync()

    def add_keyword_point(self, keyword: str, chat_id: int, user_id: int) -> int:
        chats = self._content.keyword_scores_by_keyword_chat_user.setdefault(str(keyword), {})
        users = chats.setdefault(int(chat_id), {})
        score = users.get(int(user_id), 0) + 1
        users[int(user_id)] = score
        self._maybe_sync()
        return score

    # -----------------------------
    # Queries
    # -----------------------------
    def get_message_counts_by_user(self, chat_id: int, after_unix_ts: int = 0) -> list[tuple[int, int]]:
        return self._content.message_counts_by_user(chat_id, after_unix_ts)

    def get_scores_by_user(self, keyword: str, chat_id: int) -> list[tuple[int, int]]:
        return self._content.scores_by_user(keyword, chat_id)

    def get_user_name(self, user_id: int) -> str | None:
        return self._content.user_names.get(int(user_id))

    def snapshot(self) -> MetadataContent:
        """Deep copy of the current content (round-trips through the codec)."""
        return decode_content(encode_content(self._content))

    # -----------------------------
    # Persistence
    # -----------------------------
    def _maybe_sync(self) -> None:
        if self._clock() - self._last_written > self.write_interval:
            self.sync_file()

    def sync_file(self) -> None:
        f = self._file
        if f is None:
            raise StoreIOError(f'{self.path} is closed')
        self._log.info(f'Writing to disk: {self.path}')
        blob = encode_content(self._content)
        try:
            f.seek(0)
            f.write(blob)
            f.truncate()
            f.flush()
            os.fsync(f.fileno())
        except OSError as e:
            raise StoreIOError(f'cannot write {self.path}: {e}') from e
        self._last_written = self._clock()

    @property
    def closed(self) -> bool:
        return self._file is None

    def close(self) -> None:
        if self._file is None:
            return
        try:
            try:
                self.sync_file()
            except StoreIOError as e:
                self._log.warn(f'Final write failed, retrying once ({e})')
                try:
                    self.sync_file()
                except StoreIOError as e2:
                    self._log.error(f'Final write failed, recent data is lost: {e2}')
                    raise
        finally:
            f, self._file = self._file, None
            try:
                f.close()
            except OSError:
                pass

    def __enter__(self) -> MetadataStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
