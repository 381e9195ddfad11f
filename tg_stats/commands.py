from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .durations import parse_duration

if TYPE_CHECKING:
    from .metadata_store import MetadataStore

CommandProcedure = Callable[[str, int, 'MetadataStore'], str]

ALL_TIME_LABEL = 'kaikki'
SCORES_USAGE = 'Anna yksi sana, esim. /pisteet kesko'


def _split_command(command: str) -> tuple[str, str]:
    parts = (command or '').strip().split(maxsplit=1)
    if not parts:
        return ('', '')
    return (parts[0], parts[1].strip() if len(parts) > 1 else '')


def _display_name(store: MetadataStore, user_id: int) -> str:
    return store.get_user_name(user_id) or str(user_id)


def convert_time(command: str, *, now: float | None = None) -> tuple[int, str] | None:
    """Cutoff epoch and label for '/tilasto 2 hours'; None when no usable duration follows the command."""
    _, arg = _split_command(command)
    seconds = parse_duration(arg)
    if seconds is None:
        return None
    after = (time.time() if now is None else now) - seconds
    if after < 0:
        return None
    return (int(after), arg)


def render_stats(command: str, chat_id: int, store: MetadataStore, *, now: float | None = None) -> str:
    converted = convert_time(command, now=now)
    after, label = converted if converted is not None else (0, ALL_TIME_LABEL)

    counts = store.get_message_counts_by_user(chat_id, after)
    total = sum(n for _, n in counts)

    lines = [f'Viestejä yhteensä ({label}): {total}\n\n']
    if total > 0:
        for user_id, n in counts:
            lines.append(f'{_display_name(store, user_id)}: {n} ({n * 100 / total:.1f}%)\n')
    return ''.join(lines)


def render_scores(command: str, chat_id: int, store: MetadataStore) -> str:
    _, arg = _split_command(command)
    words = arg.split()
    if len(words) != 1:
        return SCORES_USAGE
    word = words[0].casefold()

    scores = store.get_scores_by_user(word, chat_id)
    if not scores:
        return f'Ei pisteitä sanalle {word}'

    lines = [f'Pisteet sanalle {word}:\n\n']
    for user_id, score in scores:
        lines.append(f'{_display_name(store, user_id)}: {score}\n')
    return ''.join(lines)


@dataclass(frozen=True)
class Command:
    name: str
    procedure: CommandProcedure


COMMANDS: dict[str, Command] = {
    '/tilasto': Command(name='/tilasto', procedure=render_stats),
    '/pisteet': Command(name='/pisteet', procedure=render_scores),
}


def lookup_command(word: str) -> Command | None:
    return COMMANDS.get((word or '').strip().casefold())


@dataclass(frozen=True)
class CommandInvocation:
    command: Command
    command_text: str
    chat_id: int

    def run(self, store: MetadataStore) -> str:
        return self.command.procedure(self.command_text, self.chat_id, store)
