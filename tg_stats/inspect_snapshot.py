from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .commands import render_scores, render_stats
from .metadata_store import MetadataContent, StoreError, load_content


def _summary(content: MetadataContent) -> str:
    lines = [
        f'chats: {len(content.timestamps_by_chat_user)}',
        f'users with names: {len(content.user_names)}',
    ]
    for chat_id, users in sorted(content.timestamps_by_chat_user.items()):
        total = sum(len(ts) for ts in users.values())
        lines.append(f'- chat {chat_id}: {total} messages from {len(users)} users')
    if content.keyword_scores_by_keyword_chat_user:
        lines.append('keywords:')
        for keyword, chats in sorted(content.keyword_scores_by_keyword_chat_user.items()):
            points = sum(sum(users.values()) for users in chats.values())
            lines.append(f'- {keyword}: {points} points in {len(chats)} chats')
    return '\n'.join(lines)


class _ReadOnlyStore:
    """Query view over loaded content, enough for the command renderers."""

    def __init__(self, content: MetadataContent) -> None:
        self._content = content

    def get_message_counts_by_user(self, chat_id: int, after_unix_ts: int = 0) -> list[tuple[int, int]]:
        return self._content.message_counts_by_user(chat_id, after_unix_ts)

    def get_scores_by_user(self, keyword: str, chat_id: int) -> list[tuple[int, int]]:
        return self._content.scores_by_user(keyword, chat_id)

    def get_user_name(self, user_id: int) -> str | None:
        return self._content.user_names.get(int(user_id))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='tg-stats-inspect', description='Inspect a messages-*.json.gz snapshot')
    parser.add_argument('snapshot', help='snapshot file')
    parser.add_argument('--chat', type=int, help='render the /tilasto report for this chat id')
    parser.add_argument('--since', default='', help='time window for --chat, e.g. "2 days"')
    parser.add_argument('--keyword', help='with --chat: render the /pisteet report for this word instead')
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        content = load_content(Path(args.snapshot))
    except StoreError as e:
        print(f'ERROR: {e}', file=sys.stderr)
        return 1

    if args.chat is None:
        print(_summary(content))
        return 0

    view = _ReadOnlyStore(content)
    if args.keyword:
        text = render_scores(f'/pisteet {args.keyword}', args.chat, view)  # type: ignore[arg-type]
    else:
        text = render_stats(f'/tilasto {args.since}'.strip(), args.chat, view)  # type: ignore[arg-type]
    print(text.rstrip('\n'))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
