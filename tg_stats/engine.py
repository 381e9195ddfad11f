from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .botlog import BotLog
from .commands import CommandInvocation, lookup_command
from .keywords import KeywordMatcher
from .metadata_store import StoreError

if TYPE_CHECKING:
    from .metadata_store import MetadataStore
    from .telegram_api import TelegramAPI

LIVE_WINDOW_MESSAGES = 100

# Arabic letter mark, LRM/RLM, embeddings/overrides and isolates.
_BIDI_CONTROL_RE = re.compile('[\u061c\u200e\u200f\u202a-\u202e\u2066-\u2069]')


def strip_bidi_controls(s: str) -> str:
    return _BIDI_CONTROL_RE.sub('', s or '')


def display_name(*, first_name: str = '', last_name: str = '', username: str = '') -> str:
    first = strip_bidi_controls(first_name).strip()
    last = strip_bidi_controls(last_name).strip()
    user = strip_bidi_controls(username).strip().lstrip('@')
    parts = [p for p in [first, last] if p]
    if user:
        parts.append(f'@{user}')
    return ' '.join(parts)


@dataclass(frozen=True)
class IncomingMessage:
    chat_id: int
    user_id: int
    date: int
    text: str
    first_name: str = ''
    last_name: str = ''
    username: str = ''
    entity_types: tuple[str, ...] = ()
    message_id: int = 0

    @property
    def is_command(self) -> bool:
        return 'bot_command' in self.entity_types

    @property
    def sender_name(self) -> str:
        return display_name(first_name=self.first_name, last_name=self.last_name, username=self.username)


def _str_field(obj: dict[str, Any], key: str) -> str:
    v = obj.get(key)
    return v if isinstance(v, str) else ''


def parse_message(msg: object) -> IncomingMessage | None:
    """Extract what the engine needs from a Telegram `Message` object."""
    if not isinstance(msg, dict):
        return None
    chat = msg.get('chat') or {}
    frm = msg.get('from') or {}
    if not isinstance(chat, dict) or not isinstance(frm, dict):
        return None
    try:
        chat_id = int(chat.get('id') or 0)
        user_id = int(frm.get('id') or 0)
        date = int(msg.get('date') or 0)
        message_id = int(msg.get('message_id') or 0)
    except (TypeError, ValueError):
        return None
    if chat_id == 0 or user_id == 0:
        return None

    text = msg.get('text')
    entities = msg.get('entities')
    if not isinstance(text, str):
        # Photos, documents etc. carry their text in `caption`.
        text = msg.get('caption')
        entities = msg.get('caption_entities')
    entity_types = tuple(
        str(e.get('type') or '') for e in (entities if isinstance(entities, list) else []) if isinstance(e, dict)
    )

    return IncomingMessage(
        chat_id=chat_id,
        user_id=user_id,
        date=date,
        text=text if isinstance(text, str) else '',
        first_name=_str_field(frm, 'first_name'),
        last_name=_str_field(frm, 'last_name'),
        username=_str_field(frm, 'username'),
        entity_types=entity_types,
        message_id=message_id,
    )


def _result_message_id(resp: object) -> int:
    if not isinstance(resp, dict):
        return 0
    result = resp.get('result')
    if not isinstance(result, dict):
        return 0
    try:
        return int(result.get('message_id') or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class LiveResponse:
    """Last delivered report in a chat, re-rendered as new messages arrive."""

    invocation: CommandInvocation
    message_id: int
    text: str
    trailing_messages: int = 0


@dataclass
class UpdateProcessor:
    api: TelegramAPI
    store: MetadataStore
    keywords: KeywordMatcher
    bot_username: str = ''
    live_window: int = LIVE_WINDOW_MESSAGES
    log: BotLog = field(default_factory=BotLog)

    live_responses: dict[int, LiveResponse] = field(default_factory=dict, init=False)

    def process_updates(self, updates: Iterable[dict[str, Any]]) -> int:
        """Handle one getUpdates batch.

        Store errors propagate and abort the batch. Any other failure is logged
        and only skips the update that raised it.
        """
        handled = 0
        for upd in updates:
            self.log.debug(f'update: {upd}')
            msg = parse_message(upd.get('message')) if isinstance(upd, dict) else None
            if msg is None:
                continue
            try:
                self.process_message(msg)
            except StoreError:
                raise
            except Exception as e:
                update_id = upd.get('update_id') if isinstance(upd, dict) else None
                self.log.error(
                    f'update {update_id} failed chat_id={msg.chat_id} err={type(e).__name__}: {str(e)[:200]}'
                )
                continue
            handled += 1
        return handled

    def process_message(self, msg: IncomingMessage) -> None:
        self.store.add_user_name(msg.user_id, msg.sender_name)

        if msg.is_command:
            # Commands never count as activity, recognized or not.
            self._handle_command(msg)
            return

        for keyword in self.keywords.find_all(msg.text):
            points = self.store.add_keyword_point(keyword, msg.chat_id, msg.user_id)
            name = self.store.get_user_name(msg.user_id) or str(msg.user_id)
            self._send(chat_id=msg.chat_id, text=f'+1 {keyword}: {name} ({points})', reply_to=msg.message_id)

        live = self.live_responses.get(msg.chat_id)
        if live is not None:
            live.trailing_messages += 1
        self.store.add_message(msg.chat_id, msg.user_id, msg.date)

        if live is not None and live.trailing_messages <= self.live_window:
            self._refresh(msg.chat_id, live)

    # -----------------------------
    # Commands
    # -----------------------------
    def command_word(self, text: str) -> str:
        """'/tilasto@MyBot 2h' -> '/tilasto'. Empty when addressed to another bot."""
        parts = (text or '').strip().split(maxsplit=1)
        if not parts:
            return ''
        word = parts[0]
        if '@' in word:
            word, target = word.split('@', 1)
            own = (self.bot_username or '').strip().lstrip('@')
            if own and target.casefold() != own.casefold():
                return ''
        return word.casefold()

    def _handle_command(self, msg: IncomingMessage) -> None:
        word = self.command_word(msg.text)
        command = lookup_command(word) if word else None
        if command is None:
            self.log.debug(f'ignoring unknown command {msg.text.split(maxsplit=1)[:1]} chat_id={msg.chat_id}')
            return

        invocation = CommandInvocation(command=command, command_text=msg.text, chat_id=msg.chat_id)
        text = invocation.run(self.store)
        message_id = self._send(chat_id=msg.chat_id, text=text, reply_to=msg.message_id)
        if message_id <= 0:
            return
        self.live_responses[msg.chat_id] = LiveResponse(invocation=invocation, message_id=message_id, text=text)
        self.log.info(f'{command.name} chat_id={msg.chat_id} delivered message_id={message_id}')

    def _refresh(self, chat_id: int, live: LiveResponse) -> None:
        text = live.invocation.run(self.store)
        if text == live.text:
            return
        if self._edit(chat_id=chat_id, message_id=live.message_id, text=text):
            live.text = text

    # -----------------------------
    # Delivery (best-effort)
    # -----------------------------
    def _send(self, *, chat_id: int, text: str, reply_to: int = 0) -> int:
        try:
            resp = self.api.send_message(chat_id=chat_id, text=text, reply_to_message_id=reply_to or None)
        except Exception as e:
            self.log.warn(f'[tg] send_message failed chat_id={chat_id} err={str(e)[:200]}')
            return 0
        return _result_message_id(resp)

    def _edit(self, *, chat_id: int, message_id: int, text: str) -> bool:
        try:
            self.api.edit_message_text(chat_id=chat_id, message_id=message_id, text=text)
        except Exception as e:
            # Telegram returns "Bad Request: message is not modified" if the text is unchanged.
            if 'message is not modified' in str(e).lower():
                return True
            self.log.warn(f'[tg] edit_message_text failed chat_id={chat_id} message_id={message_id} err={str(e)[:200]}')
            return False
        return True
