from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

DEFAULT_ROOT_URL = 'https://api.telegram.org'

# The bot only reacts to new messages; everything else is filtered server-side.
ALLOWED_UPDATES = ('message',)


class TelegramAPIError(RuntimeError):
    """Bot API answered with ok=false (the description is kept in the message)."""

    def __init__(self, method: str, response: dict[str, Any]) -> None:
        self.method = method
        self.error_code = response.get('error_code')
        self.description = str(response.get('description') or '')
        super().__init__(f'Telegram API error: {method} {self.error_code}: {self.description or response}')


@dataclass(frozen=True)
class TelegramAPI:
    token: str
    root_url: str = DEFAULT_ROOT_URL

    def __post_init__(self) -> None:
        object.__setattr__(self, 'root_url', (self.root_url or '').strip().rstrip('/'))

    @property
    def base_url(self) -> str:
        if not self.root_url:
            raise RuntimeError('Telegram API base URL is empty')
        return f'{self.root_url}/bot{self.token}/'

    # -----------------------------
    # Transport
    # -----------------------------
    def _build_request(self, method: str, params: dict[str, Any]) -> urllib.request.Request:
        url = self.base_url + method
        if method == 'getUpdates':
            # getUpdates goes out as GET; list params are JSON-encoded in the query.
            query = {k: (json.dumps(v) if isinstance(v, (list, tuple)) else v) for k, v in params.items() if v is not None}
            if query:
                url += '?' + urllib.parse.urlencode(query)
            return urllib.request.Request(url, method='GET')
        payload = json.dumps(params, ensure_ascii=False).encode('utf-8')
        return urllib.request.Request(
            url, data=payload, method='POST', headers={'Content-Type': 'application/json; charset=utf-8'}
        )

    @staticmethod
    def _decode(method: str, raw: str) -> dict[str, Any]:
        try:
            obj = json.loads(raw or '{}')
        except json.JSONDecodeError as e:
            raise RuntimeError(f'Telegram invalid JSON: {raw[:500]}') from e
        if not isinstance(obj, dict):
            raise RuntimeError(f'Telegram invalid JSON (not an object): {raw[:500]}')
        if not obj.get('ok', False):
            raise TelegramAPIError(method, obj)
        return obj

    def _call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float = 30) -> dict[str, Any]:
        req = self._build_request(method, params or {})
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read().decode('utf-8', errors='replace')
        except urllib.error.HTTPError as e:
            # 4xx bodies carry the same {"ok": false, "description": ...} document.
            try:
                body = e.read().decode('utf-8', errors='replace')
            except OSError:
                body = str(e)
            raise RuntimeError(f'Telegram HTTPError {e.code}: {body}') from e
        except (urllib.error.URLError, TimeoutError, ConnectionError, OSError) as e:
            raise RuntimeError(f'Telegram URLError: {e}') from e
        return self._decode(method, raw)

    # -----------------------------
    # Methods used by the bot
    # -----------------------------
    def get_updates(self, *, offset: int | None, timeout: int, limit: int = 100) -> list[dict[str, Any]]:
        """Long-poll for new updates; non-object entries in `result` are dropped."""
        params: dict[str, Any] = {
            'offset': int(offset) if offset is not None else None,
            'timeout': int(timeout),
            'limit': int(limit),
            'allowed_updates': list(ALLOWED_UPDATES),
        }
        result = self._call('getUpdates', params, timeout=int(timeout) + 5).get('result')
        if not isinstance(result, list):
            return []
        return [u for u in result if isinstance(u, dict)]

    def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        disable_web_page_preview: bool = True,
        reply_to_message_id: int | None = None,
        timeout: int = 30,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            'chat_id': int(chat_id),
            'text': text,
            'disable_web_page_preview': bool(disable_web_page_preview),
        }
        if reply_to_message_id is not None:
            params['reply_to_message_id'] = int(reply_to_message_id)
            # The triggering message may already be deleted.
            params['allow_sending_without_reply'] = True
        return self._call('sendMessage', params, timeout=timeout)

    def edit_message_text(
        self,
        *,
        chat_id: int,
        message_id: int,
        text: str,
        disable_web_page_preview: bool = True,
    ) -> dict[str, Any]:
        params = {
            'chat_id': int(chat_id),
            'message_id': int(message_id),
            'text': text,
            'disable_web_page_preview': bool(disable_web_page_preview),
        }
        return self._call('editMessageText', params)

    def get_me(self) -> dict[str, Any]:
        return self._call('getMe', timeout=20)
