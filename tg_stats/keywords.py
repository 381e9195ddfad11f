from __future__ import annotations

import re
from collections.abc import Iterable


class KeywordMatcher:
    """Case-insensitive multi-keyword substring search.

    Keywords and text are both casefolded before matching, so 'Straße' in a
    message scores for the keyword 'strasse' and vice versa. One compiled
    alternation, longest keyword first, finds non-overlapping leftmost-longest
    matches in a single pass.
    """

    def __init__(self, keywords: Iterable[str]) -> None:
        seen: list[str] = []
        for kw in keywords:
            k = str(kw or '').strip().casefold()
            if k and k not in seen:
                seen.append(k)
        self.keywords: tuple[str, ...] = tuple(seen)
        self._pattern: re.Pattern[str] | None = None
        if seen:
            alternatives = sorted(seen, key=len, reverse=True)
            self._pattern = re.compile('|'.join(re.escape(k) for k in alternatives))

    def find_all(self, text: str) -> list[str]:
        if self._pattern is None or not text:
            return []
        return [m.group(0) for m in self._pattern.finditer(text.casefold())]
