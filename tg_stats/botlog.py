from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO


@dataclass
class BotLog:
    """Line logger: stdout plus an optional append-only log file.

    Debug lines are printed only when `verbose` is set.
    """

    path: Path | None = None
    verbose: bool = False
    stream: TextIO | None = field(default=None, repr=False)

    def _write(self, level: str, msg: str) -> None:
        if not msg:
            return
        ts = time.strftime('%Y-%m-%d %H:%M:%S')
        line = f'[{ts}] [{level}] {msg}'
        try:
            print(line, file=self.stream or sys.stdout, flush=True)
        except Exception:
            pass
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open('a', encoding='utf-8') as f:
                f.write(line + '\n')
        except Exception:
            pass

    def info(self, msg: str) -> None:
        self._write('INFO', msg)

    def warn(self, msg: str) -> None:
        self._write('WARN', msg)

    def error(self, msg: str) -> None:
        self._write('ERROR', msg)

    def debug(self, msg: str) -> None:
        if self.verbose:
            self._write('DEBUG', msg)
