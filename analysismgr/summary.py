"""Run summary log shared by the manager components."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

DATE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class RunSummary:
    """Append-only list of one-line summary entries.

    When ``path`` is given every entry is also appended to that file.
    """

    def __init__(self, path: Optional[Path] = None, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.path = Path(path) if path else None
        self._clock = clock
        self._entries: List[str] = []

    def add(self, entry: str) -> None:
        self._entries.append(entry)
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(f"{self._clock().strftime(DATE_TIME_FORMAT)}\t{entry}\n")
        except OSError as exc:
            logger.warning("Unable to append to summary file %s: %s", self.path, exc)

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)
