from __future__ import annotations

import itertools
import uuid
from typing import Callable, Optional


def uuid_hex() -> str:
    return uuid.uuid4().hex


class IdGenerator:
    """Prefixed id source.

    One instance is owned by the TTSRelay facade and handed to its providers,
    so ids never come from process-wide state.

    Args:
        prefix: Prepended to every id (default "id#").
        factory: Zero-arg callable producing the unique part (default uuid4 hex).
    """

    def __init__(self, prefix: str = "id#", factory: Optional[Callable[[], str]] = None) -> None:
        self._prefix = prefix
        self._factory = factory or uuid_hex

    def next_id(self) -> str:
        return f"{self._prefix}{self._factory()}"

    @classmethod
    def counter(cls, prefix: str = "", start: int = 1) -> "IdGenerator":
        """Deterministic generator ("1", "2", ...) for tests and demos."""
        seq = itertools.count(start)
        return cls(prefix, lambda: str(next(seq)))
