"""Closeable pydantic bases shared by config and the logger.

Lives apart from config.py so that log.py can use it without an
import cycle.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel


@runtime_checkable
class Closeable(Protocol):
    def close(self) -> None:
        ...


def _closeable_children(value: Any) -> Iterator[Closeable]:
    if isinstance(value, Closeable):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _closeable_children(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _closeable_children(item)


class BaseCloseable(BaseModel):
    """Model that closes its closeable fields when it is closed.

    Fields holding lists or dicts are searched one level at a time, so
    a list of sinks closes like a single sink. One child failing to
    close does not stop the others.

    State → Config → Logger → Sink is the chain this exists for: the
    CLI closes the config once a command finishes and the file sink
    gets flushed.
    """

    def close(self):
        for field_name in self.__class__.model_fields:
            for child in _closeable_children(getattr(self, field_name, None)):
                try:
                    child.close()
                except Exception as e:
                    print(f"checkgate: error closing {field_name}: {e}",
                          file=sys.stderr)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: U100
        self.close()
        return False


class BaseConfig(BaseCloseable):
    """Configuration section: loaded from YAML/env/CLI, fixed for a run."""


__all__ = ["Closeable", "BaseCloseable", "BaseConfig"]
