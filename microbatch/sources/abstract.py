"""
Source interfaces for the microbatch streaming engine.

A source hands the scheduler raw records it has not yet committed. Polls are
idempotent per offset: polling again from the same offset (for instance after
a crash before the checkpoint commit) returns at least the same records.
Absence of data is not an error; only genuine connectivity problems raise,
as `TransientSourceError`.
"""

from __future__ import annotations

import abc
from typing import List, Protocol, Tuple, runtime_checkable

from microbatch.domain.models import RawRecord

PollResult = Tuple[List[RawRecord], int]


@runtime_checkable
class Source(Protocol):
    """
    Common interface all sources must implement.

    Attributes
    ----------
    name : str
        A short machine-friendly identifier, used in logs.
    """

    name: str

    def poll(self, since_offset: int) -> PollResult:
        """
        Return records with offset >= `since_offset` and the next offset to poll from.

        Returns `([], since_offset)` when nothing new is available.
        """
        ...


class AbstractSource(abc.ABC):
    """
    Optional ABC helper for class-based sources.

    Subclasses set `name` and implement `poll`. `close` releases resources and
    is called by the scheduler when the stream terminates.
    """

    name: str

    @abc.abstractmethod
    def poll(self, since_offset: int) -> PollResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:
        return None


__all__ = ["AbstractSource", "PollResult", "Source"]
