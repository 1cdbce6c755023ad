"""Results streamed by import/export passes, and the channel carrying them.

Each pass runs in one background thread and sends its results over a
``ResultChannel``. The channel is unbounded and has a single consumer: the
caller iterates it until the pass closes it.
"""

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from bugbridge.services.errors import InvariantViolation, PassCancelledError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


class ResultKind(str, enum.Enum):
    """What a single result reports"""
    NOTHING = "nothing"
    BUG = "bug"
    COMMENT = "comment"
    COMMENT_EDITION = "comment_edition"
    STATUS_CHANGE = "status_change"
    TITLE_EDITION = "title_edition"
    LABEL_CHANGE = "label_change"
    IDENTITY = "identity"
    ERROR = "error"


@dataclass(frozen=True)
class SyncResult:
    kind: ResultKind
    entity_id: str = ""
    reason: str = ""
    error: Optional[BaseException] = None

    @property
    def is_fatal(self) -> bool:
        """True when the error is an invariant violation rather than a recoverable failure."""
        return isinstance(self.error, InvariantViolation)

    def __str__(self) -> str:
        if self.kind == ResultKind.ERROR:
            prefix = "invariant violation" if self.is_fatal else "error"
            where = f" ({self.entity_id})" if self.entity_id else ""
            return f"{prefix}{where}: {self.error}"
        if self.kind == ResultKind.NOTHING:
            return f"nothing: {self.entity_id}: {self.reason}"
        return f"{self.kind.value}: {self.entity_id}"


@dataclass(frozen=True)
class ImportResult(SyncResult):
    pass


@dataclass(frozen=True)
class ExportResult(SyncResult):
    pass


@dataclass
class SyncContext:
    """Cancellation and time bounds shared by every remote call of a pass.

    ``timeout`` bounds each individual call; ``deadline`` (a ``time.monotonic``
    value) optionally bounds the whole pass.
    """

    timeout: float = DEFAULT_TIMEOUT_SECONDS
    deadline: Optional[float] = None
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_budget(cls, seconds: float, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> "SyncContext":
        return cls(timeout=timeout, deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def call_timeout(self) -> float:
        """Timeout for the next remote call, never past the pass deadline.

        Raises ``PassCancelledError`` once the pass is cancelled or its
        deadline has passed: no remote call may start after that.
        """
        if self._cancel_event.is_set():
            raise PassCancelledError()
        if self.deadline is None:
            return self.timeout
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise PassCancelledError("pass deadline exceeded")
        return min(self.timeout, remaining)


_CLOSED = object()


class ResultChannel:
    """Unbounded single-consumer channel of results"""

    def __init__(self):
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False

    def send(self, result: SyncResult) -> None:
        if self._closed:
            raise InvariantViolation("send on a closed result channel")
        self._queue.put(result)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[SyncResult]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


def run_pass(name: str, body: Callable[[ResultChannel], None], error_type=ImportResult) -> ResultChannel:
    """Run ``body`` in a background thread and return the channel it feeds."""
    channel = ResultChannel()

    def _target():
        try:
            body(channel)
        except Exception as e:
            # Anything escaping the driver is still reported exactly once.
            logger.error(f"{name} pass failed: {e}")
            channel.send(error_type(ResultKind.ERROR, error=e))
        finally:
            channel.close()

    thread = threading.Thread(target=_target, name=f"bugbridge-{name}", daemon=True)
    thread.start()
    return channel
