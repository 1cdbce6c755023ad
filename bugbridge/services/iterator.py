"""Resumable pagination over GitLab listings.

A ``Cursor`` walks one paginated listing, one page at a time. Its lifecycle:

    EMPTY --advance--> FETCHING --page with items--> CACHED
    FETCHING --empty page--> EXHAUSTED
    FETCHING --error--> ERRORED
    CACHED --advance within page--> CACHED
    CACHED --page consumed, more pages--> FETCHING
    CACHED --page consumed, last page--> EXHAUSTED

EXHAUSTED and ERRORED are terminal until ``reset``: ``advance`` returns False
without touching the network. ``reset`` moves back to EMPTY for a new scope.

``IssueIterator`` composes an issue cursor with per-issue note and label
event cursors and keeps a single sticky error for the whole pass.
"""

import enum
import logging
from datetime import datetime
from typing import Any, Callable, Generic, List, Optional, TypeVar

from bugbridge.services.errors import PassCancelledError
from bugbridge.services.gitlab_client import Page, RemoteIssue, RemoteLabelEvent, RemoteNote
from bugbridge.services.results import SyncContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

# fetch(scope, page, per_page, timeout) -> Page
PageFetcher = Callable[[Any, int, int, float], Page]


class CursorState(str, enum.Enum):
    EMPTY = "empty"
    FETCHING = "fetching"
    CACHED = "cached"
    EXHAUSTED = "exhausted"
    ERRORED = "errored"


class Cursor(Generic[T]):
    """Pagination state for one listing scope"""

    def __init__(self, fetch: PageFetcher, capacity: int, scope: Any = None):
        self._fetch = fetch
        self.capacity = capacity
        self.fetch_count = 0
        self.reset(scope)

    def reset(self, scope: Any = None) -> None:
        self.scope = scope
        self.state = CursorState.EMPTY
        self.page = 1
        self.last_page = False
        self.error: Optional[BaseException] = None
        self._cache: List[T] = []
        self._index = -1

    def advance(self, ctx: SyncContext) -> bool:
        """Move to the next item, fetching a page only when the buffer is consumed."""
        if self.state in (CursorState.EXHAUSTED, CursorState.ERRORED):
            return False

        if self.state == CursorState.CACHED and self._index < len(self._cache) - 1:
            self._index += 1
            return True

        if self.last_page:
            self._drop_buffer(CursorState.EXHAUSTED)
            return False

        return self._fetch_next(ctx)

    def current(self) -> T:
        if self.state != CursorState.CACHED:
            raise LookupError(f"cursor has no current value (state: {self.state.value})")
        return self._cache[self._index]

    def _fetch_next(self, ctx: SyncContext) -> bool:
        try:
            timeout = ctx.call_timeout()
        except PassCancelledError:
            # Not an error: the cursor stays where it was.
            return False

        self.state = CursorState.FETCHING
        self.fetch_count += 1
        try:
            result = self._fetch(self.scope, self.page, self.capacity, timeout)
        except Exception as e:
            # Sticky: the owner surfaces it, nothing here retries.
            self._drop_buffer(CursorState.ERRORED)
            self.error = e
            return False

        if result.is_last:
            self.last_page = True

        if not result.items:
            self._drop_buffer(CursorState.EXHAUSTED)
            return False

        self._cache = list(result.items)
        self._index = 0
        self.page += 1
        self.state = CursorState.CACHED
        return True

    def _drop_buffer(self, state: CursorState) -> None:
        self._cache = []
        self._index = -1
        self.state = state


class IssueIterator:
    """Issues of a project, and for the current issue its notes and label events.

    The first error met by any cursor becomes the iterator's sticky error and
    stops every further advance, including the other cursors.
    """

    def __init__(
        self,
        ctx: SyncContext,
        client,
        project_id: str,
        capacity: int = 10,
        since: Optional[datetime] = None,
    ):
        self.ctx = ctx
        self.client = client
        self.project_id = project_id
        self.since = since
        self._error: Optional[BaseException] = None

        self.issue: Cursor[RemoteIssue] = Cursor(self._fetch_issues, capacity)
        self.note: Cursor[RemoteNote] = Cursor(self._fetch_notes, capacity)
        self.label_event: Cursor[RemoteLabelEvent] = Cursor(self._fetch_label_events, capacity)

    @property
    def error(self) -> Optional[BaseException]:
        """First error encountered, if any"""
        return self._error

    def _fetch_issues(self, _scope, page: int, per_page: int, timeout: float) -> Page:
        return self.client.list_issues(
            self.project_id, page=page, per_page=per_page, updated_after=self.since, timeout=timeout
        )

    def _fetch_notes(self, issue_iid, page: int, per_page: int, timeout: float) -> Page:
        return self.client.list_issue_notes(
            self.project_id, issue_iid, page=page, per_page=per_page, timeout=timeout
        )

    def _fetch_label_events(self, issue_iid, page: int, per_page: int, timeout: float) -> Page:
        return self.client.list_issue_label_events(
            self.project_id, issue_iid, page=page, per_page=per_page, timeout=timeout
        )

    def _advance(self, cursor: Cursor) -> bool:
        if self._error is not None or self.ctx.cancelled:
            return False
        more = cursor.advance(self.ctx)
        if cursor.error is not None:
            self._error = cursor.error
            return False
        return more

    def next_issue(self) -> bool:
        more = self._advance(self.issue)
        if more:
            # Child cursors are scoped to the current issue.
            iid = self.issue.current().iid
            self.note.reset(iid)
            self.label_event.reset(iid)
        return more

    def issue_value(self) -> RemoteIssue:
        return self.issue.current()

    def next_note(self) -> bool:
        return self._advance(self.note)

    def note_value(self) -> RemoteNote:
        return self.note.current()

    def next_label_event(self) -> bool:
        return self._advance(self.label_event)

    def label_event_value(self) -> RemoteLabelEvent:
        return self.label_event.current()
