"""GitLab API client wrapper"""
import gitlab
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import time
from urllib.parse import quote

from bugbridge.config import normalize_base_url
from bugbridge.services.results import DEFAULT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


def parse_gitlab_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse GitLab ISO8601 timestamps into UTC tz-naive datetimes."""
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _user_ref(data: Optional[Dict[str, Any]]) -> "RemoteUserRef":
    data = data or {}
    return RemoteUserRef(id=int(data.get("id") or 0), username=data.get("username") or "")


@dataclass(frozen=True)
class RemoteUserRef:
    id: int
    username: str


@dataclass(frozen=True)
class RemoteUser:
    id: int
    username: str
    name: str = ""
    public_email: str = ""
    avatar_url: str = ""


@dataclass(frozen=True)
class RemoteIssue:
    id: int
    iid: int
    title: str
    description: str
    author: RemoteUserRef
    created_at: Optional[datetime]
    web_url: str = ""
    state: str = "opened"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteIssue":
        return cls(
            id=int(data["id"]),
            iid=int(data["iid"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            author=_user_ref(data.get("author")),
            created_at=parse_gitlab_datetime(data.get("created_at")),
            web_url=data.get("web_url") or "",
            state=data.get("state") or "opened",
        )


@dataclass(frozen=True)
class RemoteNote:
    id: int
    body: str
    system: bool
    author: RemoteUserRef
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteNote":
        created_at = parse_gitlab_datetime(data.get("created_at"))
        return cls(
            id=int(data["id"]),
            body=data.get("body") or "",
            system=bool(data.get("system")),
            author=_user_ref(data.get("author")),
            created_at=created_at,
            updated_at=parse_gitlab_datetime(data.get("updated_at")) or created_at,
        )


@dataclass(frozen=True)
class RemoteLabelEvent:
    id: int
    action: str
    label_name: Optional[str]
    user: RemoteUserRef
    created_at: Optional[datetime]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteLabelEvent":
        # `label` is null when the label has since been deleted.
        label = data.get("label") or {}
        return cls(
            id=int(data["id"]),
            action=data.get("action") or "",
            label_name=label.get("name"),
            user=_user_ref(data.get("user")),
            created_at=parse_gitlab_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class RemoteIssueRef:
    """What GitLab hands back for a freshly created issue"""

    id: int
    iid: int
    web_url: str


@dataclass
class Page:
    """One page of a paginated listing"""

    items: List[Any] = field(default_factory=list)
    page: int = 1
    per_page: int = 20
    # None when GitLab omits X-Total-Pages (very large collections).
    total_pages: Optional[int] = None

    @property
    def is_last(self) -> bool:
        if self.total_pages is None:
            return len(self.items) < self.per_page
        return self.total_pages <= self.page


class GitLabClient:
    """Wrapper for GitLab API operations"""

    def __init__(self, url: str, access_token: str, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """Initialize GitLab client"""
        self.url = normalize_base_url(url)
        self.timeout = timeout
        self.gl = gitlab.Gitlab(self.url, private_token=access_token, timeout=timeout)
        self.gl.auth()

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Best-effort retry predicate for transient GitLab failures."""
        # python-gitlab exceptions often carry an HTTP response code
        rc = getattr(exc, "response_code", None)
        if rc in (429, 500, 502, 503, 504):
            return True
        # If we can't classify, don't retry to avoid hiding real issues.
        return False

    def _with_retries(self, fn, *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    @staticmethod
    def _normalize_issue_payload(issue_data: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize payload fields for GitLab API quirks."""
        data = dict(issue_data)

        # GitLab API expects comma-separated string for `labels`; an empty string clears them.
        if "labels" in data:
            labels = data.get("labels")
            if not labels:
                data["labels"] = ""
            elif isinstance(labels, (list, tuple, set)):
                data["labels"] = ",".join(sorted(labels))

        return data

    @staticmethod
    def _project_path(project_id: str) -> str:
        return f"/projects/{quote(str(project_id), safe='')}"

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.timeout if timeout is None else timeout

    def _get_page(
        self, path: str, query: Dict[str, Any], page: int, per_page: int, timeout: Optional[float]
    ) -> Page:
        query_data = dict(query, page=page, per_page=per_page)
        resp = self._with_retries(
            lambda: self.gl.http_get(path, query_data=query_data, raw=True, timeout=self._timeout(timeout))
        )
        total = resp.headers.get("X-Total-Pages")
        return Page(
            items=list(resp.json()),
            page=page,
            per_page=per_page,
            total_pages=int(total) if total else None,
        )

    def list_issues(
        self,
        project_id: str,
        *,
        page: int = 1,
        per_page: int = 20,
        updated_after: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> Page:
        """One page of the project issues, oldest first, all states"""
        params: Dict[str, Any] = {
            "state": "all",
            "scope": "all",
            "issue_type": "issue",
            "order_by": "created_at",
            "sort": "asc",
        }
        if updated_after:
            # Our DB uses UTC tz-naive; assume UTC if tzinfo is missing.
            if updated_after.tzinfo is None:
                updated_after = updated_after.replace(tzinfo=timezone.utc)
            params["updated_after"] = updated_after.isoformat()
        try:
            result = self._get_page(f"{self._project_path(project_id)}/issues", params, page, per_page, timeout)
        except Exception as e:
            logger.error(f"Failed to list issues for project {project_id} (page {page}): {e}")
            raise
        result.items = [RemoteIssue.from_api(item) for item in result.items]
        return result

    def list_issue_notes(
        self,
        project_id: str,
        issue_iid: int,
        *,
        page: int = 1,
        per_page: int = 20,
        timeout: Optional[float] = None,
    ) -> Page:
        """One page of the notes of an issue, sorted by creation time ascending"""
        params = {"order_by": "created_at", "sort": "asc"}
        path = f"{self._project_path(project_id)}/issues/{int(issue_iid)}/notes"
        try:
            result = self._get_page(path, params, page, per_page, timeout)
        except Exception as e:
            logger.error(f"Failed to list notes for issue {issue_iid} (page {page}): {e}")
            raise
        result.items = [RemoteNote.from_api(item) for item in result.items]
        return result

    def list_issue_label_events(
        self,
        project_id: str,
        issue_iid: int,
        *,
        page: int = 1,
        per_page: int = 20,
        timeout: Optional[float] = None,
    ) -> Page:
        """One page of the resource label events of an issue"""
        path = f"{self._project_path(project_id)}/issues/{int(issue_iid)}/resource_label_events"
        try:
            result = self._get_page(path, {}, page, per_page, timeout)
        except Exception as e:
            logger.error(f"Failed to list label events for issue {issue_iid} (page {page}): {e}")
            raise
        result.items = [RemoteLabelEvent.from_api(item) for item in result.items]
        return result

    def get_user(self, user_id: int, *, timeout: Optional[float] = None) -> RemoteUser:
        """Get a user profile by numeric id"""
        try:
            data = self._with_retries(
                lambda: self.gl.http_get(f"/users/{int(user_id)}", timeout=self._timeout(timeout))
            )
        except Exception as e:
            logger.error(f"Failed to get user {user_id}: {e}")
            raise
        return RemoteUser(
            id=int(data["id"]),
            username=data.get("username") or "",
            name=data.get("name") or "",
            public_email=data.get("public_email") or "",
            avatar_url=data.get("avatar_url") or "",
        )

    # POSTs aren't retried: a retried create could duplicate the issue or note.

    def create_issue(
        self, project_id: str, title: str, body: str, *, timeout: Optional[float] = None
    ) -> RemoteIssueRef:
        """Create a new issue"""
        try:
            data = self.gl.http_post(
                f"{self._project_path(project_id)}/issues",
                post_data={"title": title, "description": body},
                timeout=self._timeout(timeout),
            )
        except Exception as e:
            logger.error(f"Failed to create issue in project {project_id}: {e}")
            raise
        logger.info(f"Created issue #{data['iid']} in project {project_id}")
        return RemoteIssueRef(id=int(data["id"]), iid=int(data["iid"]), web_url=data.get("web_url") or "")

    def create_issue_note(
        self, project_id: str, issue_iid: int, body: str, *, timeout: Optional[float] = None
    ) -> int:
        """Create a note (comment) on an issue and return its id"""
        try:
            data = self.gl.http_post(
                f"{self._project_path(project_id)}/issues/{int(issue_iid)}/notes",
                post_data={"body": body},
                timeout=self._timeout(timeout),
            )
        except Exception as e:
            logger.error(f"Failed to create note on issue {issue_iid}: {e}")
            raise
        logger.info(f"Created note on issue #{issue_iid}")
        return int(data["id"])

    def update_issue_note(
        self, project_id: str, issue_iid: int, note_id: int, body: str, *, timeout: Optional[float] = None
    ) -> None:
        """Replace the body of an existing note"""
        path = f"{self._project_path(project_id)}/issues/{int(issue_iid)}/notes/{int(note_id)}"
        try:
            self._with_retries(
                lambda: self.gl.http_put(path, post_data={"body": body}, timeout=self._timeout(timeout))
            )
        except Exception as e:
            logger.error(f"Failed to update note {note_id} on issue {issue_iid}: {e}")
            raise

    def update_issue(
        self, project_id: str, issue_iid: int, issue_data: Dict[str, Any], *, timeout: Optional[float] = None
    ) -> None:
        """Update an existing issue (title, description, labels, state_event)"""
        payload = self._normalize_issue_payload(issue_data)
        path = f"{self._project_path(project_id)}/issues/{int(issue_iid)}"
        try:
            self._with_retries(lambda: self.gl.http_put(path, post_data=payload, timeout=self._timeout(timeout)))
        except Exception as e:
            logger.error(f"Failed to update issue {issue_iid} in project {project_id}: {e}")
            raise
        logger.info(f"Updated issue #{issue_iid} in project {project_id}")
