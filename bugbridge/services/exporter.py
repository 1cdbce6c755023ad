"""Local bug store -> GitLab export"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from bugbridge.config import Settings
from bugbridge.services.bug_store import BugCache, BugStore, to_unix
from bugbridge.services.errors import (
    IdentityNotFoundError,
    InvariantViolation,
    MappingError,
    MissingIdentityTokenError,
    PassCancelledError,
)
from bugbridge.services.gitlab_client import GitLabClient
from bugbridge.services.metadata import (
    METAKEY_GITLAB_BASE_URL,
    METAKEY_GITLAB_ID,
    METAKEY_GITLAB_LOGIN,
    METAKEY_GITLAB_PROJECT,
    METAKEY_GITLAB_URL,
    METAKEY_ORIGIN,
    TARGET,
    issue_key,
    note_key,
    parse_issue_key,
    parse_note_key,
)
from bugbridge.services.operations import (
    AddCommentOperation,
    EditCommentOperation,
    LabelChangeOperation,
    SetMetadataOperation,
    SetStatusOperation,
    SetTitleOperation,
    Status,
)
from bugbridge.services.results import ExportResult, ResultChannel, ResultKind, SyncContext, run_pass

logger = logging.getLogger(__name__)


def state_event_for(status: Status) -> str:
    """GitLab state event bringing an issue to ``status``"""
    if status == Status.OPEN:
        return "reopen"
    if status == Status.CLOSED:
        return "close"
    raise InvariantViolation(f"unknown bug status {status!r}")


class GitLabExporter:
    """Push local bug operations that GitLab doesn't know about yet.

    Operations are sent with the token of their own author; operations whose
    author has no token are left alone. Each exported operation is tagged and
    committed right away, so an interrupted export resumes where it stopped.
    """

    def __init__(self, settings: Settings, store: BugStore, client_factory=GitLabClient):
        self.settings = settings
        self.store = store
        self.client_factory = client_factory
        self.base_url = settings.normalized_base_url
        self.project = settings.gitlab_project

        # identity id -> client built from that identity's own token
        self.identity_clients: Dict[str, object] = {}
        # operation id -> gitlab id, cleared for each bug
        self.cached_operation_ids: Dict[str, str] = {}

    def init(self) -> None:
        """Cache one client per identity we hold a token for."""
        self.identity_clients = {}
        for cred in self.settings.credentials():
            if cred.base_url != self.base_url:
                continue
            try:
                identity = self.store.resolve_identity_immutable_metadata(METAKEY_GITLAB_LOGIN, cred.login)
            except IdentityNotFoundError:
                logger.info(f"No local identity for GitLab login @{cred.login}; its token is unused")
                continue
            if identity.id not in self.identity_clients:
                self.identity_clients[identity.id] = self.client_factory(
                    cred.base_url, cred.token, timeout=self.settings.request_timeout_seconds
                )

    def get_identity_client(self, identity_id: str):
        client = self.identity_clients.get(identity_id)
        if client is None:
            raise MissingIdentityTokenError()
        return client

    def export_all(self, ctx: SyncContext, since: Optional[datetime] = None) -> ResultChannel:
        """Start an export pass in the background and return its result stream."""
        self.init()
        return run_pass("export", lambda out: self._export_all(ctx, since, out), error_type=ExportResult)

    def _export_all(self, ctx: SyncContext, since: Optional[datetime], out: ResultChannel) -> None:
        logger.info(f"Starting export to {self.base_url} project {self.project}")
        identity_ids: List[str] = list(self.identity_clients)

        for bug_id in self.store.all_bug_ids():
            if ctx.cancelled:
                logger.info("Export cancelled")
                return

            try:
                bug = self.store.resolve_bug(bug_id)
                snapshot = bug.snapshot()

                if since is not None and snapshot.create_operation.unix_time < to_unix(since):
                    out.send(ExportResult(ResultKind.NOTHING, entity_id=bug.id, reason="bug created before the since date"))
                    continue

                if snapshot.has_any_actor(*identity_ids):
                    self.export_bug(ctx, bug, out)
            except PassCancelledError:
                logger.info(f"Export cancelled during bug {bug_id}")
                return
            except MappingError as e:
                logger.warning(f"Skipping bug {bug_id}: {e}")
                out.send(ExportResult(ResultKind.ERROR, entity_id=bug_id, error=e))
                continue
            except Exception as e:
                logger.error(f"Export of bug {bug_id} failed: {e}")
                out.send(ExportResult(ResultKind.ERROR, entity_id=bug_id, error=e))
                return

        logger.info("Export finished")

    def export_bug(self, ctx: SyncContext, bug: BugCache, out: ResultChannel) -> None:
        """Publish a bug and its operations"""
        snapshot = bug.snapshot()
        self.cached_operation_ids = {}

        origin = snapshot.get_create_metadata(METAKEY_ORIGIN)
        if origin is not None and origin != TARGET:
            out.send(ExportResult(ResultKind.NOTHING, entity_id=bug.id, reason=f"issue tagged with origin: {origin}"))
            return

        create_op = snapshot.create_operation

        gitlab_id = snapshot.get_create_metadata(METAKEY_GITLAB_ID)
        if gitlab_id is not None:
            base_url = snapshot.get_create_metadata(METAKEY_GITLAB_BASE_URL)
            if base_url is not None and base_url != self.base_url:
                out.send(ExportResult(ResultKind.NOTHING, entity_id=bug.id, reason="skipping issue imported from another GitLab instance"))
                return

            project = snapshot.get_create_metadata(METAKEY_GITLAB_PROJECT)
            if project is None:
                raise MappingError("expected to find gitlab project id")
            if project != self.project:
                out.send(ExportResult(ResultKind.NOTHING, entity_id=bug.id, reason="skipping issue imported from another repository"))
                return

            issue_iid = parse_issue_key(gitlab_id)
        else:
            # Nothing to do without the token of the bug author.
            try:
                client = self.get_identity_client(snapshot.author_id)
            except MissingIdentityTokenError:
                out.send(ExportResult(ResultKind.NOTHING, entity_id=bug.id, reason="missing author token"))
                return

            if ctx.cancelled:
                return
            created = client.create_issue(
                self.project, create_op.title, create_op.message, timeout=ctx.call_timeout()
            )
            out.send(ExportResult(ResultKind.BUG, entity_id=bug.id))

            bug.set_metadata(
                create_op.id,
                {
                    METAKEY_ORIGIN: TARGET,
                    METAKEY_GITLAB_ID: issue_key(created.iid),
                    METAKEY_GITLAB_URL: created.web_url,
                    METAKEY_GITLAB_PROJECT: self.project,
                    METAKEY_GITLAB_BASE_URL: self.base_url,
                },
            )
            # Commit now so a retried export never creates the issue twice.
            bug.commit_as_needed()
            issue_iid = created.iid

        self.cached_operation_ids[create_op.id] = issue_key(issue_iid)

        bug_updated = False
        label_set = set()
        for op in snapshot.operations[1:]:
            # Whatever was exported so far is already tagged and committed.
            if ctx.cancelled:
                logger.info(f"Export of bug {bug.id} stopped: pass cancelled")
                return

            if isinstance(op, SetMetadataOperation):
                continue

            # Track labels even for operations that are not exported, so the
            # full set pushed later is right.
            if isinstance(op, LabelChangeOperation):
                label_set.update(op.added)
                label_set.difference_update(op.removed)

            # Already on GitLab, through import or a previous export.
            op_gitlab_id = op.get_metadata(METAKEY_GITLAB_ID)
            if op_gitlab_id is not None:
                self.cached_operation_ids[op.id] = op_gitlab_id
                continue

            try:
                client = self.get_identity_client(op.author_id)
            except MissingIdentityTokenError:
                continue

            timeout = ctx.call_timeout()
            exported_id = issue_key(issue_iid)

            if isinstance(op, AddCommentOperation):
                note_id = client.create_issue_note(self.project, issue_iid, op.message, timeout=timeout)
                exported_id = note_key(note_id)
                out.send(ExportResult(ResultKind.COMMENT, entity_id=op.id))

            elif isinstance(op, EditCommentOperation):
                if op.target == create_op.id:
                    # The issue description is the first comment.
                    client.update_issue(self.project, issue_iid, {"description": op.message}, timeout=timeout)
                else:
                    target_id = self.cached_operation_ids.get(op.target)
                    if target_id is None:
                        raise InvariantViolation(f"comment {op.target} edited before being exported")
                    note_id = parse_note_key(target_id)
                    client.update_issue_note(self.project, issue_iid, note_id, op.message, timeout=timeout)
                    exported_id = target_id
                out.send(ExportResult(ResultKind.COMMENT_EDITION, entity_id=op.id))

            elif isinstance(op, SetStatusOperation):
                client.update_issue(self.project, issue_iid, {"state_event": state_event_for(op.status)}, timeout=timeout)
                out.send(ExportResult(ResultKind.STATUS_CHANGE, entity_id=op.id))

            elif isinstance(op, SetTitleOperation):
                client.update_issue(self.project, issue_iid, {"title": op.title}, timeout=timeout)
                out.send(ExportResult(ResultKind.TITLE_EDITION, entity_id=op.id))

            elif isinstance(op, LabelChangeOperation):
                # GitLab replaces the label list: always send the whole set.
                client.update_issue(self.project, issue_iid, {"labels": sorted(label_set)}, timeout=timeout)
                out.send(ExportResult(ResultKind.LABEL_CHANGE, entity_id=op.id))

            else:
                raise InvariantViolation(f"unhandled operation type {type(op).__name__}")

            self.cached_operation_ids[op.id] = exported_id
            bug.set_metadata(op.id, {METAKEY_GITLAB_ID: exported_id})
            # Commit after each operation so nothing is exported twice.
            bug.commit_as_needed()
            bug_updated = True

        if not bug_updated:
            out.send(ExportResult(ResultKind.NOTHING, entity_id=bug.id, reason="nothing has been exported"))
