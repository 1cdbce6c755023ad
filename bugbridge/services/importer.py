"""GitLab -> local bug store import"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bugbridge.config import Settings
from bugbridge.services.bug_store import BugCache, BugExcerpt, BugStore, to_unix
from bugbridge.services.classifier import NoteKind, get_note_type
from bugbridge.services.errors import (
    BugNotFoundError,
    InvariantViolation,
    MappingError,
    MissingIdentityTokenError,
    NoMatchingOperationError,
    PassCancelledError,
)
from bugbridge.services.gitlab_client import GitLabClient, RemoteIssue, RemoteLabelEvent, RemoteNote
from bugbridge.services.identity import IdentityResolver
from bugbridge.services.iterator import IssueIterator
from bugbridge.services.metadata import (
    METAKEY_GITLAB_BASE_URL,
    METAKEY_GITLAB_ID,
    METAKEY_GITLAB_PROJECT,
    METAKEY_GITLAB_URL,
    METAKEY_ORIGIN,
    TARGET,
    issue_key,
    label_event_key,
    note_key,
)
from bugbridge.services.results import ImportResult, ResultChannel, ResultKind, SyncContext, run_pass
from bugbridge.services.text import cleanup

logger = logging.getLogger(__name__)

# Kinds with no local equivalent; importing them is a no-op.
IGNORED_NOTE_KINDS = frozenset(
    {
        NoteKind.UNKNOWN,
        NoteKind.ASSIGNED,
        NoteKind.UNASSIGNED,
        NoteKind.MILESTONE_CHANGED,
        NoteKind.MILESTONE_REMOVED,
        NoteKind.DUE_DATE_CHANGED,
        NoteKind.DUE_DATE_REMOVED,
        NoteKind.LOCKED,
        NoteKind.UNLOCKED,
        NoteKind.MENTIONED_IN_ISSUE,
        NoteKind.MENTIONED_IN_MERGE_REQUEST,
    }
)


def _unix(value: Optional[datetime]) -> int:
    return to_unix(value or datetime.now(timezone.utc))


class GitLabImporter:
    """Import GitLab issues, notes and label events as local bug operations.

    Every created operation is tagged with the GitLab id it comes from, so
    running the import again only adds what is missing.
    """

    def __init__(self, settings: Settings, store: BugStore, client_factory=GitLabClient):
        self.settings = settings
        self.store = store
        self.client_factory = client_factory
        self.base_url = settings.normalized_base_url
        self.project = settings.gitlab_project
        self.client = None
        self.iterator: Optional[IssueIterator] = None

    def init(self) -> None:
        """Build the API client from the default login's credential."""
        creds = [c for c in self.settings.credentials() if c.login == self.settings.default_login]
        if not creds:
            raise MissingIdentityTokenError(
                f"no token for default login {self.settings.default_login!r} on {self.base_url}"
            )
        self.client = self.client_factory(
            self.base_url, creds[0].token, timeout=self.settings.request_timeout_seconds
        )

    def import_all(self, ctx: SyncContext, since: Optional[datetime] = None) -> ResultChannel:
        """Start an import pass in the background and return its result stream."""
        if self.client is None:
            self.init()
        return run_pass("import", lambda out: self._import_all(ctx, since, out), error_type=ImportResult)

    def _import_all(self, ctx: SyncContext, since: Optional[datetime], out: ResultChannel) -> None:
        logger.info(f"Starting import from {self.base_url} project {self.project}")
        self.iterator = IssueIterator(ctx, self.client, self.project, self.settings.page_size, since)
        identities = IdentityResolver(self.store, self.client, ctx, notify=out.send)

        while self.iterator.next_issue():
            issue = self.iterator.issue_value()
            try:
                self._import_issue(issue, identities, out)
            except PassCancelledError:
                # Staged operations of this issue are dropped; the next pass redoes them.
                logger.info(f"Import cancelled during issue #{issue.iid}")
                return
            except MappingError as e:
                logger.warning(f"Skipping issue #{issue.iid}: {e}")
                out.send(ImportResult(ResultKind.ERROR, entity_id=issue_key(issue.iid), error=e))
                continue
            except Exception as e:
                logger.error(f"Import of issue #{issue.iid} failed: {e}")
                out.send(ImportResult(ResultKind.ERROR, entity_id=issue_key(issue.iid), error=e))
                return

        if self.iterator.error is not None:
            logger.error(f"Import aborted: {self.iterator.error}")
            out.send(ImportResult(ResultKind.ERROR, error=self.iterator.error))
            return

        if ctx.cancelled:
            logger.info("Import cancelled")
        else:
            logger.info("Import finished")

    def _import_issue(self, issue: RemoteIssue, identities: IdentityResolver, out: ResultChannel) -> None:
        bug = self.ensure_issue(issue, identities, out)

        while self.iterator.next_note():
            self.ensure_note(bug, issue, self.iterator.note_value(), identities, out)

        while self.iterator.next_label_event():
            self.ensure_label_event(bug, self.iterator.label_event_value(), identities, out)

        # Whatever was staged before an iterator error is still a valid checkpoint.
        if not bug.needs_commit():
            out.send(ImportResult(ResultKind.NOTHING, entity_id=bug.id, reason="no imported operation"))
        else:
            bug.commit()

    def _matches_issue(self, issue: RemoteIssue):
        def matcher(excerpt: BugExcerpt) -> bool:
            meta = excerpt.create_metadata
            return (
                meta.get(METAKEY_ORIGIN) == TARGET
                and meta.get(METAKEY_GITLAB_ID) == issue_key(issue.iid)
                and meta.get(METAKEY_GITLAB_PROJECT) == self.project
                and meta.get(METAKEY_GITLAB_BASE_URL) == self.base_url
            )

        return matcher

    def ensure_issue(self, issue: RemoteIssue, identities: IdentityResolver, out: ResultChannel) -> BugCache:
        author = identities.resolve(issue.author.id)

        try:
            return self.store.resolve_bug_matcher(self._matches_issue(issue))
        except BugNotFoundError:
            pass

        bug = self.store.new_bug(
            author,
            _unix(issue.created_at),
            issue.title,
            cleanup(issue.description),
            metadata={
                METAKEY_ORIGIN: TARGET,
                METAKEY_GITLAB_ID: issue_key(issue.iid),
                METAKEY_GITLAB_URL: issue.web_url,
                METAKEY_GITLAB_PROJECT: self.project,
                METAKEY_GITLAB_BASE_URL: self.base_url,
            },
        )
        logger.info(f"Imported issue #{issue.iid} as bug {bug.id}")
        out.send(ImportResult(ResultKind.BUG, entity_id=bug.id))
        return bug

    def ensure_note(
        self,
        bug: BugCache,
        issue: RemoteIssue,
        note: RemoteNote,
        identities: IdentityResolver,
        out: ResultChannel,
    ) -> None:
        gitlab_id = note_key(note.id)
        try:
            mapped_op_id: Optional[str] = bug.resolve_operation_with_metadata(METAKEY_GITLAB_ID, gitlab_id)
        except NoMatchingOperationError:
            mapped_op_id = None

        kind, body = get_note_type(note)
        if kind in IGNORED_NOTE_KINDS:
            return

        author = identities.resolve(note.author.id)
        tag = {METAKEY_GITLAB_ID: gitlab_id}

        if kind == NoteKind.CLOSED:
            if mapped_op_id is not None:
                return
            op = bug.close(author, _unix(note.created_at), tag)
            out.send(ImportResult(ResultKind.STATUS_CHANGE, entity_id=op.id))

        elif kind == NoteKind.REOPENED:
            if mapped_op_id is not None:
                return
            op = bug.open(author, _unix(note.created_at), tag)
            out.send(ImportResult(ResultKind.STATUS_CHANGE, entity_id=op.id))

        elif kind == NoteKind.DESCRIPTION_CHANGED:
            # GitLab doesn't expose the description history: compare the
            # current description with the first comment instead.
            first_comment = bug.snapshot().comments[0]
            description = cleanup(issue.description)
            if mapped_op_id is None and description != first_comment.message:
                op = bug.edit_comment(author, _unix(note.updated_at), first_comment.id, description, tag)
                out.send(ImportResult(ResultKind.COMMENT_EDITION, entity_id=op.id))

        elif kind == NoteKind.COMMENT:
            clean_text = cleanup(body)

            if mapped_op_id is None:
                op = bug.add_comment(author, _unix(note.created_at), clean_text, tag)
                out.send(ImportResult(ResultKind.COMMENT, entity_id=op.id))
                return

            comment = bug.snapshot().search_comment(mapped_op_id)
            if comment.message != clean_text:
                op = bug.edit_comment(author, _unix(note.updated_at), comment.id, clean_text, tag)
                out.send(ImportResult(ResultKind.COMMENT_EDITION, entity_id=op.id))

        elif kind == NoteKind.TITLE_CHANGED:
            if mapped_op_id is not None:
                return
            op = bug.set_title(author, _unix(note.created_at), body, tag)
            out.send(ImportResult(ResultKind.TITLE_EDITION, entity_id=op.id))

        else:
            raise InvariantViolation(f"unhandled note kind {kind!r}")

    def ensure_label_event(
        self, bug: BugCache, event: RemoteLabelEvent, identities: IdentityResolver, out: ResultChannel
    ) -> None:
        gitlab_id = label_event_key(event.id)
        try:
            bug.resolve_operation_with_metadata(METAKEY_GITLAB_ID, gitlab_id)
            return
        except NoMatchingOperationError:
            pass

        if event.label_name is None:
            logger.warning(f"Ignoring label event {event.id}: the label no longer exists")
            return

        author = identities.resolve(event.user.id)
        tag = {METAKEY_GITLAB_ID: gitlab_id}

        if event.action == "add":
            op = bug.change_labels(author, _unix(event.created_at), added=[event.label_name], metadata=tag)
        elif event.action == "remove":
            op = bug.change_labels(author, _unix(event.created_at), removed=[event.label_name], metadata=tag)
        else:
            raise MappingError(f"unexpected label event action {event.action!r}")
        out.send(ImportResult(ResultKind.LABEL_CHANGE, entity_id=op.id))
