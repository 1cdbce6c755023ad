"""Import/export pass runner"""

import json
import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bugbridge.config import Settings
from bugbridge.models import SyncLog
from bugbridge.models.sync_log import SyncDirection, SyncStatus
from bugbridge.services.bug_store import BugStore
from bugbridge.services.errors import BridgeError, PassInProgressError
from bugbridge.services.exporter import GitLabExporter
from bugbridge.services.gitlab_client import GitLabClient
from bugbridge.services.importer import GitLabImporter
from bugbridge.services.results import ResultChannel, ResultKind, SyncContext

logger = logging.getLogger(__name__)


class BridgeService:
    """Run bridge passes against the configured GitLab project and record them.

    Passes are exclusive within the process: API requests and scheduled jobs
    share one lock, and a pass started while another runs raises
    ``PassInProgressError`` instead of touching the store.
    """

    _pass_lock = threading.Lock()

    def __init__(self, db: Session, settings: Settings, client_factory=GitLabClient):
        self.db = db
        self.settings = settings
        self.client_factory = client_factory
        self.store = BugStore(db)

    @contextmanager
    def _exclusive(self, what: str):
        if not self._pass_lock.acquire(blocking=False):
            raise PassInProgressError(f"cannot start {what}: another bridge pass is running")
        try:
            yield
        finally:
            self._pass_lock.release()

    def _context(self, ctx: Optional[SyncContext]) -> SyncContext:
        if ctx is not None:
            return ctx
        return SyncContext(timeout=self.settings.request_timeout_seconds)

    def run_import(self, ctx: Optional[SyncContext] = None, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Import GitLab issues into the local store"""
        with self._exclusive("import"):
            return self._run_import(self._context(ctx), since)

    def run_export(self, ctx: Optional[SyncContext] = None, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Export local changes to GitLab"""
        with self._exclusive("export"):
            return self._run_export(self._context(ctx), since)

    def sync(self, ctx: Optional[SyncContext] = None, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Import then export, holding the pass lock for both."""
        with self._exclusive("sync"):
            ctx = self._context(ctx)
            imported = self._run_import(ctx, since)
            exported = self._run_export(ctx, since)
        status = SyncStatus.SUCCESS.value
        for result in (imported, exported):
            if result["status"] != SyncStatus.SUCCESS.value:
                status = result["status"]
        return {"status": status, "import": imported, "export": exported}

    def _run_import(self, ctx: SyncContext, since: Optional[datetime]) -> Dict[str, Any]:
        importer = GitLabImporter(self.settings, self.store, client_factory=self.client_factory)
        try:
            channel = importer.import_all(ctx, since)
        except BridgeError as e:
            return self._failed(SyncDirection.IMPORT, e)
        return self._consume(SyncDirection.IMPORT, ctx, channel)

    def _run_export(self, ctx: SyncContext, since: Optional[datetime]) -> Dict[str, Any]:
        exporter = GitLabExporter(self.settings, self.store, client_factory=self.client_factory)
        try:
            channel = exporter.export_all(ctx, since)
        except BridgeError as e:
            return self._failed(SyncDirection.EXPORT, e)
        return self._consume(SyncDirection.EXPORT, ctx, channel)

    def _consume(self, direction: SyncDirection, ctx: SyncContext, channel: ResultChannel) -> Dict[str, Any]:
        stats: Counter = Counter()
        errors = []
        fatal = False
        for result in channel:
            stats[result.kind.value] += 1
            if result.kind == ResultKind.ERROR:
                errors.append(str(result))
                fatal = fatal or result.is_fatal
                logger.warning(f"{direction.value}: {result}")
            else:
                logger.debug(f"{direction.value}: {result}")

        if errors:
            status = SyncStatus.FAILED
        elif ctx.cancelled:
            status = SyncStatus.CANCELLED
        else:
            status = SyncStatus.SUCCESS

        stats_dict = dict(stats)
        if fatal:
            logger.error(f"{direction.value} pass hit an invariant violation: {errors}")
        logger.info(f"{direction.value} pass {status.value}: {stats_dict}")
        self._log_pass(direction, status, message=f"{direction.value} {status.value}: {stats_dict}", details={
            "stats": stats_dict,
            "errors": errors,
        })

        summary: Dict[str, Any] = {"status": status.value, "stats": stats_dict}
        if errors:
            summary["errors"] = errors
        return summary

    def _failed(self, direction: SyncDirection, error: Exception) -> Dict[str, Any]:
        logger.error(f"{direction.value} pass could not start: {error}")
        self._log_pass(direction, SyncStatus.FAILED, message=f"{direction.value} failed: {error}")
        return {"status": SyncStatus.FAILED.value, "error": str(error), "stats": {}}

    def _log_pass(
        self,
        direction: SyncDirection,
        status: SyncStatus,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        log = SyncLog(
            base_url=self.settings.normalized_base_url,
            project=self.settings.gitlab_project,
            status=status,
            direction=direction,
            message=message,
            details=json.dumps(details) if details is not None else None,
        )
        self.db.add(log)
        self.db.commit()
