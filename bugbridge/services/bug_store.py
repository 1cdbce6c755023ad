"""Local bug store backed by SQLAlchemy.

``BugStore`` resolves and creates bugs and identities. ``BugCache`` wraps one
bug: new operations are staged in memory and written to the database when
the bug is committed.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from bugbridge.models import BugRecord, Identity, IdentityMetadata, OperationRecord
from bugbridge.models.identity import new_entity_id
from bugbridge.services.errors import (
    BugNotFoundError,
    IdentityNotFoundError,
    MultipleMatchError,
    NoMatchingOperationError,
)
from bugbridge.services.operations import (
    AddCommentOperation,
    CreateOperation,
    EditCommentOperation,
    LabelChangeOperation,
    Operation,
    SetMetadataOperation,
    SetStatusOperation,
    SetTitleOperation,
    Snapshot,
    Status,
    merge_metadata,
    operation_from_payload,
)

logger = logging.getLogger(__name__)


def to_unix(value: datetime) -> int:
    """Unix seconds for a datetime; tz-naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


@dataclass(frozen=True)
class BugExcerpt:
    """What bug matchers get to look at without loading the whole log"""

    id: str
    create_metadata: Dict[str, str]


class BugCache:
    """One bug with its committed operations and the ones staged for commit"""

    def __init__(self, store: "BugStore", record: BugRecord, operations: List[Operation]):
        self._store = store
        self._record = record
        self._operations = operations
        self._staged: List[Operation] = []

        # (key, value) -> earliest operation carrying it, SetMetadata tags included
        self._metadata_index: Dict[Tuple[str, str], str] = {}
        self._positions: Dict[str, int] = {}
        self._tagged_keys: Dict[str, Set[str]] = {}
        for op in operations:
            self._index(op)

    @property
    def id(self) -> str:
        return self._record.id

    def snapshot(self) -> Snapshot:
        operations = [replace(op, metadata=dict(op.metadata)) for op in self._operations + self._staged]
        merge_metadata(operations)
        return Snapshot.build(self.id, operations)

    def needs_commit(self) -> bool:
        return bool(self._staged)

    def _append(self, op: Operation) -> Operation:
        self._staged.append(op)
        self._index(op)
        return op

    def _index(self, op: Operation) -> None:
        if isinstance(op, SetMetadataOperation):
            keys = self._tagged_keys.get(op.target)
            if keys is None:
                return
            # First value wins, as in merge_metadata.
            for key, value in op.new_metadata.items():
                if key not in keys:
                    keys.add(key)
                    self._index_value(key, value, op.target)
            return

        self._positions[op.id] = len(self._positions)
        self._tagged_keys[op.id] = set(op.metadata)
        for key, value in op.metadata.items():
            self._index_value(key, value, op.id)

    def _index_value(self, key: str, value: str, op_id: str) -> None:
        current = self._metadata_index.get((key, value))
        if current is None or self._positions[op_id] < self._positions[current]:
            self._metadata_index[(key, value)] = op_id

    def add_comment(self, author: Identity, unix_time: int, message: str, metadata=None):
        return self._append(
            AddCommentOperation(
                author_id=author.id, unix_time=unix_time, message=message, metadata=dict(metadata or {})
            )
        )

    def edit_comment(self, author: Identity, unix_time: int, target: str, message: str, metadata=None):
        # Raises if the target comment doesn't exist.
        self.snapshot().search_comment(target)
        return self._append(
            EditCommentOperation(
                author_id=author.id,
                unix_time=unix_time,
                target=target,
                message=message,
                metadata=dict(metadata or {}),
            )
        )

    def open(self, author: Identity, unix_time: int, metadata=None):
        return self._append(
            SetStatusOperation(
                author_id=author.id, unix_time=unix_time, status=Status.OPEN, metadata=dict(metadata or {})
            )
        )

    def close(self, author: Identity, unix_time: int, metadata=None):
        return self._append(
            SetStatusOperation(
                author_id=author.id, unix_time=unix_time, status=Status.CLOSED, metadata=dict(metadata or {})
            )
        )

    def set_title(self, author: Identity, unix_time: int, title: str, metadata=None):
        was = self.snapshot().title
        return self._append(
            SetTitleOperation(
                author_id=author.id, unix_time=unix_time, title=title, was=was, metadata=dict(metadata or {})
            )
        )

    def change_labels(
        self,
        author: Identity,
        unix_time: int,
        added: Optional[Iterable[str]] = None,
        removed: Optional[Iterable[str]] = None,
        metadata=None,
    ):
        """Record a label change as-is, without checking the current label set."""
        return self._append(
            LabelChangeOperation(
                author_id=author.id,
                unix_time=unix_time,
                added=list(added or []),
                removed=list(removed or []),
                metadata=dict(metadata or {}),
            )
        )

    def set_metadata(self, target: str, metadata: Dict[str, str]) -> SetMetadataOperation:
        """Tag an existing operation. The target itself is never rewritten."""
        target_op = self._find_operation(target)
        op = SetMetadataOperation(
            author_id=target_op.author_id,
            unix_time=to_unix(datetime.now(timezone.utc)),
            target=target,
            new_metadata={k: v for k, v in metadata.items() if v is not None},
        )
        return self._append(op)

    def _find_operation(self, op_id: str) -> Operation:
        for op in self._operations + self._staged:
            if op.id == op_id:
                return op
        raise NoMatchingOperationError(f"operation {op_id} not found in bug {self.id}")

    def resolve_operation_with_metadata(self, key: str, value: str) -> str:
        """Id of the earliest operation tagged with ``key=value``."""
        op_id = self._metadata_index.get((key, value))
        if op_id is not None:
            return op_id
        raise NoMatchingOperationError(f"no operation with {key}={value} in bug {self.id}")

    def commit(self) -> None:
        if not self._staged:
            return
        self._store._write_operations(self._record, self._operations, self._staged)
        self._operations.extend(self._staged)
        self._staged = []

    def commit_as_needed(self) -> None:
        if self.needs_commit():
            self.commit()


class BugStore:
    """Bugs and identities persisted through a SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    # Bugs

    def new_bug(
        self,
        author: Identity,
        unix_time: int,
        title: str,
        message: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> BugCache:
        """Create and commit a bug holding a single create operation."""
        record = BugRecord(id=new_entity_id())
        self.db.add(record)
        bug = BugCache(self, record, [])
        bug._append(
            CreateOperation(
                author_id=author.id,
                unix_time=unix_time,
                title=title,
                message=message,
                metadata=dict(metadata or {}),
            )
        )
        bug.commit()
        logger.debug(f"Created bug {record.id}")
        return bug

    def all_bug_ids(self) -> List[str]:
        return [row.id for row in self.db.query(BugRecord).order_by(BugRecord.created_at, BugRecord.id).all()]

    def resolve_bug(self, bug_id: str) -> BugCache:
        record = self.db.query(BugRecord).filter(BugRecord.id == bug_id).first()
        if record is None:
            raise BugNotFoundError(f"bug {bug_id} doesn't exist")
        return self._load(record)

    def resolve_bug_matcher(self, matcher: Callable[[BugExcerpt], bool]) -> BugCache:
        # Two queries for the whole store, whatever its size.
        create_rows = {
            row.bug_id: row for row in self.db.query(OperationRecord).filter(OperationRecord.seq == 0)
        }
        tags: Dict[str, List[OperationRecord]] = defaultdict(list)
        rows = (
            self.db.query(OperationRecord)
            .filter(OperationRecord.kind == SetMetadataOperation.kind)
            .order_by(OperationRecord.bug_id, OperationRecord.seq)
        )
        for row in rows:
            tags[row.bug_id].append(row)

        matched = []
        for bug_id in sorted(create_rows):
            first = create_rows[bug_id]
            if matcher(BugExcerpt(id=bug_id, create_metadata=self._create_metadata(first, tags[bug_id]))):
                matched.append(bug_id)
        if not matched:
            raise BugNotFoundError("no matching bug")
        if len(matched) > 1:
            raise MultipleMatchError("bugs", matched)
        return self.resolve_bug(matched[0])

    @staticmethod
    def _create_metadata(first: OperationRecord, tag_rows: List[OperationRecord]) -> Dict[str, str]:
        metadata = dict(json.loads(first.op_metadata or "{}"))
        for row in tag_rows:
            payload = json.loads(row.payload)
            if payload.get("target") != first.id:
                continue
            for key, value in payload.get("new_metadata", {}).items():
                metadata.setdefault(key, value)
        return metadata

    def _load(self, record: BugRecord) -> BugCache:
        rows = (
            self.db.query(OperationRecord)
            .filter(OperationRecord.bug_id == record.id)
            .order_by(OperationRecord.seq)
            .all()
        )
        operations = [
            operation_from_payload(
                row.kind,
                op_id=row.id,
                author_id=row.author_id,
                unix_time=row.unix_time,
                payload=json.loads(row.payload),
                metadata=json.loads(row.op_metadata or "{}"),
            )
            for row in rows
        ]
        return BugCache(self, record, operations)

    def _write_operations(
        self, record: BugRecord, committed: List[Operation], staged: List[Operation]
    ) -> None:
        try:
            for offset, op in enumerate(staged):
                own_metadata = op.metadata
                if isinstance(op, SetMetadataOperation):
                    own_metadata = {}
                self.db.add(
                    OperationRecord(
                        id=op.id,
                        bug_id=record.id,
                        seq=len(committed) + offset,
                        kind=op.kind,
                        author_id=op.author_id,
                        unix_time=op.unix_time,
                        payload=json.dumps(op.payload(), sort_keys=True),
                        op_metadata=json.dumps(own_metadata, sort_keys=True),
                    )
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # Identities

    def new_identity(
        self,
        name: Optional[str],
        email: Optional[str],
        login: Optional[str],
        avatar_url: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> Identity:
        identity = Identity(id=new_entity_id(), name=name, email=email, login=login, avatar_url=avatar_url)
        for key, value in (metadata or {}).items():
            identity.immutable_metadata.append(IdentityMetadata(key=key, value=value))
        try:
            self.db.add(identity)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return identity

    def resolve_identity(self, identity_id: str) -> Identity:
        identity = self.db.query(Identity).filter(Identity.id == identity_id).first()
        if identity is None:
            raise IdentityNotFoundError(f"identity {identity_id} doesn't exist")
        return identity

    def resolve_identity_immutable_metadata(self, key: str, value: str) -> Identity:
        rows = (
            self.db.query(IdentityMetadata)
            .filter(IdentityMetadata.key == key, IdentityMetadata.value == value)
            .all()
        )
        identity_ids = sorted({row.identity_id for row in rows})
        if not identity_ids:
            raise IdentityNotFoundError(f"no identity with {key}={value}")
        if len(identity_ids) > 1:
            raise MultipleMatchError("identities", identity_ids)
        return self.resolve_identity(identity_ids[0])
