"""Local bug operations and the snapshot derived from them.

A bug is an append-only log of operations. The set of operation kinds is
closed: ``OPERATION_TYPES`` lists every kind, and code that dispatches on
operations raises ``InvariantViolation`` for anything else.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from bugbridge.services.errors import InvariantViolation, NoMatchingOperationError


class Status(str, enum.Enum):
    """Bug status"""
    OPEN = "open"
    CLOSED = "closed"


def new_operation_id() -> str:
    return uuid4().hex


@dataclass
class Operation:
    """Fields shared by every operation kind"""

    author_id: str
    unix_time: int
    metadata: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=new_operation_id)

    kind = "operation"

    def get_metadata(self, key: str) -> Optional[str]:
        return self.metadata.get(key)

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.unix_time, tz=timezone.utc).replace(tzinfo=None)

    def payload(self) -> Dict:
        raise NotImplementedError

    def apply(self, snapshot: "Snapshot") -> None:
        raise NotImplementedError


@dataclass
class CreateOperation(Operation):
    title: str = ""
    message: str = ""

    kind = "create"

    def payload(self) -> Dict:
        return {"title": self.title, "message": self.message}

    def apply(self, snapshot: "Snapshot") -> None:
        snapshot.title = self.title
        snapshot.author_id = self.author_id
        snapshot.create_time = self.time
        snapshot.comments.append(
            Comment(id=self.id, author_id=self.author_id, message=self.message, unix_time=self.unix_time)
        )


@dataclass
class AddCommentOperation(Operation):
    message: str = ""

    kind = "add_comment"

    def payload(self) -> Dict:
        return {"message": self.message}

    def apply(self, snapshot: "Snapshot") -> None:
        snapshot.comments.append(
            Comment(id=self.id, author_id=self.author_id, message=self.message, unix_time=self.unix_time)
        )


@dataclass
class EditCommentOperation(Operation):
    target: str = ""
    message: str = ""

    kind = "edit_comment"

    def payload(self) -> Dict:
        return {"target": self.target, "message": self.message}

    def apply(self, snapshot: "Snapshot") -> None:
        for comment in snapshot.comments:
            if comment.id == self.target:
                comment.message = self.message
                comment.edited_unix_time = self.unix_time
                return


@dataclass
class SetStatusOperation(Operation):
    status: Status = Status.OPEN

    kind = "set_status"

    def payload(self) -> Dict:
        return {"status": self.status.value}

    def apply(self, snapshot: "Snapshot") -> None:
        snapshot.status = self.status


@dataclass
class SetTitleOperation(Operation):
    title: str = ""
    was: str = ""

    kind = "set_title"

    def payload(self) -> Dict:
        return {"title": self.title, "was": self.was}

    def apply(self, snapshot: "Snapshot") -> None:
        snapshot.title = self.title


@dataclass
class LabelChangeOperation(Operation):
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    kind = "label_change"

    def payload(self) -> Dict:
        return {"added": list(self.added), "removed": list(self.removed)}

    def apply(self, snapshot: "Snapshot") -> None:
        for label in self.added:
            if label not in snapshot.labels:
                snapshot.labels.append(label)
        snapshot.labels = [label for label in snapshot.labels if label not in self.removed]
        snapshot.labels.sort()


@dataclass
class SetMetadataOperation(Operation):
    """Attaches metadata to an earlier operation without touching it."""

    target: str = ""
    new_metadata: Dict[str, str] = field(default_factory=dict)

    kind = "set_metadata"

    def payload(self) -> Dict:
        return {"target": self.target, "new_metadata": dict(self.new_metadata)}

    def apply(self, snapshot: "Snapshot") -> None:
        # Metadata is folded into the target when the log is loaded.
        return None


OPERATION_TYPES = {
    cls.kind: cls
    for cls in (
        CreateOperation,
        AddCommentOperation,
        EditCommentOperation,
        SetStatusOperation,
        SetTitleOperation,
        LabelChangeOperation,
        SetMetadataOperation,
    )
}


def operation_from_payload(
    kind: str, *, op_id: str, author_id: str, unix_time: int, payload: Dict, metadata: Dict[str, str]
) -> Operation:
    """Rebuild an operation from its stored form."""
    cls = OPERATION_TYPES.get(kind)
    if cls is None:
        raise InvariantViolation(f"unknown operation kind {kind!r}")
    fields = dict(payload)
    if cls is SetStatusOperation:
        fields["status"] = Status(fields["status"])
    return cls(id=op_id, author_id=author_id, unix_time=unix_time, metadata=dict(metadata), **fields)


def merge_metadata(operations: Iterable[Operation]) -> None:
    """Fold SetMetadata operations into the metadata of their targets (first value wins)."""
    by_id = {op.id: op for op in operations}
    for op in list(by_id.values()):
        if not isinstance(op, SetMetadataOperation):
            continue
        target = by_id.get(op.target)
        if target is None:
            continue
        for key, value in op.new_metadata.items():
            target.metadata.setdefault(key, value)


@dataclass
class Comment:
    id: str
    author_id: str
    message: str
    unix_time: int
    edited_unix_time: Optional[int] = None


@dataclass
class Snapshot:
    """State of a bug after replaying its operations"""

    id: str
    operations: List[Operation] = field(default_factory=list)
    title: str = ""
    status: Status = Status.OPEN
    labels: List[str] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    author_id: Optional[str] = None
    create_time: Optional[datetime] = None

    @classmethod
    def build(cls, bug_id: str, operations: List[Operation]) -> "Snapshot":
        snapshot = cls(id=bug_id, operations=list(operations))
        for op in operations:
            op.apply(snapshot)
        return snapshot

    @property
    def actors(self) -> set:
        return {op.author_id for op in self.operations}

    def has_any_actor(self, *identity_ids: str) -> bool:
        actors = self.actors
        return any(i in actors for i in identity_ids)

    def get_create_metadata(self, key: str) -> Optional[str]:
        if not self.operations:
            return None
        return self.operations[0].get_metadata(key)

    @property
    def create_operation(self) -> CreateOperation:
        op = self.operations[0] if self.operations else None
        if not isinstance(op, CreateOperation):
            raise InvariantViolation(f"bug {self.id} doesn't start with a create operation")
        return op

    def search_comment(self, comment_id: str) -> Comment:
        for comment in self.comments:
            if comment.id == comment_id:
                return comment
        raise NoMatchingOperationError(f"comment {comment_id} not found in bug {self.id}")
