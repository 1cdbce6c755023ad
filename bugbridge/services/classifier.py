"""Classification of GitLab notes.

GitLab doesn't expose a structured history for issues: state changes show up
as "system" notes whose body is a fixed English sentence. This module maps a
note to the kind of event it records.
"""

import enum
from typing import Tuple


class NoteKind(str, enum.Enum):
    COMMENT = "comment"
    CLOSED = "closed"
    REOPENED = "reopened"
    DESCRIPTION_CHANGED = "description_changed"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    TITLE_CHANGED = "title_changed"
    DUE_DATE_CHANGED = "due_date_changed"
    DUE_DATE_REMOVED = "due_date_removed"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    MILESTONE_CHANGED = "milestone_changed"
    MILESTONE_REMOVED = "milestone_removed"
    MENTIONED_IN_ISSUE = "mentioned_in_issue"
    MENTIONED_IN_MERGE_REQUEST = "mentioned_in_merge_request"
    UNKNOWN = "unknown"


_EXACT = "exact"
_PREFIX = "prefix"

# Checked in order; no two prefixes overlap.
SYSTEM_NOTE_RULES = (
    (_EXACT, "closed", NoteKind.CLOSED),
    (_EXACT, "reopened", NoteKind.REOPENED),
    (_EXACT, "changed the description", NoteKind.DESCRIPTION_CHANGED),
    (_EXACT, "locked this issue", NoteKind.LOCKED),
    (_EXACT, "unlocked this issue", NoteKind.UNLOCKED),
    (_PREFIX, "changed title from", NoteKind.TITLE_CHANGED),
    (_PREFIX, "changed due date to", NoteKind.DUE_DATE_CHANGED),
    (_EXACT, "removed due date", NoteKind.DUE_DATE_REMOVED),
    (_PREFIX, "assigned to @", NoteKind.ASSIGNED),
    (_PREFIX, "unassigned @", NoteKind.UNASSIGNED),
    # Literal "%" kept as GitLab renders milestone references.
    (_PREFIX, "changed milestone to %", NoteKind.MILESTONE_CHANGED),
    (_PREFIX, "removed milestone", NoteKind.MILESTONE_REMOVED),
    (_PREFIX, "mentioned in issue", NoteKind.MENTIONED_IN_ISSUE),
    (_PREFIX, "mentioned in merge request", NoteKind.MENTIONED_IN_MERGE_REQUEST),
)

_TITLE_SEPARATOR = "** to **"
_DIFF_MARKERS = ("{+", "+}", "{-", "-}")


def classify_note(system: bool, body: str) -> Tuple[NoteKind, str]:
    """Return the note kind and its payload (comment body or new title)."""
    if not system:
        return NoteKind.COMMENT, body

    for match, pattern, kind in SYSTEM_NOTE_RULES:
        if match == _EXACT and body == pattern:
            return kind, ""
        if match == _PREFIX and body.startswith(pattern):
            if kind == NoteKind.TITLE_CHANGED:
                if _TITLE_SEPARATOR not in body:
                    return NoteKind.UNKNOWN, ""
                return kind, extract_new_title(body)
            return kind, ""

    return NoteKind.UNKNOWN, ""


def get_note_type(note) -> Tuple[NoteKind, str]:
    return classify_note(note.system, note.body)


def extract_new_title(body: str) -> str:
    """New title from a title-change note.

    "changed title from **fourth issue** to **fourth issue{+ changed+}**"
    gives "fourth issue changed".
    """
    new_title = body.split(_TITLE_SEPARATOR, 1)[1]
    for marker in _DIFF_MARKERS:
        new_title = new_title.replace(marker, "")
    if new_title.endswith("**"):
        new_title = new_title[: -len("**")]
    return new_title
