"""Metadata keys recorded on local bugs, operations and identities.

GitLab issue iids, note ids and resource label event ids are independent
sequences, so ``gitlab-id`` values are namespaced: a bare number is an issue
iid, ``note/<id>`` a note and ``label-event/<id>`` a label event.
"""

from bugbridge.services.errors import MappingError

# Value of the origin key on bugs imported from GitLab
TARGET = "gitlab"

METAKEY_ORIGIN = "origin"
METAKEY_GITLAB_ID = "gitlab-id"
METAKEY_GITLAB_URL = "gitlab-url"
METAKEY_GITLAB_LOGIN = "gitlab-login"
METAKEY_GITLAB_BASE_URL = "gitlab-base-url"
METAKEY_GITLAB_PROJECT = "gitlab-project-id"

NOTE_PREFIX = "note/"
LABEL_EVENT_PREFIX = "label-event/"


def issue_key(iid: int) -> str:
    return str(int(iid))


def note_key(note_id: int) -> str:
    return f"{NOTE_PREFIX}{int(note_id)}"


def label_event_key(event_id: int) -> str:
    return f"{LABEL_EVENT_PREFIX}{int(event_id)}"


def parse_issue_key(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MappingError(f"unexpected gitlab issue id format: {value!r}")


def parse_note_key(value: str) -> int:
    if not value or not value.startswith(NOTE_PREFIX):
        raise MappingError(f"unexpected gitlab note id format: {value!r}")
    try:
        return int(value[len(NOTE_PREFIX):])
    except ValueError:
        raise MappingError(f"unexpected gitlab note id format: {value!r}")
