"""Mapping of GitLab users to local identities"""

import logging
from typing import Callable, Dict, Optional

from bugbridge.models import Identity
from bugbridge.services.bug_store import BugStore
from bugbridge.services.errors import IdentityNotFoundError
from bugbridge.services.metadata import METAKEY_GITLAB_ID, METAKEY_GITLAB_LOGIN
from bugbridge.services.results import ImportResult, ResultKind, SyncContext

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Resolve GitLab user ids to identities, creating them on first sight.

    The cache lives as long as the resolver, which is created per sync pass.
    ``MultipleMatchError`` from the store is never caught: two identities
    claiming the same GitLab user must be fixed by hand.
    """

    def __init__(
        self,
        store: BugStore,
        client,
        ctx: SyncContext,
        notify: Optional[Callable[[ImportResult], None]] = None,
    ):
        self.store = store
        self.client = client
        self.ctx = ctx
        self.notify = notify
        self._cache: Dict[int, Identity] = {}

    def resolve(self, user_id: int) -> Identity:
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        try:
            identity = self.store.resolve_identity_immutable_metadata(METAKEY_GITLAB_ID, str(user_id))
        except IdentityNotFoundError:
            identity = self._create(user_id)

        self._cache[user_id] = identity
        return identity

    def _create(self, user_id: int) -> Identity:
        user = self.client.get_user(user_id, timeout=self.ctx.call_timeout())
        identity = self.store.new_identity(
            name=user.name or user.username,
            email=user.public_email or None,
            login=user.username,
            avatar_url=user.avatar_url or None,
            metadata={
                METAKEY_GITLAB_ID: str(user_id),
                METAKEY_GITLAB_LOGIN: user.username,
            },
        )
        logger.info(f"Created identity {identity.id} for GitLab user @{user.username}")
        if self.notify is not None:
            self.notify(ImportResult(ResultKind.IDENTITY, entity_id=identity.id))
        return identity
