"""Services"""

from bugbridge.services.bridge_service import BridgeService
from bugbridge.services.bug_store import BugStore
from bugbridge.services.exporter import GitLabExporter
from bugbridge.services.gitlab_client import GitLabClient
from bugbridge.services.importer import GitLabImporter

__all__ = ["BridgeService", "BugStore", "GitLabClient", "GitLabExporter", "GitLabImporter"]
