"""Application configuration"""

import re
from dataclasses import dataclass
from typing import Dict, List

from pydantic_settings import BaseSettings

DEFAULT_BASE_URL = "https://gitlab.com"

_PROJECT_URL_RE = re.compile(
    r"^(?:(?:https?|git|ssh)://(?:[^@/]+@)?|[^@/\s]+@)[\w.-]+(?::\d+)?[/:](?P<path>[\w.-]+(?:/[\w.-]+)+?)(?:\.git)?/?$"
)


class BadProjectURLError(ValueError):
    """Raised when a repository URL can't be mapped to a GitLab project path."""


@dataclass(frozen=True)
class Credential:
    """A personal access token bound to a GitLab login and instance."""

    login: str
    token: str
    base_url: str


class Settings(BaseSettings):
    """Application settings"""

    # Database (local bug store)
    database_url: str = "sqlite:///./bugbridge.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Remote target
    gitlab_base_url: str = DEFAULT_BASE_URL
    # Project path, e.g. "owner/project" or "group/subgroup/project"
    gitlab_project: str = ""
    default_login: str = ""
    # JSON mapping of GitLab login -> personal access token.
    #
    # Example: TOKENS='{"alice": "glpat-xxx", "bob": "glpat-yyy"}'
    tokens: Dict[str, str] = {}

    # Remote calls
    request_timeout_seconds: float = 60.0
    page_size: int = 10

    # Scheduling
    scheduler_enabled: bool = False
    sync_interval_minutes: int = 10

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def normalized_base_url(self) -> str:
        return normalize_base_url(self.gitlab_base_url)

    def credentials(self) -> List[Credential]:
        """Resolved credential set for the configured instance."""
        base = self.normalized_base_url
        return [
            Credential(login=login, token=token, base_url=base)
            for login, token in sorted(self.tokens.items())
            if token
        ]


def normalize_base_url(url: str) -> str:
    return (url or "").rstrip("/")


def project_path_from_url(url: str) -> str:
    """Extract "owner/project" (nested groups allowed) from a repository URL."""
    m = _PROJECT_URL_RE.match((url or "").strip())
    if not m:
        raise BadProjectURLError(f"unable to parse project path from {url!r}")
    path = m.group("path")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path


settings = Settings()
