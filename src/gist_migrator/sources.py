"""
Connector factory: builds the SourceConnector for a migration's source kind.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import github_source, gitlab_source, utils
from .exceptions import SettingsError, SourceConnectionError
from .models import SourceKind
from .opengist_source import OpenGistSource

if TYPE_CHECKING:
    from .config import MigrationSettings
    from .protocols import SourceConnector

logger: logging.Logger = logging.getLogger(__name__)


def _require_token(settings: MigrationSettings, env_var: str, service: str) -> str:
    token = utils.resolve_token(settings.auth_token, env_var, settings.token_pass_path)
    if not token:
        msg = f"{service} imports require an API token (setting auth_token, {env_var} or a pass path)"
        raise SourceConnectionError(msg)
    return token


def create_source(settings: MigrationSettings) -> SourceConnector:
    """Create the connector for `settings.source_kind`.

    No request is made here; call `validate()` on the result before reading.

    Raises:
        SettingsError: If required options are missing
        SourceConnectionError: If a remote source has no usable token
    """
    if settings.source_kind is SourceKind.OPENGIST:
        if not settings.repository_path:
            msg = "OpenGist migrations require the repository directory (repository_path)"
            raise SettingsError(msg)
        return OpenGistSource.from_url(
            settings.source_url,
            settings.repository_path,
            web_url=settings.source_web_url,
            owner=settings.username,
        )

    if settings.source_kind is SourceKind.GITHUB:
        token = _require_token(settings, github_source.TOKEN_ENV_VAR, "GitHub")
        client = github_source.get_client(
            token, base_url=settings.effective_source_url, per_page=settings.batch_size
        )
        return github_source.GitHubSource(client, owner=settings.username, token=token)

    if settings.source_kind is SourceKind.GITLAB:
        token = _require_token(settings, gitlab_source.TOKEN_ENV_VAR, "GitLab")
        client = gitlab_source.get_client(token, url=settings.effective_source_url, per_page=settings.batch_size)
        return gitlab_source.GitLabSource(
            client, owner=settings.username, web_url=settings.source_web_url or settings.effective_source_url
        )

    msg = f"Unsupported source kind: {settings.source_kind}"
    raise SettingsError(msg)
