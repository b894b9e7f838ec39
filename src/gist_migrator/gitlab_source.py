"""Remote connector for GitLab personal snippets."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime as dt
import logging
from typing import TYPE_CHECKING, Any, Final

import requests
from gitlab import Gitlab
from gitlab.exceptions import GitlabAuthenticationError, GitlabError, GitlabHttpError

from .exceptions import ItemFetchError, RateLimitExceeded, SourceConnectionError
from .languages import detect_language
from .models import (
    EntityKind,
    Quota,
    SourceComment,
    SourceFile,
    SourceKey,
    SourceKind,
    SourcePost,
    SourceStar,
    SourceUser,
    Visibility,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

logger: logging.Logger = logging.getLogger(__name__)

TOKEN_ENV_VAR: Final[str] = "GITLAB_TOKEN"  # noqa: S105
DEFAULT_GITLAB_URL: Final[str] = "https://gitlab.com"
MAX_PAGE_SIZE: Final[int] = 100

_VISIBILITY: Final[dict[str, Visibility]] = {
    "public": Visibility.PUBLIC,
    "internal": Visibility.UNLISTED,
    "private": Visibility.PRIVATE,
}


def get_client(token: str, *, url: str = DEFAULT_GITLAB_URL, per_page: int = MAX_PAGE_SIZE) -> Gitlab:
    """Get a GitLab client using the token."""
    return Gitlab(url, private_token=token, per_page=min(per_page, MAX_PAGE_SIZE))


def _parse_time(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable GitLab timestamp: {value}")
        return None


@contextlib.contextmanager
def _gitlab_errors(action: str, error_cls: type[Exception] = SourceConnectionError) -> Iterator[None]:
    """Translate python-gitlab and transport exceptions raised while performing `action`."""
    try:
        yield
    except GitlabAuthenticationError as e:
        msg = f"GitLab rejected the token while trying to {action}"
        raise SourceConnectionError(msg) from e
    except GitlabHttpError as e:
        if e.response_code == 429:
            msg = f"GitLab rate limit exceeded while trying to {action}"
            raise RateLimitExceeded(msg) from e
        msg = f"Failed to {action}: {e}"
        raise error_cls(msg) from e
    except GitlabError as e:
        msg = f"Failed to {action}: {e}"
        raise error_cls(msg) from e
    except requests.RequestException as e:
        msg = f"Cannot reach GitLab to {action}: {e}"
        raise SourceConnectionError(msg) from e


class GitLabSource:
    """SourceConnector over the personal snippets of the token's user.

    GitLab snippets carry no comments or stars that the API exposes per user,
    so those stages have nothing to read.
    """

    kind = SourceKind.GITLAB
    supports_comments = False

    def __init__(self, client: Gitlab, *, owner: str = "", web_url: str = "") -> None:
        self._client = client
        self._owner = owner
        self.web_url = (web_url or client.url).rstrip("/")

    @property
    def owner(self) -> str:
        return self._owner

    def validate(self) -> None:
        with _gitlab_errors("authenticate"):
            self._client.auth()
        current = self._client.user
        if current is None:
            msg = "GitLab did not return the authenticated user"
            raise SourceConnectionError(msg)
        if self._owner and self._owner != current.username:
            msg = (
                f"Cannot import snippets of '{self._owner}': personal snippets are only readable "
                f"by their owner and the token belongs to '{current.username}'"
            )
            raise SourceConnectionError(msg)
        self._owner = current.username
        logger.info(f"Authenticated to GitLab at {self.web_url} as {current.username}")

    def get_user(self, identifier: str) -> SourceUser:
        with _gitlab_errors(f"fetch GitLab user {identifier}", ItemFetchError):
            users = self._client.users.list(username=identifier, get_all=False)
        if not users:
            msg = f"GitLab user not found: {identifier}"
            raise ItemFetchError(msg)
        return _to_user(users[0].attributes)

    def list_users(self, page: int, page_size: int) -> list[SourceUser]:
        if page > 1 or self._client.user is None:
            return []
        return [_to_user(self._client.user.attributes)]

    def list_keys(self, page: int, page_size: int) -> list[SourceKey]:
        if self._client.user is None:
            return []
        with _gitlab_errors(f"list SSH keys (page {page})"):
            keys = self._client.user.keys.list(page=page, per_page=page_size, get_all=False)
        return [
            SourceKey(
                source_id=key.id,
                owner_id=self._owner,
                title=key.title or "",
                content=key.key or "",
                created_at=_parse_time(key.attributes.get("created_at")),
            )
            for key in keys
        ]

    def list_posts(self, owner: str, page: int, page_size: int) -> list[SourcePost]:
        with _gitlab_errors(f"list snippets (page {page})"):
            snippets = self._client.snippets.list(page=page, per_page=page_size, get_all=False)
        return [_to_post(snippet.attributes, self._owner) for snippet in snippets]

    def get_post_detail(self, post_id: int | str) -> SourcePost:
        with _gitlab_errors(f"fetch snippet {post_id}", ItemFetchError):
            snippet = self._client.snippets.get(post_id)
            attributes = snippet.attributes
            file_entries = attributes.get("files") or []
            if file_entries:
                files = tuple(self._download_file(entry["path"], entry["raw_url"]) for entry in file_entries)
            else:
                filename = attributes.get("file_name") or "snippet.txt"
                files = (_to_file(filename, snippet.content()),)
        return dataclasses.replace(_to_post(attributes, self._owner), files=files)

    def list_comments(self, post_id: int | str) -> list[SourceComment]:
        return []

    def list_stars(self, page: int, page_size: int) -> list[SourceStar]:
        return []

    def count(self, entity: EntityKind) -> int:
        return 1 if entity is EntityKind.USER else 0

    def get_quota(self) -> Quota:
        with _gitlab_errors("query the rate limit"):
            response = self._client.http_get("/user", raw=True)
        remaining = response.headers.get("RateLimit-Remaining")
        if remaining is None:
            return Quota.unlimited()
        reset = response.headers.get("RateLimit-Reset")
        reset_at = dt.datetime.fromtimestamp(int(reset), dt.UTC) if reset else None
        return Quota(remaining=int(remaining), reset_at=reset_at)

    def close(self) -> None:
        self._client.session.close()

    def _download_file(self, path: str, raw_url: str) -> SourceFile:
        response = self._client.http_get(raw_url, raw=True)
        return _to_file(path, response.content)


def _to_file(filename: str, data: bytes | str) -> SourceFile:
    raw = data if isinstance(data, bytes) else data.encode()
    return SourceFile(
        filename=filename,
        content=raw.decode("utf-8", errors="replace"),
        size=len(raw),
        language=detect_language(filename),
    )


def _to_user(attributes: dict[str, Any]) -> SourceUser:
    return SourceUser(
        source_id=attributes["username"],
        username=attributes["username"],
        email=attributes.get("email") or attributes.get("public_email") or "",
        display_name=attributes.get("name") or attributes["username"],
        avatar_url=attributes.get("avatar_url") or "",
        created_at=_parse_time(attributes.get("created_at")),
    )


def _to_post(attributes: dict[str, Any], default_owner: str) -> SourcePost:
    author = attributes.get("author") or {}
    owner = author.get("username") or default_owner
    title = attributes.get("title") or attributes.get("file_name") or "Untitled Snippet"
    return SourcePost(
        source_id=attributes["id"],
        owner_id=owner,
        owner_username=owner,
        title=title,
        description=attributes.get("description") or "",
        visibility=_VISIBILITY.get(attributes.get("visibility") or "private", Visibility.PRIVATE),
        html_url=attributes.get("web_url") or "",
        created_at=_parse_time(attributes.get("created_at")),
        updated_at=_parse_time(attributes.get("updated_at")),
    )
