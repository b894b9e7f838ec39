"""Remote connector for the GitHub Gists API."""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
from typing import TYPE_CHECKING, Any, Final

import requests
from github import (
    Auth,
    BadCredentialsException,
    Github,
    GithubException,
    RateLimitExceededException,
)

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
    from collections.abc import Iterable, Iterator

    from github.Gist import Gist
    from github.NamedUser import NamedUser

logger: logging.Logger = logging.getLogger(__name__)

TOKEN_ENV_VAR: Final[str] = "GITHUB_TOKEN"  # noqa: S105
DEFAULT_API_URL: Final[str] = "https://api.github.com"
MAX_PAGE_SIZE: Final[int] = 100
_MAX_TITLE_LENGTH: Final[int] = 100
_RAW_DOWNLOAD_TIMEOUT: Final[int] = 30
# Stand-in author for comments whose GitHub account was deleted
_GHOST_USER: Final[SourceUser] = SourceUser(source_id="ghost", username="ghost")


def get_client(token: str, *, base_url: str = DEFAULT_API_URL, per_page: int = MAX_PAGE_SIZE) -> Github:
    """Get a GitHub client authenticated with the token."""
    return Github(auth=Auth.Token(token), base_url=base_url, per_page=min(per_page, MAX_PAGE_SIZE))


def generate_title(description: str, filenames: Iterable[str]) -> str:
    """Title for an imported gist: its description, else its first filename."""
    if description:
        if len(description) > _MAX_TITLE_LENGTH:
            return description[: _MAX_TITLE_LENGTH - 3] + "..."
        return description
    for filename in filenames:
        return f"Gist: {filename}"
    return "Untitled Gist"


def _reset_time(e: GithubException) -> dt.datetime | None:
    reset = (e.headers or {}).get("x-ratelimit-reset")
    if not reset:
        return None
    try:
        return dt.datetime.fromtimestamp(int(reset), dt.UTC)
    except ValueError:
        return None


@contextlib.contextmanager
def _github_errors(action: str, error_cls: type[Exception] = SourceConnectionError) -> Iterator[None]:
    """Translate PyGithub and transport exceptions raised while performing `action`."""
    try:
        yield
    except RateLimitExceededException as e:
        msg = f"GitHub rate limit exceeded while trying to {action}"
        raise RateLimitExceeded(msg, reset_at=_reset_time(e)) from e
    except BadCredentialsException as e:
        msg = f"GitHub rejected the token while trying to {action}"
        raise SourceConnectionError(msg) from e
    except GithubException as e:
        msg = f"Failed to {action}: {e}"
        raise error_cls(msg) from e
    except requests.RequestException as e:
        msg = f"Cannot reach GitHub to {action}: {e}"
        raise SourceConnectionError(msg) from e


class GitHubSource:
    """SourceConnector over a user's GitHub gists.

    When the owner is the authenticated user, secret gists are listed as well
    and the user's starred gists are available as stars.
    """

    kind = SourceKind.GITHUB
    supports_comments = True

    def __init__(
        self,
        client: Github,
        *,
        owner: str = "",
        token: str | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self._client = client
        self._owner = owner
        self._token = token
        self._http = http or requests.Session()
        self._authenticated_login: str | None = None

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def is_own_account(self) -> bool:
        return self._authenticated_login is not None and self._owner == self._authenticated_login

    def validate(self) -> None:
        with _github_errors("resolve the authenticated user"):
            login = self._client.get_user().login
        self._authenticated_login = login
        if not self._owner:
            self._owner = login
        logger.info(f"Authenticated to GitHub as {login}, importing gists of {self._owner}")

    def get_user(self, identifier: str) -> SourceUser:
        with _github_errors(f"fetch GitHub user {identifier}", ItemFetchError):
            if identifier == self._authenticated_login:
                return _to_user(self._client.get_user())
            return _to_user(self._client.get_user(identifier))

    def list_users(self, page: int, page_size: int) -> list[SourceUser]:
        if page > 1:
            return []
        with _github_errors(f"fetch GitHub user {self._owner}"):
            if self.is_own_account:
                return [_to_user(self._client.get_user())]
            return [_to_user(self._client.get_user(self._owner))]

    def list_keys(self, page: int, page_size: int) -> list[SourceKey]:
        if not self.is_own_account:
            return []
        with _github_errors("list SSH keys"):
            keys = self._client.get_user().get_keys().get_page(page - 1)
            return [
                SourceKey(source_id=key.id, owner_id=self._owner, title=key.title or "", content=key.key or "")
                for key in keys
            ]

    def list_posts(self, owner: str, page: int, page_size: int) -> list[SourcePost]:
        owner = owner or self._owner
        with _github_errors(f"list gists of {owner} (page {page})"):
            if owner == self._authenticated_login:
                gists = self._client.get_user().get_gists().get_page(page - 1)
            else:
                gists = self._client.get_user(owner).get_gists().get_page(page - 1)
            return [self._to_post(gist, with_files=False) for gist in gists]

    def get_post_detail(self, post_id: int | str) -> SourcePost:
        with _github_errors(f"fetch gist {post_id}", ItemFetchError):
            gist = self._client.get_gist(str(post_id))
            return self._to_post(gist, with_files=True)

    def list_comments(self, post_id: int | str) -> list[SourceComment]:
        with _github_errors(f"list comments of gist {post_id}", ItemFetchError):
            gist = self._client.get_gist(str(post_id))
            return [
                SourceComment(
                    source_id=comment.id,
                    post_id=post_id,
                    author=_to_user(comment.user) if comment.user else _GHOST_USER,
                    body=comment.body or "",
                    created_at=comment.created_at,
                    updated_at=comment.updated_at,
                )
                for comment in gist.get_comments()
            ]

    def list_stars(self, page: int, page_size: int) -> list[SourceStar]:
        if not self.is_own_account:
            return []
        with _github_errors(f"list starred gists (page {page})"):
            gists = self._client.get_user().get_starred_gists().get_page(page - 1)
            return [SourceStar(user_id=self._owner, post_id=gist.id) for gist in gists]

    def count(self, entity: EntityKind) -> int:
        if entity is EntityKind.USER:
            return 1
        if entity is not EntityKind.POST:
            return 0
        with _github_errors(f"count gists of {self._owner}"):
            user: Any = self._client.get_user() if self.is_own_account else self._client.get_user(self._owner)
            if self.is_own_account:
                return (user.public_gists or 0) + (user.private_gists or 0)
            return user.public_gists or 0

    def get_quota(self) -> Quota:
        with _github_errors("query the rate limit"):
            remaining, _limit = self._client.rate_limiting
            reset_epoch = self._client.rate_limiting_resettime
        reset_at = dt.datetime.fromtimestamp(reset_epoch, dt.UTC) if reset_epoch else None
        return Quota(remaining=remaining, reset_at=reset_at)

    def close(self) -> None:
        self._client.close()
        self._http.close()

    def _to_post(self, gist: Gist, *, with_files: bool) -> SourcePost:
        owner_login = gist.owner.login if gist.owner else self._owner
        filenames = list(gist.files)
        files = tuple(self._to_file(name, gist_file) for name, gist_file in gist.files.items()) if with_files else ()
        return SourcePost(
            source_id=gist.id,
            owner_id=owner_login,
            owner_username=owner_login,
            title=generate_title(gist.description or "", filenames),
            description=gist.description or "",
            visibility=Visibility.PUBLIC if gist.public else Visibility.PRIVATE,
            html_url=gist.html_url,
            files=files,
            comment_count=gist.comments or 0,
            created_at=gist.created_at,
            updated_at=gist.updated_at,
        )

    def _to_file(self, name: str, gist_file: Any) -> SourceFile:
        content = gist_file.content or ""
        if gist_file.raw_data.get("truncated") and gist_file.raw_url:
            content = self._download_raw(gist_file.raw_url)
        return SourceFile(
            filename=name,
            content=content,
            size=gist_file.size or len(content.encode()),
            language=(gist_file.language or "").lower() or detect_language(name),
        )

    def _download_raw(self, raw_url: str) -> str:
        headers = {"Authorization": f"token {self._token}"} if self._token else {}
        try:
            response = self._http.get(raw_url, headers=headers, timeout=_RAW_DOWNLOAD_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            msg = f"Failed to download truncated gist file {raw_url}: {e}"
            raise ItemFetchError(msg) from e
        return response.text


def _to_user(user: NamedUser | Any) -> SourceUser:
    return SourceUser(
        source_id=user.login,
        username=user.login,
        email=user.email or "",
        display_name=user.name or user.login,
        avatar_url=user.avatar_url or "",
        created_at=user.created_at,
        updated_at=user.updated_at,
    )
