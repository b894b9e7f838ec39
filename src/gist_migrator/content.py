"""
Rewriting of embedded source references (gist URLs, embed tokens) in migrated text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .models import SourceKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger: logging.Logger = logging.getLogger(__name__)

# A mapped URL must not be followed by more identifier characters, otherwise
# https://host/u/alice/abc would also rewrite https://host/u/alice/abcdef.
_URL_END: str = r"(?![\w-])"


@dataclass(frozen=True)
class URLTransformRule:
    """A regex substitution applied to migrated text.

    The replacement uses Python template syntax (`\\1`, `\\g<name>`).
    """

    pattern: str
    replacement: str
    description: str = ""
    _compiled: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            compiled = re.compile(self.pattern)
        except re.error as e:
            msg = f"Invalid URL transform pattern {self.pattern!r}: {e}"
            raise ValueError(msg) from e
        object.__setattr__(self, "_compiled", compiled)

    def apply(self, text: str) -> str:
        return self._compiled.sub(self.replacement, text)


def _template_literal(value: str) -> str:
    """Escape a literal for use inside a replacement template."""
    return value.replace("\\", "\\\\")


def github_rules(base_url: str) -> list[URLTransformRule]:
    """Rules rewriting GitHub Gist URLs into URLs of this instance."""
    base = _template_literal(base_url.rstrip("/"))
    return [
        URLTransformRule(
            pattern=r"https://gist\.github\.com/([^/\s]+)/([a-f0-9]+)",
            replacement=base + r"/u/\1/\2",
            description="Transform GitHub Gist URLs",
        ),
        URLTransformRule(
            pattern=r"https://gist\.githubusercontent\.com/([^/\s]+)/([a-f0-9]+)/raw/[^/\s]+/(\S+)",
            replacement=base + r"/u/\1/\2/raw/\3",
            description="Transform GitHub Gist raw file URLs",
        ),
        URLTransformRule(
            pattern=r"\[gist:([a-f0-9]+)\]",
            replacement=r"[gist:\1]",
            description="Preserve gist embed syntax",
        ),
    ]


def rules_for(source_kind: SourceKind, base_url: str) -> list[URLTransformRule]:
    """Default rule set for a source kind.

    GitLab and OpenGist URLs carry ids that only the mapping table can translate,
    so they have no pattern rules.
    """
    if source_kind is SourceKind.GITHUB:
        return github_rules(base_url)
    return []


class ContentTransformer:
    """Applies URL rules in order, then replaces recorded old URLs with new ones.

    Once every URL in a text has a mapping, transforming the output again
    returns it unchanged. Recording more mappings between two calls can still
    change text that was already transformed; that is expected while a
    migration is in progress.
    """

    def __init__(
        self,
        rules: Iterable[URLTransformRule] = (),
        url_mappings: Mapping[str, str] | None = None,
    ) -> None:
        self.rules: list[URLTransformRule] = list(rules)
        self._url_mappings: dict[str, str] = {}
        self._mapping_pattern: re.Pattern[str] | None = None
        for old_url, new_url in (url_mappings or {}).items():
            self.record_url(old_url, new_url)

    @property
    def url_mappings(self) -> dict[str, str]:
        return dict(self._url_mappings)

    def record_url(self, old_url: str, new_url: str) -> None:
        """Remember that `old_url` now lives at `new_url`.

        The rule-rewritten form of `old_url` is registered too, so a link the
        rules already rewrote still ends up at the final URL.
        """
        if not old_url or old_url == new_url:
            return
        self._url_mappings[old_url] = new_url
        rewritten = self._apply_rules(old_url)
        if rewritten not in (old_url, new_url):
            self._url_mappings[rewritten] = new_url
        self._mapping_pattern = None
        logger.debug(f"Recorded URL mapping {old_url} -> {new_url}")

    def transform(self, text: str) -> str:
        if not text:
            return text
        transformed = self._apply_rules(text)
        if self._url_mappings:
            transformed = self._pattern().sub(lambda m: self._url_mappings[m.group(1)], transformed)
        return transformed

    def _apply_rules(self, text: str) -> str:
        for rule in self.rules:
            text = rule.apply(text)
        return text

    def _pattern(self) -> re.Pattern[str]:
        if self._mapping_pattern is None:
            # Longest first so that a URL is never shadowed by one of its prefixes
            urls = sorted(self._url_mappings, key=len, reverse=True)
            alternation = "|".join(re.escape(url) for url in urls)
            self._mapping_pattern = re.compile(f"({alternation}){_URL_END}")
        return self._mapping_pattern
