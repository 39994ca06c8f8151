"""Redirect outcomes returned by auth flows instead of raised responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlencode

from app.core.cookies import CookieMutation

DEFAULT_REDIRECT = "/"


@dataclass(frozen=True)
class Redirect:
    """Short-circuit outcome: send the browser elsewhere and apply cookie changes."""

    location: str
    cookies: tuple[CookieMutation, ...] = field(default_factory=tuple)
    status_code: int = 303

    def with_cookies(self, *mutations: CookieMutation) -> Redirect:
        """Return a copy carrying additional cookie mutations."""
        return Redirect(
            location=self.location,
            cookies=self.cookies + tuple(mutations),
            status_code=self.status_code,
        )


def safe_redirect(to: str | None, default: str = DEFAULT_REDIRECT) -> str:
    """Only allow same-origin relative paths as redirect targets."""
    if not to or not isinstance(to, str):
        return default
    candidate = to.strip()
    if not candidate.startswith("/") or candidate.startswith("//") or "\\" in candidate:
        return default
    return candidate


def with_query(path: str, **params: str | None) -> str:
    """Append non-empty query parameters to a path."""
    present = {key: value for key, value in params.items() if value}
    if not present:
        return path
    return f"{path}?{urlencode(present)}"
