from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Pattern, Sequence


# Email-shaped identity token.  Matched anywhere inside a larger value so
# claims encodings such as ``i:0#.f|membership|john@contoso.com`` still
# yield ``john@contoso.com``.
IDENTITY_TOKEN_PATTERN: Pattern[str] = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

# Service and built-in principals that should not end up in a mapping file.
# Matched case-insensitively against the identity and the display name.
SYSTEM_ACCOUNT_PATTERNS: List[str] = [
    r"^app@sharepoint",
    r"sharepoint\\system",
    r"spocrawler",
    r"^nt (authority|service)\\",
    r"^system account$",
    r"^sharepoint app$",
    r"^everyone( except external users)?$",
    r"^(company|global|sharepoint) administrator",
    r"^svc[-_.]",
    r"^spo-grid-all-users",
]


@dataclass(frozen=True)
class IdentityToken:
    """An email-shaped substring found inside a raw value."""

    raw: str
    start: int
    end: int

    @property
    def identity(self) -> str:
        return normalize_identity(self.raw)


def normalize_identity(value: Optional[str]) -> str:
    """Trim and lowercase an identity so it can be used as a lookup key."""
    if not value:
        return ""
    return value.strip().lower()


def extract_identity_tokens(text: Optional[str]) -> List[IdentityToken]:
    """
    Return every identity token embedded in ``text``, in order of appearance.

    ``None`` and empty strings yield an empty list.  The same token may be
    returned more than once when it occurs repeatedly.
    """
    if not text:
        return []
    return [IdentityToken(m.group(0), m.start(), m.end()) for m in IDENTITY_TOKEN_PATTERN.finditer(text)]


def substitute_identity_tokens(text: str, replace: Callable[[IdentityToken], Optional[str]]) -> str:
    """
    Rewrite the identity tokens of ``text`` in a single pass.

    ``replace`` receives each token and returns the replacement string, or
    ``None`` to keep the token as-is.  Characters outside the tokens are
    never touched.
    """
    if not text:
        return text

    def _sub(match: "re.Match[str]") -> str:
        token = IdentityToken(match.group(0), match.start(), match.end())
        new = replace(token)
        return match.group(0) if new is None else new

    return IDENTITY_TOKEN_PATTERN.sub(_sub, text)


def compile_system_patterns(patterns: Optional[Sequence[str]] = None) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in (SYSTEM_ACCOUNT_PATTERNS if patterns is None else patterns)]


def is_system_account(identity: str, display_name: str = "", patterns: Optional[Iterable[Pattern[str]]] = None) -> bool:
    """True when the identity or its display name looks like a service principal."""
    compiled = list(patterns) if patterns is not None else compile_system_patterns()
    for candidate in (identity or "", display_name or ""):
        candidate = candidate.strip()
        if candidate and any(p.search(candidate) for p in compiled):
            return True
    return False
