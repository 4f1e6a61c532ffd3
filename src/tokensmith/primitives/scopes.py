"""Scope set normalization.

Scopes are compared case-insensitively and order-independently, but the
caller's original spelling and first-seen order are kept for the wire.
"""

from __future__ import annotations

from collections.abc import Iterable

OPENID_SCOPE = "openid"
PROFILE_SCOPE = "profile"
OFFLINE_ACCESS_SCOPE = "offline_access"
OIDC_DEFAULT_SCOPES = (OPENID_SCOPE, PROFILE_SCOPE, OFFLINE_ACCESS_SCOPE)


class ScopeSet:
    """Ordered, deduplicated, case-insensitive set of scopes."""

    def __init__(self, scopes: Iterable[str] = ()):
        self._scopes: dict[str, str] = {}
        for scope in scopes:
            self.add(scope)

    @classmethod
    def from_string(cls, value: str | None) -> ScopeSet:
        return cls((value or "").split(" "))

    def add(self, scope: str) -> None:
        scope = scope.strip()
        if scope and scope.lower() not in self._scopes:
            self._scopes[scope.lower()] = scope

    def with_oidc_defaults(self) -> ScopeSet:
        return ScopeSet([*self, *OIDC_DEFAULT_SCOPES])

    def without_oidc_defaults(self) -> ScopeSet:
        return ScopeSet(s for s in self if s.lower() not in OIDC_DEFAULT_SCOPES)

    def only_oidc_defaults(self) -> bool:
        return all(s.lower() in OIDC_DEFAULT_SCOPES for s in self)

    def contains(self, scope: str) -> bool:
        return scope.strip().lower() in self._scopes

    def issubset(self, other: ScopeSet) -> bool:
        return all(key in other._scopes for key in self._scopes)

    def as_list(self) -> list[str]:
        return list(self._scopes.values())

    def to_string(self) -> str:
        """Space-joined in insertion order, for the ``scope`` parameter."""
        return " ".join(self._scopes.values())

    def to_target(self) -> str:
        """Space-joined and sorted, for cache ``target`` fields."""
        return " ".join(sorted(self._scopes.values(), key=str.lower))

    def __iter__(self):
        return iter(self._scopes.values())

    def __len__(self) -> int:
        return len(self._scopes)

    def __bool__(self) -> bool:
        return bool(self._scopes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScopeSet):
            return NotImplemented
        return self._scopes.keys() == other._scopes.keys()

    def __repr__(self) -> str:
        return f"ScopeSet({self.as_list()!r})"
