"""Scope values and wildcard matching.

A scope is ``resource:action``; ``*`` as the action grants every action on
the resource, and ``admin:*`` grants everything. Strings are parsed once into
:class:`Scope` so comparisons never re-split text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence

WILDCARD = "*"

_PART_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


@dataclass(frozen=True)
class Scope:
    resource: str
    action: str

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}"

    @property
    def is_wildcard(self) -> bool:
        return self.action == WILDCARD

    def grants(self, required: "Scope") -> bool:
        """True when holding this scope satisfies ``required``."""
        if self == ADMIN_WILDCARD:
            return True
        if self.resource != required.resource:
            return False
        return self.is_wildcard or self.action == required.action


ADMIN_WILDCARD = Scope("admin", WILDCARD)
SERVICE_WILDCARD = Scope("service", WILDCARD)


def parse_scope(value: str) -> Scope:
    if not isinstance(value, str):
        raise ValueError(f"scope must be a string, got {type(value).__name__}")
    resource, sep, action = value.strip().partition(":")
    if not sep or not resource or not action:
        raise ValueError(f"scope must look like resource:action: {value!r}")
    if not _PART_RE.match(resource):
        raise ValueError(f"invalid scope resource: {value!r}")
    if action != WILDCARD and not _PART_RE.match(action):
        raise ValueError(f"invalid scope action: {value!r}")
    return Scope(resource, action)


def parse_scopes(values: Iterable[str]) -> List[Scope]:
    """Parse and de-duplicate while keeping the caller's order."""
    parsed: List[Scope] = []
    for value in values:
        scope = parse_scope(value)
        if scope not in parsed:
            parsed.append(scope)
    return parsed


def has_scope(held: Sequence[Scope], required: Scope) -> bool:
    return any(scope.grants(required) for scope in held)


def authorize_scopes(requested: Iterable[str], permissions: Iterable[str]) -> List[str]:
    """Filter requested scopes down to those an identity's permissions allow.

    Permissions come from the identity verifier as dotted strings:
    ``admin`` unlocks ``admin:*``; ``resource.action`` or ``resource.*``
    unlocks ``resource:action``. Malformed requested scopes are dropped.
    """
    granted = set(permissions)
    authorized: List[str] = []
    for value in requested:
        try:
            scope = parse_scope(value)
        except ValueError:
            continue
        if scope == ADMIN_WILDCARD:
            allowed = "admin" in granted
        else:
            allowed = (
                f"{scope.resource}.{scope.action}" in granted
                or f"{scope.resource}.{WILDCARD}" in granted
            )
        if allowed and str(scope) not in authorized:
            authorized.append(str(scope))
    return authorized
