"""Map free-text names, aliases, and @mentions to tracker users.

Matching is a strict cascade — curated directory entries are trusted over
incidental substring matches, and exact identifiers over fuzzy ones:

1. normalize the input (lowercase, trim, strip ``@``)
2. look it up in the identity directory
3. if found: exact email → email local part → display/full name vs canonical
   handle (substring, either direction) → display/full name vs any alias
4. otherwise: substring match of the input against every user's display name,
   full name, and email local part, either direction

Each rule is checked across all users before moving to the next one.
"""

import logging
from collections.abc import Callable, Iterable

from src.identity.directory import IdentityDirectory, PersonIdentity, normalize_name
from src.tracker.client import TrackerUser
from src.tracker.users import TrackerUserCache

logger = logging.getLogger(__name__)

type _Rule = Callable[[TrackerUser], bool]


def _email(user: TrackerUser) -> str:
    return (user.get("email") or "").lower()


def _local_part(user: TrackerUser) -> str:
    return _email(user).split("@", 1)[0]


def _names(user: TrackerUser) -> list[str]:
    return [n.lower() for n in (user.get("displayName"), user.get("name")) if n]


def _overlaps(a: str, b: str) -> bool:
    """Substring match in either direction; empty strings never match."""
    return bool(a) and bool(b) and (a in b or b in a)


def _first(users: Iterable[TrackerUser], rules: list[_Rule]) -> TrackerUser | None:
    users = list(users)
    for rule in rules:
        for user in users:
            if rule(user):
                return user
    return None


def _directory_rules(person: PersonIdentity) -> list[_Rule]:
    email = person.tracker_email.lower()
    local_parts = {p for p in (person.email_local_part, normalize_name(person.canonical_handle)) if p}
    canonical = normalize_name(person.canonical_handle)
    aliases = [normalize_name(a) for a in person.aliases if normalize_name(a)]
    return [
        lambda u: bool(email) and _email(u) == email,
        lambda u: _local_part(u) in local_parts,
        lambda u: any(_overlaps(n, canonical) for n in _names(u)),
        lambda u: any(_overlaps(n, a) for n in _names(u) for a in aliases),
    ]


def _fallback_rules(needle: str) -> list[_Rule]:
    return [
        lambda u: any(_overlaps(n, needle) for n in _names(u)) or _overlaps(_local_part(u), needle),
    ]


def match_user(raw_name: str, directory: IdentityDirectory, users: Iterable[TrackerUser]) -> TrackerUser | None:
    """Pure matching cascade over an explicit user list."""
    needle = normalize_name(raw_name)
    if not needle:
        return None

    person = directory.find(needle)
    if person is not None:
        matched = _first(users, _directory_rules(person))
        if matched is not None:
            return matched
        logger.debug("Directory entry '%s' has no matching Linear user", person.canonical_handle)
        return None

    return _first(users, _fallback_rules(needle))


class IdentityResolver:
    """Resolves names against the directory and the cached tracker users."""

    def __init__(self, directory: IdentityDirectory, user_cache: TrackerUserCache) -> None:
        self._directory = directory
        self._user_cache = user_cache

    @property
    def directory(self) -> IdentityDirectory:
        return self._directory

    async def resolve(self, raw_name: str) -> TrackerUser | None:
        users = await self._user_cache.get_users()
        user = match_user(raw_name, self._directory, users)
        logger.debug("Resolved '%s' -> %s", raw_name, user.get("name") if user else None)
        return user
