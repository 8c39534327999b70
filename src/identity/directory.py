"""Curated directory of team members — chat handles, tracker identities, aliases.

The directory is loaded once at startup and never mutated. Lookups are exact
(after normalization); fuzzy matching against live tracker users lives in
:mod:`src.identity.resolver`.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def normalize_name(raw: str) -> str:
    """Lowercase, trim, and drop a leading ``@`` mention marker."""
    return raw.strip().lower().lstrip("@").strip()


@dataclass(frozen=True)
class PersonIdentity:
    canonical_handle: str
    tracker_email: str
    chat_handle: str
    aliases: frozenset[str] = frozenset()

    def identifiers(self) -> set[str]:
        """Every normalized string that names this person exactly."""
        names = {self.chat_handle, self.canonical_handle, self.tracker_email, *self.aliases}
        return {normalize_name(n) for n in names if n}

    @property
    def email_local_part(self) -> str:
        return self.tracker_email.split("@", 1)[0].lower()


class IdentityDirectory:
    """Ordered, immutable table of people. First entry wins on overlapping aliases."""

    def __init__(self, people: list[PersonIdentity] | None = None) -> None:
        people = list(people or [])
        seen: set[str] = set()
        for person in people:
            handle = normalize_name(person.canonical_handle)
            if not handle:
                msg = "Identity entry is missing a canonical handle"
                raise ValueError(msg)
            if handle in seen:
                msg = f"Duplicate canonical handle in identity directory: {person.canonical_handle}"
                raise ValueError(msg)
            seen.add(handle)
        self._people: tuple[PersonIdentity, ...] = tuple(people)

    def __iter__(self) -> Iterator[PersonIdentity]:
        return iter(self._people)

    def __len__(self) -> int:
        return len(self._people)

    def find(self, identifier: str) -> PersonIdentity | None:
        """Find a person by chat handle, canonical handle, email, or alias."""
        needle = normalize_name(identifier)
        if not needle:
            return None
        for person in self._people:
            if needle in person.identifiers():
                return person
        return None

    def describe_for_prompt(self) -> str:
        """One line per person, in the form the command prompt expects."""
        if not self._people:
            return "- (no team members configured)"
        lines: list[str] = []
        for person in self._people:
            aliases = ", ".join(sorted(person.aliases)) or "none"
            lines.append(f"- {person.canonical_handle} (aliases: {aliases}, telegram: @{person.chat_handle})")
        return "\n".join(lines)


def _person_from_mapping(raw: dict[str, Any]) -> PersonIdentity:
    return PersonIdentity(
        canonical_handle=str(raw["canonical_handle"]),
        tracker_email=str(raw.get("tracker_email", "")),
        chat_handle=str(raw.get("chat_handle", "")),
        aliases=frozenset(str(a) for a in raw.get("aliases") or []),
    )


def load_directory(path: str | Path | None) -> IdentityDirectory:
    """Load the identity directory from a YAML file.

    The file holds a top-level ``people`` list; each entry has
    ``canonical_handle``, ``tracker_email``, ``chat_handle`` and ``aliases``.
    An empty path yields an empty directory.

    Raises:
        FileNotFoundError: If the path is set but does not exist.
        ValueError: If an entry is malformed or a canonical handle repeats.
    """
    if not path:
        logger.info("No identity directory configured — assignee matching uses tracker users only")
        return IdentityDirectory()

    file_path = Path(path)
    if not file_path.is_file():
        msg = f"Identity directory not found: {file_path}"
        raise FileNotFoundError(msg)

    raw: Any = yaml.safe_load(file_path.read_text())
    if raw is None:
        return IdentityDirectory()
    entries = raw.get("people", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        msg = f"Identity directory {file_path.name} must contain a list of people"
        raise ValueError(msg)

    people: list[PersonIdentity] = []
    for entry in entries:
        try:
            people.append(_person_from_mapping(entry))
        except (KeyError, TypeError, AttributeError) as exc:
            msg = f"Malformed identity entry in {file_path.name}: {entry!r}"
            raise ValueError(msg) from exc

    directory = IdentityDirectory(people)
    logger.info("Loaded %d identities from %s", len(directory), file_path)
    return directory
