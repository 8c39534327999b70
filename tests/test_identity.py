"""Unit tests for the identity directory and the name-matching cascade."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.identity.directory import IdentityDirectory, PersonIdentity, load_directory, normalize_name
from src.identity.resolver import IdentityResolver, match_user
from src.tracker.client import TrackerUser

# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


class TestNormalizeName:
    def test_lowercases_and_trims(self) -> None:
        assert normalize_name("  Florent ") == "florent"

    def test_strips_leading_at(self) -> None:
        assert normalize_name("@Flouflof") == "flouflof"

    def test_empty(self) -> None:
        assert normalize_name("   ") == ""


class TestIdentityDirectory:
    def test_find_by_alias(self, directory: IdentityDirectory) -> None:
        person = directory.find("FloFlo")
        assert person is not None
        assert person.canonical_handle == "florent"

    def test_find_by_chat_handle_with_at(self, directory: IdentityDirectory) -> None:
        person = directory.find("@sanjay_dev")
        assert person is not None
        assert person.canonical_handle == "sanjay"

    def test_find_by_email(self, directory: IdentityDirectory) -> None:
        person = directory.find("sacha@acme.io")
        assert person is not None
        assert person.canonical_handle == "sachadelox"

    def test_find_is_exact(self, directory: IdentityDirectory) -> None:
        assert directory.find("flor") is None

    def test_find_empty(self, directory: IdentityDirectory) -> None:
        assert directory.find("") is None

    def test_overlapping_alias_first_entry_wins(self) -> None:
        directory = IdentityDirectory(
            [
                PersonIdentity("alex", "alex@acme.io", "alex_a", frozenset({"al"})),
                PersonIdentity("alan", "alan@acme.io", "alan_b", frozenset({"al"})),
            ]
        )
        person = directory.find("al")
        assert person is not None
        assert person.canonical_handle == "alex"

    def test_duplicate_canonical_handle_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate canonical handle"):
            _ = IdentityDirectory(
                [
                    PersonIdentity("alex", "a@acme.io", "a"),
                    PersonIdentity("Alex", "b@acme.io", "b"),
                ]
            )

    def test_missing_canonical_handle_rejected(self) -> None:
        with pytest.raises(ValueError, match="missing a canonical handle"):
            _ = IdentityDirectory([PersonIdentity(" ", "a@acme.io", "a")])

    def test_describe_for_prompt(self, directory: IdentityDirectory) -> None:
        text = directory.describe_for_prompt()
        assert "- florent (aliases: flo, floflo, flouf, telegram: @Flouflof)" in text
        assert len(text.splitlines()) == 3

    def test_describe_empty(self) -> None:
        assert IdentityDirectory().describe_for_prompt() == "- (no team members configured)"


class TestLoadDirectory:
    def test_empty_path_gives_empty_directory(self) -> None:
        assert len(load_directory("")) == 0

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            _ = load_directory(tmp_path / "nope.yaml")

    def test_loads_people(self, tmp_path: Path) -> None:
        path = tmp_path / "people.yaml"
        _ = path.write_text(
            "people:\n"
            "  - canonical_handle: florent\n"
            "    tracker_email: florent@acme.io\n"
            "    chat_handle: Flouflof\n"
            "    aliases: [floflo, flo]\n"
            "  - canonical_handle: sanjay\n"
            "    tracker_email: sanjay@acme.io\n"
            "    chat_handle: sanjay_dev\n"
        )
        directory = load_directory(path)
        assert len(directory) == 2
        florent = directory.find("flo")
        assert florent is not None
        assert florent.aliases == frozenset({"floflo", "flo"})
        sanjay = directory.find("sanjay")
        assert sanjay is not None
        assert sanjay.aliases == frozenset()

    def test_blank_file_gives_empty_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "people.yaml"
        _ = path.write_text("")
        assert len(load_directory(path)) == 0

    def test_malformed_entry_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "people.yaml"
        _ = path.write_text("people:\n  - tracker_email: x@acme.io\n")
        with pytest.raises(ValueError, match="Malformed identity entry"):
            _ = load_directory(path)

    def test_non_list_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "people.yaml"
        _ = path.write_text("people: florent\n")
        with pytest.raises(ValueError, match="must contain a list"):
            _ = load_directory(path)


# ---------------------------------------------------------------------------
# Matching cascade
# ---------------------------------------------------------------------------


class TestMatchUser:
    @pytest.mark.parametrize("alias", ["florent", "floflo", "flo", "flouf", "@Flouflof", "FLORENT@acme.io"])
    def test_every_alias_resolves_to_the_person(
        self, alias: str, directory: IdentityDirectory, tracker_users: list[TrackerUser]
    ) -> None:
        user = match_user(alias, directory, tracker_users)
        assert user is not None
        assert user["id"] == "u-flo"

    def test_exact_email_beats_name_overlap(self, directory: IdentityDirectory, tracker_users: list[TrackerUser]) -> None:
        user = match_user("sandy", directory, tracker_users)
        assert user is not None
        assert user["id"] == "u-san"

    def test_directory_outranks_substring(self, directory: IdentityDirectory, tracker_users: list[TrackerUser]) -> None:
        # "dele" is a substring of "adele", but the directory maps it to sachadelox
        user = match_user("dele", directory, tracker_users)
        assert user is not None
        assert user["id"] == "u-sacha"

    def test_same_input_without_directory_uses_substring(self, tracker_users: list[TrackerUser]) -> None:
        user = match_user("dele", IdentityDirectory(), tracker_users)
        assert user is not None
        assert user["id"] == "u-del"

    def test_local_part_rule(self, tracker_users: list[TrackerUser]) -> None:
        directory = IdentityDirectory([PersonIdentity("sacha", "sacha@old-domain.io", "sacha_tg")])
        user = match_user("sacha_tg", directory, tracker_users)
        assert user is not None
        assert user["id"] == "u-sacha"

    def test_alias_overlap_rule(self) -> None:
        users = [TrackerUser(id="u-1", name="Morgan Lee", displayName="morgs", email="ml@other.io")]
        directory = IdentityDirectory([PersonIdentity("zed", "zed@acme.io", "zed_tg", frozenset({"morgan"}))])
        user = match_user("zed_tg", directory, users)
        assert user is not None
        assert user["id"] == "u-1"

    def test_rule_order_across_users(self) -> None:
        # Second user has the exact email; first only overlaps by name
        users = [
            TrackerUser(id="u-name", name="Florentine", displayName="flo2", email="fl@acme.io"),
            TrackerUser(id="u-email", name="F. Martin", displayName="fm", email="florent@acme.io"),
        ]
        directory = IdentityDirectory([PersonIdentity("florent", "florent@acme.io", "Flouflof")])
        user = match_user("florent", directory, users)
        assert user is not None
        assert user["id"] == "u-email"

    def test_directory_hit_without_tracker_user_returns_none(self) -> None:
        users = [TrackerUser(id="u-1", name="Somebody Else", displayName="se", email="se@acme.io")]
        directory = IdentityDirectory([PersonIdentity("florent", "florent@acme.io", "Flouflof")])
        assert match_user("florent", directory, users) is None

    def test_fallback_on_email_local_part(self, tracker_users: list[TrackerUser]) -> None:
        user = match_user("adele", IdentityDirectory(), tracker_users)
        assert user is not None
        assert user["id"] == "u-del"

    def test_no_match(self, directory: IdentityDirectory, tracker_users: list[TrackerUser]) -> None:
        assert match_user("zoltan", directory, tracker_users) is None

    def test_empty_input(self, directory: IdentityDirectory, tracker_users: list[TrackerUser]) -> None:
        assert match_user("  @ ", directory, tracker_users) is None


class TestIdentityResolver:
    async def test_resolve_uses_cached_users(
        self, directory: IdentityDirectory, tracker_users: list[TrackerUser]
    ) -> None:
        cache = MagicMock()
        cache.get_users = AsyncMock(return_value=tracker_users)
        resolver = IdentityResolver(directory, cache)

        user = await resolver.resolve("@Flouflof")

        assert user is not None
        assert user["id"] == "u-flo"
        cache.get_users.assert_awaited_once()

    async def test_resolve_with_empty_cache(self, directory: IdentityDirectory) -> None:
        cache = MagicMock()
        cache.get_users = AsyncMock(return_value=[])
        resolver = IdentityResolver(directory, cache)
        assert await resolver.resolve("florent") is None
