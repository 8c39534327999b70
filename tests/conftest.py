"""Shared pytest configuration and fixtures."""

import sqlite3
from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from src.config import Settings, get_settings
from src.identity.directory import IdentityDirectory, PersonIdentity
from src.memory.store import get_connection, init_schema
from src.tracker.client import TrackerUser

LINEAR_URL = "https://linear.test/graphql"


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit real services (requires .env with valid credentials)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so tests that forget mock_settings fail locally, not just in CI.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    Tests that use mock_settings bypass Settings() entirely, so this is transparent.
    Tests that forget mock_settings will hit a validation error on required fields.
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            # Telegram
            "telegram_bot_token": "123456:test-fake-token",
            "telegram_allowed_usernames": "alice,bob",
            "allowed_usernames": {"alice", "bob"},
            "telegram_launch_max_attempts": 3,
            "telegram_launch_base_delay_seconds": 0.0,
            # Linear
            "linear_api_key": "lin_api_test_fake",
            "linear_team_id": "team-1",
            "linear_api_url": LINEAR_URL,
            "linear_webhook_secret": "whsec-test",
            "linear_issue_url_template": "https://linear.app/acme/issue/{identifier}",
            "webhook_max_age_seconds": 60,
            # LLM
            "llm_provider": "openai",
            "openai_api_key": "sk-proj-test-fake",
            "openai_model": "gpt-4o-mini",
            "openai_base_url": "",
            "anthropic_api_key": "",
            "anthropic_model": "claude-sonnet-4-5-20250929",
            "active_model": "gpt-4o-mini",
            "llm_temperature": 0.3,
            "llm_max_tokens": 500,
            # Vocabulary
            "identity_directory_path": "",
            "workflow_statuses": "Todo,In Progress,In Review,Done,Cancelled",
            "status_names": ["Todo", "In Progress", "In Review", "Done", "Cancelled"],
            # Store
            "issue_db_path": ":memory:",
            "history_max_messages": 20,
            "history_ttl_seconds": 3600,
            "user_cache_ttl_seconds": 300,
            "purge_interval_minutes": 0,
            "brand_name": "Linear",
            "confidence_threshold": 0.5,
        },
    )()
    with (
        patch("src.config.get_settings", return_value=fake_settings),
        patch("src.memory.store.get_settings", return_value=fake_settings),
        patch("src.memory.scheduler.get_settings", return_value=fake_settings),
        patch("src.api.guard.get_settings", return_value=fake_settings),
        patch("src.api.main.get_settings", return_value=fake_settings),
        patch("src.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


# ---------------------------------------------------------------------------
# Shared domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def conn() -> Generator[sqlite3.Connection]:
    """In-memory issue store with schema initialized."""
    connection = get_connection(":memory:")
    init_schema(connection)
    yield connection
    connection.close()


@pytest.fixture
def directory() -> IdentityDirectory:
    return IdentityDirectory(
        [
            PersonIdentity(
                canonical_handle="florent",
                tracker_email="florent@acme.io",
                chat_handle="Flouflof",
                aliases=frozenset({"floflo", "flo", "flouf"}),
            ),
            PersonIdentity(
                canonical_handle="sanjay",
                tracker_email="sanjay.k@acme.io",
                chat_handle="sanjay_dev",
                aliases=frozenset({"sandy", "sand"}),
            ),
            PersonIdentity(
                canonical_handle="sachadelox",
                tracker_email="sacha@acme.io",
                chat_handle="delox",
                aliases=frozenset({"sach", "dele"}),
            ),
        ]
    )


@pytest.fixture
def tracker_users() -> list[TrackerUser]:
    return [
        TrackerUser(id="u-flo", name="Florent Martin", displayName="florent", email="florent@acme.io"),
        TrackerUser(id="u-san", name="Sanjay Kumar", displayName="sk", email="sanjay.k@acme.io"),
        TrackerUser(id="u-sacha", name="Sacha Delorme", displayName="sacha", email="sacha@acme.io"),
        TrackerUser(id="u-del", name="Adele Park", displayName="adele", email="adele@acme.io"),
    ]
