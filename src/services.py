"""Component wiring — builds the object graph shared by the API, bot and CLI."""

import logging
import sqlite3
from dataclasses import dataclass

from src.agent.dispatcher import ActionDispatcher
from src.agent.interpreter import CommandInterpreter
from src.agent.llm import create_llm
from src.bot.telegram_bot import TicketBot
from src.config import Settings
from src.identity.directory import load_directory
from src.identity.resolver import IdentityResolver
from src.memory.reconciler import IssueReconciler
from src.tracker.client import TrackerClient
from src.tracker.users import TrackerUserCache

logger = logging.getLogger(__name__)


@dataclass
class Services:
    tracker: TrackerClient
    user_cache: TrackerUserCache
    resolver: IdentityResolver
    interpreter: CommandInterpreter
    dispatcher: ActionDispatcher
    reconciler: IssueReconciler
    bot: TicketBot | None = None


def build_interpreter(settings: Settings) -> tuple[TrackerClient, TrackerUserCache, IdentityResolver, CommandInterpreter]:
    """Build everything needed to interpret messages (no store, no bot)."""
    tracker = TrackerClient(settings.linear_api_url, settings.linear_api_key, settings.linear_team_id)
    user_cache = TrackerUserCache(tracker, ttl_seconds=settings.user_cache_ttl_seconds)
    directory = load_directory(settings.identity_directory_path)
    resolver = IdentityResolver(directory, user_cache)
    interpreter = CommandInterpreter(
        create_llm(settings),
        resolver,
        statuses=settings.status_names,
        brand_name=settings.brand_name,
    )
    return tracker, user_cache, resolver, interpreter


def build_services(settings: Settings, conn: sqlite3.Connection, *, with_bot: bool = True) -> Services:
    """Build the full component graph on an initialized store connection."""
    tracker, user_cache, resolver, interpreter = build_interpreter(settings)
    reconciler = IssueReconciler(conn)
    dispatcher = ActionDispatcher(
        tracker,
        resolver,
        conn,
        reconciler,
        issue_url_template=settings.linear_issue_url_template,
        statuses=settings.status_names,
        brand_name=settings.brand_name,
    )
    services = Services(
        tracker=tracker,
        user_cache=user_cache,
        resolver=resolver,
        interpreter=interpreter,
        dispatcher=dispatcher,
        reconciler=reconciler,
    )
    if with_bot:
        services.bot = TicketBot(settings, interpreter, dispatcher, conn)
        reconciler.notifier = services.bot
    logger.info("Services ready (%d people in identity directory)", len(resolver.directory))
    return services
