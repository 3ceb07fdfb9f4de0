"""
Celery tasks for email connection maintenance.

Tasks:
- renew_microsoft_subscriptions: Renew Graph subscriptions near expiry (hourly)
- run_email_watchdog: Re-register lapsed watches/subscriptions (every 30 min)
"""

import logging
from contextlib import asynccontextmanager

import httpx

from billybot.core.celery_app import celery_app
from billybot.core.celery_utils import run_async_task
from billybot.core.config import Settings, get_settings
from billybot.core.database import close_db, create_engine_from_settings, create_session_factory
from billybot.core.security import TokenCipher
from billybot.modules.email.gmail_watch import GmailWatchService
from billybot.modules.email.microsoft import MicrosoftSubscriptionService
from billybot.modules.email.repository import EmailAccountRepository
from billybot.modules.email.tokens import TokenManager
from billybot.modules.email.watchdog import EmailWatchdog

logger = logging.getLogger(__name__)


@asynccontextmanager
async def email_services(settings: Settings):
    """
    Build the email services for one task run and dispose of them after.

    Yields:
        (repository, token_manager, http_client)
    """
    cipher = TokenCipher.from_settings(settings)
    engine = create_engine_from_settings(settings)
    http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    try:
        repository = EmailAccountRepository(create_session_factory(engine))
        token_manager = TokenManager(settings, cipher, repository, http_client)
        yield repository, token_manager, http_client
    finally:
        await http_client.aclose()
        await close_db(engine)


@celery_app.task(name="billybot.tasks.email.renew_microsoft_subscriptions")
def renew_microsoft_subscriptions():
    """
    Renew Microsoft Graph subscriptions expiring within 12 hours.

    Returns:
        {"total", "renewed", "recreated", "failed"}

    Usage:
        # Called automatically by Celery Beat
        # Or manually: renew_microsoft_subscriptions.delay()
    """
    settings = get_settings()

    async def _renew():
        async with email_services(settings) as (repository, token_manager, http_client):
            service = MicrosoftSubscriptionService(settings, repository, token_manager, http_client)
            report = await service.renew_due_subscriptions()
        return report.summary

    summary = run_async_task(_renew())
    logger.info(f"Microsoft subscription renewal task finished: {summary}")
    return summary


@celery_app.task(name="billybot.tasks.email.run_email_watchdog")
def run_email_watchdog():
    """
    Recover connected accounts whose Gmail watch or Graph subscription lapsed.

    Returns:
        {"total": int, "statuses": {status: count}}
    """
    settings = get_settings()

    async def _run():
        async with email_services(settings) as (repository, token_manager, http_client):
            watchdog = EmailWatchdog(
                repository,
                GmailWatchService(settings, repository, token_manager),
                MicrosoftSubscriptionService(settings, repository, token_manager, http_client),
            )
            return await watchdog.run()

    results = run_async_task(_run())

    statuses = {}
    for result in results:
        statuses[result.status] = statuses.get(result.status, 0) + 1

    logger.info(f"Email watchdog task finished: {statuses}")
    return {"total": len(results), "statuses": statuses}
