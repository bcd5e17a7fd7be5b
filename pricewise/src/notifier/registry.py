from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewise.src.contracts.errors import DispatchFailed
from pricewise.src.contracts.models import DeliveryResult, NotificationIntent, Platform, User
from pricewise.src.notifier.email_notifier import EmailNotifier
from pricewise.src.notifier.web_push_notifier import WebPushNotifier
from pricewise.src.users.repository import UserRepository

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Deliver notification intents over every channel the user can receive.

    Adding a new channel requires only adding a new notifier class and
    registering it here -- no existing code needs to change.

    The alerts behind the intents are already deactivated when ``dispatch``
    runs, so each firing reaches this class exactly once. Failures are
    reported per intent and never raised for individual deliveries.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_notifier: EmailNotifier,
        web_push_notifier: WebPushNotifier,
    ) -> None:
        self._session_factory = session_factory
        self._email = email_notifier
        self._web_push = web_push_notifier

    async def dispatch(self, intents: Sequence[NotificationIntent]) -> list[DeliveryResult]:
        if not intents:
            return []

        users = await self._load_users({intent.user_id for intent in intents})
        results = await asyncio.gather(
            *(self._deliver(intent, users.get(intent.user_id)) for intent in intents)
        )

        delivered = sum(1 for r in results if r.delivered)
        logger.info(
            "dispatch_complete",
            intents_count=len(intents),
            delivered=delivered,
            failed=len(results) - delivered,
        )
        return list(results)

    async def notify(self, intent: NotificationIntent, user: User) -> dict[str, bool]:
        """Send one intent to all relevant channels for the given user.

        Returns a dict mapping channel name to success boolean.
        - ``email`` is always sent (every user has an email).
        - ``web_push`` is sent if the user has any web device registrations.
        """
        log = logger.bind(user_id=str(user.id), alert_id=str(intent.alert_id))

        tasks: dict[str, asyncio.Task[bool]] = {}

        # Email is always sent
        tasks["email"] = asyncio.create_task(self._email.send(intent, user))

        has_web = any(d.platform == Platform.WEB for d in user.devices)
        if has_web:
            tasks["web_push"] = asyncio.create_task(self._web_push.send(intent, user))

        results: dict[str, bool] = {}
        for channel, task in tasks.items():
            try:
                results[channel] = await task
            except Exception as exc:  # noqa: BLE001
                log.error("notify_channel_error", channel=channel, error=str(exc))
                results[channel] = False

        log.info("notify_complete", results=results)
        return results

    async def _load_users(self, user_ids: set[uuid.UUID]) -> dict[uuid.UUID, User]:
        try:
            async with self._session_factory() as session:
                users = await UserRepository(session).get_many_with_devices(list(user_ids))
        except SQLAlchemyError as exc:
            raise DispatchFailed(f"Could not load alert recipients: {exc}") from exc
        return {user.id: user for user in users}

    async def _deliver(self, intent: NotificationIntent, user: User | None) -> DeliveryResult:
        if user is None:
            missing = DispatchFailed(f"User {intent.user_id} not found")
            logger.error("dispatch_failed", alert_id=str(intent.alert_id), error=str(missing))
            return DeliveryResult(
                alert_id=intent.alert_id,
                user_id=intent.user_id,
                delivered=False,
                error=str(missing),
            )

        channels = await self.notify(intent, user)
        delivered = any(channels.values())
        error: str | None = None
        if not delivered:
            failure = DispatchFailed(f"All channels failed for alert {intent.alert_id}")
            logger.error("dispatch_failed", alert_id=str(intent.alert_id), error=str(failure))
            error = str(failure)

        return DeliveryResult(
            alert_id=intent.alert_id,
            user_id=intent.user_id,
            delivered=delivered,
            channels=channels,
            error=error,
        )
