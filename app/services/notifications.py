"""
Access Notifications - Hook fired when a buyer gains access.

Rendering and delivery of mails is out of scope; the default notifier only
logs. Deployments plug a real delivery implementation into the Notifier
protocol.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from structlog import get_logger

from app.models.domain import AccessLink, UserData

logger = get_logger(__name__)


class NotificationReason(str, Enum):
    PURCHASE_CREATED = "purchase_created"
    SCOPE_MIGRATED = "scope_migrated"


class AccessMailPolicy(str, Enum):
    NEVER = "never"
    ALWAYS = "always"
    NEW_USERS_ONLY = "new_users_only"

    def should_notify(self, is_new_user: bool) -> bool:
        if self == AccessMailPolicy.ALWAYS:
            return True
        if self == AccessMailPolicy.NEW_USERS_ONLY:
            return is_new_user
        return False


@dataclass(frozen=True)
class AccessNotification:
    """Payload of the notification hook."""

    user: UserData
    links: tuple[AccessLink, ...]
    reason: NotificationReason
    product_id: int | None = None
    purchase_id: int | None = None
    external_product_id: str | None = None


class Notifier(Protocol):
    async def notify(self, notification: AccessNotification) -> None:
        ...


class LoggingNotifier:
    """Notifier that records every notification in the structured log."""

    async def notify(self, notification: AccessNotification) -> None:
        logger.info(
            "access_notification",
            user_id=notification.user.user_id,
            reason=notification.reason.value,
            product_id=notification.product_id,
            purchase_id=notification.purchase_id,
            external_product_id=notification.external_product_id,
            links=[link.url for link in notification.links],
        )
