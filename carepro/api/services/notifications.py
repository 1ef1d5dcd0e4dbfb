"""
Notification dispatch for subscription events.
"""

from typing import List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
import structlog

from carepro.core.config import RecipientRole
from carepro.core.settings import settings
from carepro.db.models.billing import Notification
from carepro.db.models.subscription import Subscription

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Fire-and-forget notifications.

    Recipients are resolved by role: the subscription's client or caregiver,
    or the configured admin recipients. A delivery failure is logged and
    never reaches the caller.
    """

    def __init__(self, session: Session, admin_recipients: Optional[List[str]] = None):
        self.session = session
        self.admin_recipients = admin_recipients if admin_recipients is not None else settings.admin_notification_recipients

    def resolve_recipients(self, role: RecipientRole, subscription: Subscription) -> List[str]:
        if role == RecipientRole.CLIENT:
            return [subscription.client_id]
        if role == RecipientRole.CAREGIVER:
            return [subscription.caregiver_id]
        return list(self.admin_recipients)

    def notify(self, role: RecipientRole, subscription: Subscription, notification_type: str,
               title: str, content: str) -> int:
        """Queue a notification for every recipient in ``role``. Returns how many were queued."""
        recipients = self.resolve_recipients(role, subscription)
        if not recipients:
            logger.warning("No notification recipients", role=role.value, notification_type=notification_type)
            return 0

        try:
            for recipient_id in recipients:
                self.session.add(Notification(
                    recipient_id=recipient_id,
                    recipient_role=role.value,
                    notification_type=notification_type,
                    title=title,
                    content=content,
                    related_entity_id=subscription.id,
                ))
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to send notification",
                role=role.value,
                notification_type=notification_type,
                subscription_id=subscription.id,
                error=str(e),
            )
            return 0

        logger.info(
            "Notification sent",
            role=role.value,
            notification_type=notification_type,
            subscription_id=subscription.id,
            recipients=len(recipients),
        )
        return len(recipients)
