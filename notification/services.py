# src/notification/services.py
import logging
from typing import Any, Dict, Optional

import requests

from config import settings
from payment.models import Payment

logger = logging.getLogger(__name__)


class NotificationService:
    """Pushes payment events to the Telegram bot webhook. Delivery is best-effort."""

    def __init__(self, logger_: Optional[logging.Logger] = None, session: Optional[requests.Session] = None):
        self.logger = logger_ or logger
        self.session = session or requests.Session()

    @staticmethod
    def build_payment_notification(payment: Payment, status: str) -> Optional[Dict[str, Any]]:
        """Snapshot what the bot needs while the payment row is still loaded. None if the user has no Telegram id."""
        user = payment.user
        if not user or not user.telegram_id:
            return None
        target = payment.plan if payment.kind == "plan" else payment.package
        return {
            "type": "payment_notification",
            "userId": payment.user_id,
            "telegramId": user.telegram_id,
            "status": status,  # success, cancelled
            "amount": payment.amount // 100,
            "paymentType": payment.kind,
            "itemName": target.display_name if target else "",
        }

    def send_payment_notification(self, payload: Dict[str, Any]) -> bool:
        if not settings.BOT_WEBHOOK_URL:
            self.logger.debug("Bot webhook URL not configured, skipping notification")
            return False

        url = settings.BOT_WEBHOOK_URL.rstrip("/") + "/webhook/payment"
        try:
            response = self.session.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {settings.BOT_WEBHOOK_SECRET}"},
                timeout=settings.NOTIFY_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            self.logger.error(f"Error sending payment notification to bot: {str(e)}")
            return False

        if response.status_code >= 400:
            self.logger.error(f"Bot rejected payment notification: status={response.status_code}, text={response.text}")
            return False
        self.logger.info(f"Payment notification sent to telegram user {payload.get('telegramId')}")
        return True
