"""
Deposit Reconciliation Core - Notifier

Delivers {user_id, message} to submitters and to the operator channel.

- LoggingNotifier: default, writes the message to the log
- WebhookNotifier: POSTs to the bot layer, HMAC-SHA256 signed when a
  secret is configured

Notifications are sent after the atomic unit has committed. A failed
delivery is logged and reported; it never undoes a ledger change.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0


class Notifier:
    """Interface; subclasses implement send()"""

    def __init__(self, operator_channel_id: str = "operators"):
        self.operator_channel_id = operator_channel_id

    async def send(self, user_id: str, message: str, context: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        raise NotImplementedError

    async def notify(self, user_id: str, message: str, **context) -> DeliveryResult:
        return await self.send(user_id, message, context or None)

    async def notify_operators(self, message: str, **context) -> DeliveryResult:
        return await self.send(self.operator_channel_id, message, context or None)


class LoggingNotifier(Notifier):
    """Writes notifications to the log"""

    async def send(self, user_id: str, message: str, context: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        logger.info(
            f"Notification to {user_id}: {message}",
            extra={"recipient": user_id, "notification_context": context or {}}
        )
        return DeliveryResult(success=True)


class WebhookNotifier(Notifier):
    """Forwards notifications to the bot layer over HTTP"""

    def __init__(
        self,
        url: str,
        secret: str = "",
        timeout: float = 10,
        operator_channel_id: str = "operators"
    ):
        super().__init__(operator_channel_id)
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def _headers(self, payload: Dict[str, Any]) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'X-Notification-Timestamp': payload['timestamp'],
        }
        if self.secret:
            payload_bytes = json.dumps(payload, sort_keys=True).encode('utf-8')
            signature = hmac.new(
                self.secret.encode('utf-8'),
                payload_bytes,
                hashlib.sha256
            ).hexdigest()
            headers['X-Notification-Signature'] = f'sha256={signature}'
        return headers

    async def send(self, user_id: str, message: str, context: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        start_time = datetime.now(timezone.utc)
        payload = {
            "user_id": user_id,
            "message": message,
            "context": context or {},
            "timestamp": start_time.isoformat(),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=self._headers(payload))

            duration = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

            if 200 <= response.status_code < 300:
                return DeliveryResult(success=True, status_code=response.status_code, duration_ms=duration)

            logger.warning(f"Notification to {user_id} rejected: HTTP {response.status_code}")
            return DeliveryResult(
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
                duration_ms=duration
            )

        except httpx.TimeoutException:
            logger.warning(f"Notification to {user_id} timed out")
            return DeliveryResult(success=False, error="Connection timeout")
        except httpx.HTTPError as e:
            logger.warning(f"Notification to {user_id} failed: {e}")
            return DeliveryResult(success=False, error=f"Delivery error: {str(e)[:100]}")


def build_notifier(settings=None) -> Notifier:
    """Webhook notifier when NOTIFIER_WEBHOOK_URL is set, else log only"""
    if settings is None:
        from config import get_settings
        settings = get_settings()

    if settings.NOTIFIER_WEBHOOK_URL:
        return WebhookNotifier(
            settings.NOTIFIER_WEBHOOK_URL,
            secret=settings.NOTIFIER_WEBHOOK_SECRET,
            timeout=settings.NOTIFIER_TIMEOUT,
            operator_channel_id=settings.OPERATOR_CHANNEL_ID,
        )
    return LoggingNotifier(settings.OPERATOR_CHANNEL_ID)
