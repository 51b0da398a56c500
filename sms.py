"""
Notifications Module
====================
Best-effort customer texts for takeout orders over Twilio (SMS or WhatsApp).

Background sending, idempotency protection, failure logging.
Never blocks an order transition: every message gets exactly one attempt,
failures are logged and counted, never retried and never raised.
"""

import asyncio
import hashlib
import logging
from collections import deque
from datetime import datetime
from typing import Any, Dict, Optional, Set

from prometheus_client import Counter, Gauge
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from order import Order, notification_target


logger = logging.getLogger(__name__)


# Configuration
MAX_QUEUE_SIZE = 500
PROCESSING_INTERVAL = 1.0  # seconds
MAX_SENT_IDS = 1000

SMS_CHANNEL = "sms"
WHATSAPP_CHANNEL = "whatsapp"
CHANNELS = (SMS_CHANNEL, WHATSAPP_CHANNEL)

# Twilio error codes for unusable recipients
INVALID_NUMBER_CODES = {21211, 21614, 63003}


# ============================================================================
# METRICS
# ============================================================================

notifications_sent = Counter(
    'notifications_sent_total',
    'Customer notifications delivered to the provider',
    ['channel']
)
notifications_failed = Counter(
    'notifications_failed_total',
    'Customer notifications that failed their single attempt',
    ['channel']
)
notifications_dropped = Counter(
    'notifications_dropped_total',
    'Customer notifications not enqueued',
    ['reason']
)
notification_queue_size = Gauge(
    'notification_queue_size',
    'Messages waiting to be sent'
)


class NotificationMessage:
    """Outbound customer message with metadata."""

    def __init__(
        self,
        to_number: str,
        body: str,
        message_id: Optional[str] = None
    ):
        self.to_number = to_number
        self.body = body
        self.created_at = datetime.utcnow()
        self.message_id = message_id or self._generate_id()
        self.sent_at: Optional[datetime] = None
        self.provider_sid: Optional[str] = None
        self.error: Optional[str] = None

    def _generate_id(self) -> str:
        """Generate unique message ID for idempotency."""
        content = f"{self.to_number}:{self.body}:{self.created_at.isoformat()}"
        return hashlib.md5(content.encode()).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "message_id": self.message_id,
            "to_number": self.to_number,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "provider_sid": self.provider_sid,
            "error": self.error
        }


class NotificationQueue:
    """Bounded queue that refuses a message id already queued or sent."""

    def __init__(self, max_size: int = MAX_QUEUE_SIZE):
        self.queue: deque = deque()
        self.max_size = max_size
        self.queued_ids: Set[str] = set()
        self.sent_ids: deque = deque(maxlen=MAX_SENT_IDS)
        self.dropped_count = 0
        self.sent_count = 0
        self.failed_count = 0

    def enqueue(self, message: NotificationMessage) -> bool:
        """
        Enqueue message for sending.

        Returns:
            True if enqueued, False if duplicate or queue full
        """
        if message.message_id in self.queued_ids or message.message_id in self.sent_ids:
            logger.debug(f"Duplicate notification ignored: {message.message_id}")
            notifications_dropped.labels(reason='duplicate').inc()
            return False

        if len(self.queue) >= self.max_size:
            self.dropped_count += 1
            notifications_dropped.labels(reason='queue_full').inc()
            logger.warning(
                f"Notification queue full, dropping message "
                f"(dropped: {self.dropped_count})"
            )
            return False

        self.queue.append(message)
        self.queued_ids.add(message.message_id)
        notification_queue_size.set(len(self.queue))
        return True

    def dequeue(self) -> Optional[NotificationMessage]:
        if not self.queue:
            return None
        message = self.queue.popleft()
        notification_queue_size.set(len(self.queue))
        return message

    def mark_sent(self, message: NotificationMessage):
        """Mark message as sent (kept for deduplication)."""
        self.queued_ids.discard(message.message_id)
        self.sent_ids.append(message.message_id)
        self.sent_count += 1

    def mark_failed(self, message: NotificationMessage):
        """
        Mark message as failed.

        The id stays in sent_ids: a failed notification is not re-sent.
        """
        self.queued_ids.discard(message.message_id)
        self.sent_ids.append(message.message_id)
        self.failed_count += 1

    def size(self) -> int:
        return len(self.queue)

    def is_empty(self) -> bool:
        return len(self.queue) == 0


class NotificationClient:
    """
    Twilio sender with a background processor task.

    Args:
        account_sid: Twilio account SID
        auth_token: Twilio auth token
        from_number: Sender number (E.164)
        channel: "sms" or "whatsapp"
        twilio_client: Pre-built client (tests inject a mock)
        processing_interval: Seconds between queue polls
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        channel: str = SMS_CHANNEL,
        twilio_client: Optional[Client] = None,
        processing_interval: float = PROCESSING_INTERVAL
    ):
        if channel not in CHANNELS:
            raise ValueError(f"Unknown notification channel: {channel}")

        self.channel = channel
        self.from_number = from_number
        self.processing_interval = processing_interval
        self.queue = NotificationQueue()
        self.client = twilio_client

        # Background task
        self.processor_task: Optional[asyncio.Task] = None
        self.is_running = False

        if self.client is None and account_sid and auth_token:
            self.client = Client(account_sid, auth_token)
            logger.info(f"Twilio client initialized (from: {from_number}, channel: {channel})")

        if self.client is None or not self.from_number:
            logger.warning("Twilio credentials missing, notifications will fail")

    @classmethod
    def from_config(cls, notification_config) -> "NotificationClient":
        """Build a client from NotificationConfig."""
        return cls(
            account_sid=notification_config.account_sid,
            auth_token=notification_config.auth_token,
            from_number=notification_config.from_number,
            channel=notification_config.channel
        )

    async def start(self):
        """Start background processor."""
        if self.is_running:
            return

        self.is_running = True
        self.processor_task = asyncio.create_task(self._processor_loop())
        logger.info("Notification processor started")

    async def stop(self):
        """Stop background processor and flush what is left."""
        if not self.is_running:
            return

        self.is_running = False

        if self.processor_task and not self.processor_task.done():
            self.processor_task.cancel()
            try:
                await self.processor_task
            except asyncio.CancelledError:
                pass

        await self.flush()

        logger.info("Notification processor stopped")

    async def _processor_loop(self):
        """Background loop to process the queue."""
        try:
            while self.is_running:
                await asyncio.sleep(self.processing_interval)

                while not self.queue.is_empty():
                    await self._process_next_message()

        except asyncio.CancelledError:
            pass

    async def flush(self):
        """Send every pending message now."""
        if not self.queue.is_empty():
            logger.info(f"Flushing {self.queue.size()} pending notifications")

        while not self.queue.is_empty():
            await self._process_next_message()

    async def _process_next_message(self):
        message = self.queue.dequeue()
        if not message:
            return

        if await self._send_once(message):
            self.queue.mark_sent(message)
            notifications_sent.labels(channel=self.channel).inc()
        else:
            self.queue.mark_failed(message)
            notifications_failed.labels(channel=self.channel).inc()
            logger.error(
                f"Notification failed: {message.message_id}",
                extra={"notification": message.to_dict()}
            )

    def _address(self, number: str) -> str:
        if self.channel == WHATSAPP_CHANNEL:
            return f"whatsapp:{number}"
        return number

    async def _send_once(self, message: NotificationMessage) -> bool:
        """
        Single delivery attempt.

        Returns:
            True if the provider accepted the message
        """
        if not self.client or not self.from_number:
            message.error = "client not configured"
            return False

        loop = asyncio.get_running_loop()

        try:
            provider_message = await loop.run_in_executor(
                None,
                lambda: self.client.messages.create(
                    body=message.body,
                    from_=self._address(self.from_number),
                    to=self._address(message.to_number)
                )
            )

        except TwilioRestException as e:
            message.error = f"{e.code}: {e.msg}"
            if e.code in INVALID_NUMBER_CODES:
                logger.warning(f"Invalid recipient {message.to_number}: {e.msg}")
            else:
                logger.error(f"Twilio error: {e.code} - {e.msg}")
            return False

        except Exception as e:
            message.error = str(e)
            logger.error(f"Notification send error: {str(e)}")
            return False

        message.sent_at = datetime.utcnow()
        message.provider_sid = getattr(provider_message, "sid", None)

        logger.info(
            f"Notification sent: {message.message_id} (SID: {message.provider_sid})"
        )
        return True

    # ========================================================================
    # PUBLIC API (Non-blocking)
    # ========================================================================

    def send_message(
        self,
        to_number: str,
        body: str,
        message_id: Optional[str] = None
    ) -> bool:
        """
        Enqueue a message (non-blocking).

        Args:
            to_number: Recipient phone number (E.164 format)
            body: Message text
            message_id: Idempotency key

        Returns:
            True if enqueued
        """
        if not to_number or not body:
            logger.warning("Phone number and message body required")
            notifications_dropped.labels(reason='invalid').inc()
            return False

        return self.queue.enqueue(NotificationMessage(to_number, body, message_id))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "queue_size": self.queue.size(),
            "sent_count": self.queue.sent_count,
            "failed_count": self.queue.failed_count,
            "dropped_count": self.queue.dropped_count,
            "is_running": self.is_running
        }

    def is_healthy(self) -> bool:
        return self.client is not None and self.is_running


# ============================================================================
# ORDER NOTIFIER
# ============================================================================

RECEIVED_TEMPLATE = "Tu orden #{order_id} ha sido recibida y está en preparación."
READY_TEMPLATE = "Tu orden #{order_id} ya está terminada. Disponible en mostrador."


class OrderNotifier:
    """Builds the takeout customer texts and hands them to the client."""

    def __init__(self, client: Optional[NotificationClient], enabled: bool = True):
        self.client = client
        self.enabled = enabled and client is not None

    def order_received(self, order: Order) -> bool:
        """Notify that a takeout order entered the kitchen."""
        return self._notify(
            order,
            RECEIVED_TEMPLATE.format(order_id=order.order_id),
            f"order_{order.order_id}_received"
        )

    def order_ready(self, order: Order) -> bool:
        """Notify that a takeout order can be picked up."""
        return self._notify(
            order,
            READY_TEMPLATE.format(order_id=order.order_id),
            f"order_{order.order_id}_ready"
        )

    def _notify(self, order: Order, body: str, message_id: str) -> bool:
        if not order.is_takeout() or not order.customer_phone:
            return False

        if not self.enabled:
            logger.info(
                f"Notifications disabled, dropping {message_id}",
                extra={"order_id": order.order_id}
            )
            notifications_dropped.labels(reason='disabled').inc()
            return False

        enqueued = self.client.send_message(
            notification_target(order.customer_phone),
            body,
            message_id
        )

        if enqueued:
            logger.info(f"Notification queued: {message_id}", extra={"order_id": order.order_id})

        return enqueued

    async def start(self):
        if self.client is not None:
            await self.client.start()

    async def stop(self):
        if self.client is not None:
            await self.client.stop()
