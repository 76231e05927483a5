# matching/notifications.py
"""
Notification channels.

The coordinator only knows the NotificationChannel contract. Concrete
channels decide how an alert reaches the donor: e-mail through Celery, a
log line for development, or a router that picks a channel per donor
contact preference.
"""
import abc
import asyncio
import logging
from dataclasses import dataclass

from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

from matching.conf import matching_settings
from matching.exceptions import NotificationDeliveryFailure
from matching.tasks import send_alert_email, send_requester_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    """
    Outcome of handing an alert to a channel. `delivered` means the channel
    accepted the alert; for queued channels that is "queued", and a later
    send failure surfaces to the actor as the attempt timing out.
    """
    donor_id: str
    request_id: str
    delivered: bool
    channel: str
    reference: str = ''
    error: str = ''


class NotificationChannel(abc.ABC):
    name = 'abstract'

    @abc.abstractmethod
    async def send_alert(self, donor_id, request_id, payload, deadline):
        """
        Deliver an alert to the donor.

        Returns:
            DeliveryReceipt; may raise NotificationDeliveryFailure instead
            of returning an undelivered receipt
        """

    async def notify_requester(self, blood_request, attempt):
        """Tell the requester a donor accepted; optional for a channel"""
        logger.info(f"Request {blood_request.request_id}: donor {attempt.donor_id} accepted")

    def receipt(self, donor_id, request_id, reference=''):
        return DeliveryReceipt(donor_id, request_id, True, self.name, reference=reference)


class LoggingChannel(NotificationChannel):
    """Development channel: logs alerts instead of sending them"""
    name = 'log'

    async def send_alert(self, donor_id, request_id, payload, deadline):
        logger.info(f"🔔 Alert -> donor {donor_id} for request {request_id} "
                    f"(priority #{payload.get('rank')}, respond by {deadline.isoformat()})")
        return self.receipt(donor_id, request_id)


class EmailChannel(NotificationChannel):
    """
    Queues alert e-mails as Celery tasks. Enqueueing talks to the broker,
    so it runs in a worker thread rather than on the event loop.

    The receipt only confirms the task was queued. If SMTP still fails
    after the task's retries, the task logs the lost alert with its
    attempt id and the attempt runs into its response deadline.
    """
    name = 'email'

    def __init__(self, alert_task=None, requester_task=None):
        self.alert_task = alert_task or send_alert_email
        self.requester_task = requester_task or send_requester_email

    async def send_alert(self, donor_id, request_id, payload, deadline):
        email = payload.get('email')
        if not email:
            raise NotificationDeliveryFailure(donor_id, request_id, 'donor has no e-mail address')

        try:
            result = await asyncio.to_thread(self.alert_task.delay, email, payload)
        except Exception as exc:
            # Broker errors come from kombu/amqp with no common base class
            raise NotificationDeliveryFailure(donor_id, request_id, str(exc)) from exc
        return self.receipt(donor_id, request_id, reference=result.id)

    async def notify_requester(self, blood_request, attempt):
        if not blood_request.contact_email:
            return await super().notify_requester(blood_request, attempt)
        await asyncio.to_thread(
            self.requester_task.delay,
            blood_request.contact_email,
            blood_request.request_id,
            str(blood_request.blood_type),
            attempt.donor_id,
        )


class ChannelRouter(NotificationChannel):
    """
    Picks a channel from the donor's contact preference, falling back to
    the default channel for unknown preferences.
    """
    name = 'router'

    def __init__(self, channels, default):
        self.channels = dict(channels)
        self.default = default

    @classmethod
    def from_settings(cls):
        """Build the routes from NOTIFICATION_ROUTES and NOTIFICATION_FALLBACK_CHANNEL"""
        def load(path):
            channel_class = import_string(path)
            if issubclass(channel_class, ChannelRouter):
                raise ImproperlyConfigured(f"Notification route '{path}' cannot be another router")
            return get_notification_channel(path)

        channels = {
            preference: load(path)
            for preference, path in matching_settings.NOTIFICATION_ROUTES.items()
        }
        return cls(channels, default=load(matching_settings.NOTIFICATION_FALLBACK_CHANNEL))

    def channel_for(self, payload):
        return self.channels.get(payload.get('contact_preference'), self.default)

    async def send_alert(self, donor_id, request_id, payload, deadline):
        return await self.channel_for(payload).send_alert(donor_id, request_id, payload, deadline)

    async def notify_requester(self, blood_request, attempt):
        return await self.default.notify_requester(blood_request, attempt)


def get_notification_channel(path=None):
    """
    Instantiate the channel named by the NOTIFICATION_CHANNEL setting.
    Channels that need configuration provide a `from_settings` classmethod.
    """
    channel_class = import_string(path or matching_settings.NOTIFICATION_CHANNEL)
    if hasattr(channel_class, 'from_settings'):
        return channel_class.from_settings()
    return channel_class()
