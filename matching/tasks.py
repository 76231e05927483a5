# matching/tasks.py
"""
Celery tasks that carry alert e-mails off the matching event loop
"""
import logging

from celery import Task, shared_task
from django.core.mail import send_mail

from matching.conf import matching_settings

logger = logging.getLogger(__name__)


def _from_email():
    from django.conf import settings
    return matching_settings.ALERT_FROM_EMAIL or settings.DEFAULT_FROM_EMAIL


def format_alert_message(payload):
    """Body of the donor alert e-mail"""
    return f"""
🔴 URGENT BLOOD NEEDED - IMMEDIATE RESPONSE REQUIRED

Request ID: {payload['request_id']}
Blood Type: {payload['blood_type']}
Units: {payload['required_units']}
Urgency: {str(payload['urgency']).upper()}
Distance: {payload['distance_km']:.2f}km from you

⏰ IMPORTANT: Please respond before {payload['deadline']}
If you don't respond, the request will automatically go to the next donor.

Login to respond: {matching_settings.SITE_URL}/donors/dashboard/

Match Score: {int(payload['score'] * 100)}%
You are Priority #{payload['rank']}

Thank you for being a lifesaver!
LifeLink Nepal
    """.strip()


class AlertTask(Task):
    """Logs alerts that could not be sent once retries are used up"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        payload = args[1] if len(args) > 1 else kwargs.get('payload', {})
        logger.error(
            f"❌ Alert {payload.get('attempt_id')} for request {payload.get('request_id')} "
            f"to donor {payload.get('donor_id')} was not delivered after {self.max_retries} retries "
            f"(task {task_id}): {exc}"
        )


@shared_task(bind=True, base=AlertTask, max_retries=3, default_retry_delay=10)
def send_alert_email(self, donor_email, payload):
    """Send the alert e-mail for one match attempt"""
    try:
        send_mail(
            subject=f"🔴 URGENT: {payload['blood_type']} Blood Request #{payload['request_id']}",
            message=format_alert_message(payload),
            from_email=_from_email(),
            recipient_list=[donor_email],
            fail_silently=False,
        )
    except OSError as exc:
        # smtplib errors are OSErrors
        raise self.retry(exc=exc)
    logger.info(f"📧 Alert for request {payload['request_id']} sent to donor {payload['donor_id']}")
    return payload['attempt_id']


@shared_task
def send_requester_email(requester_email, request_id, blood_type, donor_id):
    """Tell the requester a donor accepted"""
    message = f"""
GOOD NEWS! A donor has accepted your blood request.

Request ID: {request_id}
Blood Type Needed: {blood_type}
Donor: {donor_id}

The donor will coordinate with you through the platform.
    """.strip()

    send_mail(
        subject=f"Donor Accepted: Blood Request {request_id}",
        message=message,
        from_email=_from_email(),
        recipient_list=[requester_email],
        fail_silently=True,
    )
    logger.info(f"Requester notified: donor {donor_id} accepted request {request_id}")
