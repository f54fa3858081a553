import logging

import africastalking
import requests
from celery import shared_task
from django.conf import settings

logger = logging.getLogger(__name__)

ARKESEL_API_URL = "https://sms.arkesel.com/api/v2/sms/send"
HUBTEL_API_URL = "https://smsc.hubtel.com/v1/messages/send"
PROVIDER_TIMEOUT = 30

# Transient errors that should trigger retry
RETRYABLE_EXCEPTIONS = (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)


def format_phone_international(phone):
    """Drop the leading + of an E.164 number (most providers want 237XXXXXXXXX)."""
    return phone.strip().lstrip('+')


def _sender(sender_id):
    # Alphanumeric sender ids are capped at 11 characters by every provider
    return (sender_id or 'SchoolSMS')[:11]


def _split_key(api_key, provider, key_format):
    """Credentials stored as one 'a:b' string in SchoolSettings.sms_api_key."""
    if not api_key:
        raise ValueError(f"{provider} API key is required")
    if ':' not in api_key:
        raise ValueError(f"{provider} API key must be in format '{key_format}'")
    return api_key.split(':', 1)


def _checked_json(response, provider, ok):
    response.raise_for_status()
    result = response.json()
    if not ok(result):
        raise ValueError(f"{provider} API error: {result.get('message') or result.get('error') or 'Unknown error'}")
    return result


def send_via_arkesel(recipient, message, sender_id=None, api_key=None):
    """Arkesel SMS API v2 (https://developers.arkesel.com/)."""
    if not api_key:
        raise ValueError("Arkesel API key is required")

    response = requests.post(
        ARKESEL_API_URL,
        json={
            'sender': _sender(sender_id),
            'message': message,
            'recipients': [format_phone_international(recipient)],
        },
        headers={'api-key': api_key, 'Content-Type': 'application/json'},
        timeout=PROVIDER_TIMEOUT,
    )
    return _checked_json(response, 'Arkesel', lambda r: r.get('status') == 'success')


def send_via_hubtel(recipient, message, sender_id=None, api_key=None):
    """Hubtel SMS (https://developers.hubtel.com/), key is 'client_id:client_secret'."""
    client_id, client_secret = _split_key(api_key, 'Hubtel', 'client_id:client_secret')
    response = requests.get(
        HUBTEL_API_URL,
        params={
            'From': _sender(sender_id),
            'To': format_phone_international(recipient),
            'Content': message,
        },
        auth=(client_id, client_secret),
        timeout=PROVIDER_TIMEOUT,
    )
    return _checked_json(response, 'Hubtel', lambda r: r.get('status') == 0)


def send_via_africastalking(recipient, message, sender_id=None, api_key=None):
    """Africa's Talking SMS through their SDK, key is 'username:api_key'."""
    username, at_api_key = _split_key(api_key, "Africa's Talking", 'username:api_key')
    africastalking.initialize(username, at_api_key)
    response = africastalking.SMS.send(
        message,
        ['+' + format_phone_international(recipient)],
        sender_id=sender_id[:11] if sender_id else None,
    )

    recipients = response.get('SMSMessageData', {}).get('Recipients')
    if not recipients:
        raise ValueError("Africa's Talking: No recipients in response")
    if recipients[0].get('status') != 'Success':
        raise ValueError(f"Africa's Talking error: {recipients[0].get('status')}")
    return response


def send_via_whatsapp(recipient, message):
    """Plain text message through the WhatsApp Cloud API."""
    phone_number_id = settings.WHATSAPP_PHONE_NUMBER_ID
    token = settings.WHATSAPP_ACCESS_TOKEN
    if not phone_number_id or not token:
        raise ValueError("WhatsApp phone number id and access token are required")

    response = requests.post(
        f"{settings.WHATSAPP_API_URL.rstrip('/')}/{phone_number_id}/messages",
        json={
            'messaging_product': 'whatsapp',
            'to': format_phone_international(recipient),
            'type': 'text',
            'text': {'body': message},
        },
        headers={'Authorization': f'Bearer {token}'},
        timeout=PROVIDER_TIMEOUT,
    )
    return _checked_json(response, 'WhatsApp', lambda r: bool(r.get('messages')))


def get_school_sms_settings():
    """SMS configuration from SchoolSettings: backend, api_key, sender_id, enabled."""
    from core.models import SchoolSettings

    school = SchoolSettings.load()
    sender_id = school.sms_sender_id
    if not sender_id and school.display_name:
        sender_id = ''.join(c for c in school.display_name if c.isalnum())[:11]

    return {
        'backend': school.sms_backend or settings.SMS_BACKEND,
        'api_key': school.sms_api_key or '',
        'sender_id': sender_id or 'SchoolSMS',
        'enabled': school.sms_enabled,
    }


def get_school_chat_settings():
    from core.models import SchoolSettings

    school = SchoolSettings.load()
    return {
        'backend': school.chat_backend or 'console',
        'enabled': school.chat_enabled,
    }


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def resend_message_task(self, message_id):
    """
    Retry delivery of a failed outbound SMS or chat message.

    Transient network errors are retried with exponential backoff; the
    message row records each attempt.
    """
    from .models import OutboundMessage
    from .utils import send_sms_sync, send_chat_sync

    try:
        message = OutboundMessage.objects.get(pk=message_id)
    except OutboundMessage.DoesNotExist:
        logger.error(f"OutboundMessage {message_id} not found")
        return {'status': 'missing'}

    if message.status == OutboundMessage.Status.SENT:
        return {'status': 'sent'}

    senders = {'sms': send_sms_sync, 'chat': send_chat_sync}
    if message.channel not in senders:
        logger.warning(f"Cannot resend {message.channel} message {message_id}")
        return {'status': 'unsupported'}

    try:
        result = senders[message.channel](message.recipient, message.body)
    except RETRYABLE_EXCEPTIONS as e:
        logger.warning(f"Retryable error resending message {message_id}: {e}")
        message.mark_failed(f"Retry {self.request.retries + 1}: {str(e)[:450]}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Resending message {message_id} failed: {e}")
        message.mark_failed(str(e)[:500])
        return {'status': 'failed', 'error': str(e)}

    if result.get('success'):
        message.mark_sent(result.get('response', ''), provider=result.get('provider', ''))
        return {'status': 'sent'}

    message.mark_failed(result.get('error', ''))
    return {'status': 'failed', 'error': result.get('error')}
