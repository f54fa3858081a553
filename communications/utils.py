import re
import logging

from django.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# E.164 phone number pattern (international format)
E164_PATTERN = re.compile(r'^\+[1-9]\d{1,14}$')

# Maximum SMS length (standard GSM-7 encoding)
MAX_SMS_LENGTH = 160

# Country code applied to local numbers (0XXXXXXXX)
DEFAULT_COUNTRY_CODE = '237'


def normalize_phone_number(phone, country_code=DEFAULT_COUNTRY_CODE):
    """
    Normalize phone number to E.164 format.

    Args:
        phone: Phone number string in various formats
        country_code: Country calling code for local numbers

    Returns:
        Normalized phone number in E.164 format, or None when empty
    """
    if not phone:
        return None

    # Strip whitespace and common separators
    phone = re.sub(r'[\s\-\.\(\)]', '', phone.strip())
    if not phone:
        return None

    # Already in E.164 format
    if phone.startswith('+'):
        return phone

    # International prefix written as 00
    if phone.startswith('00'):
        return '+' + phone[2:]

    # Local format with trunk prefix
    if phone.startswith('0'):
        return f'+{country_code}{phone[1:]}'

    # Country code without the plus
    if phone.startswith(country_code):
        return '+' + phone

    return f'+{country_code}{phone}'


def validate_phone_number(phone):
    """
    Validate phone number is in E.164 format.

    Raises:
        ValidationError: If phone number is invalid
    """
    if not phone:
        raise ValidationError("Phone number is required")

    phone = normalize_phone_number(phone)

    if not E164_PATTERN.match(phone):
        raise ValidationError(
            f"Invalid phone number format: {phone}. "
            "Must be in E.164 format (e.g., +237670000000)"
        )

    return phone


def send_sms_sync(to_phone, message, sender_id=None, api_key=None):
    """
    Send SMS synchronously (blocking). Use within Celery tasks.

    Returns:
        dict: Result with 'success', 'response', 'provider', 'error' keys
    """
    from .tasks import get_school_sms_settings, send_via_arkesel, send_via_hubtel, send_via_africastalking

    validated_phone = normalize_phone_number(to_phone)
    if not validated_phone or not E164_PATTERN.match(validated_phone):
        return {'success': False, 'error': f'Invalid phone number: {to_phone}'}

    if len(message) > MAX_SMS_LENGTH:
        logger.warning(
            f"SMS message exceeds {MAX_SMS_LENGTH} chars ({len(message)} chars). "
            "Message may be split into multiple parts."
        )

    sms_settings = get_school_sms_settings()
    if not sms_settings['enabled']:
        logger.info(f"[SMS DISABLED] Message to {validated_phone} not sent")
        return {'success': False, 'error': 'SMS not enabled for this school'}

    backend = sms_settings['backend']
    sender = sender_id or sms_settings['sender_id']
    key = api_key or sms_settings['api_key']
    senders = {
        'arkesel': send_via_arkesel,
        'hubtel': send_via_hubtel,
        'africastalking': send_via_africastalking,
    }

    if backend in senders:
        if not key:
            return {'success': False, 'error': f'{backend} API key not configured', 'provider': backend}
        response = senders[backend](validated_phone, message, sender_id=sender, api_key=key)
        return {'success': True, 'response': response, 'provider': backend}

    # Console backend
    logger.info(f"[CONSOLE SMS] To: {validated_phone}, From: {sender}, Message: {message}")
    return {'success': True, 'response': 'logged', 'provider': 'console'}


def send_chat_sync(to_phone, message):
    """
    Send a chat (WhatsApp) text message synchronously.

    Returns:
        dict: Result with 'success', 'response', 'provider', 'error' keys
    """
    from .tasks import get_school_chat_settings, send_via_whatsapp

    validated_phone = normalize_phone_number(to_phone)
    if not validated_phone or not E164_PATTERN.match(validated_phone):
        return {'success': False, 'error': f'Invalid phone number: {to_phone}'}

    chat_settings = get_school_chat_settings()
    if not chat_settings['enabled']:
        logger.info(f"[CHAT DISABLED] Message to {validated_phone} not sent")
        return {'success': False, 'error': 'Chat not enabled for this school'}

    if chat_settings['backend'] == 'whatsapp':
        response = send_via_whatsapp(validated_phone, message)
        return {'success': True, 'response': response, 'provider': 'whatsapp'}

    logger.info(f"[CONSOLE CHAT] To: {validated_phone}, Message: {message}")
    return {'success': True, 'response': 'logged', 'provider': 'console'}


def get_from_email():
    """
    The 'from' address for guardian mail.
    Returns the school's configured address if set, otherwise the global default.
    """
    from django.conf import settings
    from core.models import SchoolSettings

    school = SchoolSettings.load()
    if school.email_from_address:
        if school.email_from_name:
            return f'"{school.email_from_name}" <{school.email_from_address}>'
        return school.email_from_address
    return settings.DEFAULT_FROM_EMAIL
