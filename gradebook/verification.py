"""
Public verification of sent bulletins.

A bulletin receives two codes when it is sent: a long one carried by the
QR code printed on the document, and an 8-character short code printed
under it for manual entry. Anyone holding the paper can look either one
up. Every lookup is logged, and lookups are rate limited per client
address.
"""
import base64
import logging
import secrets
from io import BytesIO

import qrcode
from django.core.cache import cache
from django.db import transaction, IntegrityError
from django.db.models import F, Q
from django.urls import reverse
from django.utils import timezone

from core.models import SchoolSettings
from . import config
from .exceptions import ValidationError, InvalidVerificationCode, VerificationDisabled, TooManyAttempts
from .models import Bulletin, BulletinVerificationLog


logger = logging.getLogger(__name__)

# No 0/O or 1/I, which are misread on paper
SHORT_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
SHORT_CODE_LENGTH = 8
CODE_ATTEMPTS = 5


def _new_codes():
    short_code = ''.join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))
    return secrets.token_hex(16), short_code


def issue_verification_code(bulletin):
    """
    Give ``bulletin`` its verification codes unless it already has them.

    Returns True when this call issued them. Codes never change once issued.
    """
    if bulletin.verification_code:
        return False

    for attempt in range(CODE_ATTEMPTS):
        verification_code, short_code = _new_codes()
        try:
            with transaction.atomic():
                updated = Bulletin.objects.filter(pk=bulletin.pk, verification_code__isnull=True).update(
                    verification_code=verification_code,
                    short_code=short_code,
                )
        except IntegrityError:
            # Collision with another bulletin's code
            if attempt == CODE_ATTEMPTS - 1:
                raise
            continue

        if not updated:
            bulletin.refresh_from_db(fields=['verification_code', 'short_code'])
            return False

        bulletin.verification_code = verification_code
        bulletin.short_code = short_code
        logger.info(f"Verification code issued for bulletin {bulletin.pk}: {short_code}")
        return True


def verification_url(code):
    """URL a phone camera opens when scanning the printed QR code."""
    path = f"{reverse('gradebook:bulletin_verify')}?code={code}"
    base_url = config.VERIFICATION_BASE_URL
    if base_url:
        return f"{base_url.rstrip('/')}{path}"
    # A relative URL is still printed but phones will not open it as a link
    return path


def generate_qr_code_base64(data, box_size=6, border=1):
    """
    Generate a QR code and return it as a base64 data URI.

    Returns:
        str: data URI for embedding in HTML/PDF, or None if generation failed
    """
    try:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=box_size,
            border=border,
        )
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = BytesIO()
        img.save(buffer, format='PNG')
        img_base64 = base64.b64encode(buffer.getvalue()).decode()
        return f"data:image/png;base64,{img_base64}"
    except Exception as e:
        logger.error(f"Failed to generate QR code: {e}")
        return None


def verification_qr(bulletin):
    """QR data URI for a bulletin that has a verification code, else None."""
    if not bulletin.verification_code:
        return None
    return generate_qr_code_base64(verification_url(bulletin.verification_code))


def _count_attempt(ip_address):
    key = f'bulletin_verify:{ip_address or "unknown"}'
    if cache.add(key, 1, config.VERIFY_WINDOW):
        return
    try:
        attempts = cache.incr(key)
    except ValueError:
        # Expired between add() and incr()
        cache.set(key, 1, config.VERIFY_WINDOW)
        return
    if attempts > config.VERIFY_MAX_ATTEMPTS:
        logger.warning(f"Verification rate limit hit by {ip_address}")
        raise TooManyAttempts('Too many verification attempts. Please try again later.')


def public_summary(bulletin):
    """The figures a verifier may see: identity, results and issue dates."""
    school = SchoolSettings.load()
    return {
        'student': {
            'name': bulletin.student.full_name,
            'admission_number': bulletin.student.admission_number,
            'class': bulletin.school_class.name,
        },
        'school': {
            'name': school.display_name,
        },
        'academic': {
            'academic_year': bulletin.academic_year,
            'term': bulletin.term,
            'term_average': bulletin.term_average,
            'class_rank': bulletin.class_rank,
            'total_students_in_class': bulletin.total_students_in_class,
            'annual_average': bulletin.annual_average,
            'decision': bulletin.decision,
        },
        'verification': {
            'short_code': bulletin.short_code,
            'version': bulletin.version,
            'superseded': bulletin.is_superseded,
            'approved_at': bulletin.approved_at,
            'sent_at': bulletin.sent_at,
            'verification_count': bulletin.verification_count,
        },
    }


def verify_bulletin(code, ip_address=None, user_agent=''):
    """
    Look a bulletin up by its verification code or its short code.

    Raises:
        ValidationError: no code given
        TooManyAttempts: the client address used up its attempts (429)
        InvalidVerificationCode: no sent bulletin carries the code (404)
        VerificationDisabled: the school turned public verification off (403)
    """
    code = (code or '').strip()
    if not code:
        raise ValidationError("A verification code is required", code='missing_code')

    _count_attempt(ip_address)

    bulletin = Bulletin.objects.select_related('student', 'school_class').filter(
        Q(verification_code=code.lower()) | Q(short_code=code.upper()),
        status=Bulletin.Status.SENT,
    ).first()

    # Scanned codes are long; typed ones are the short code
    method = (
        BulletinVerificationLog.Method.QR_CODE
        if len(code) > SHORT_CODE_LENGTH + 2
        else BulletinVerificationLog.Method.MANUAL_ENTRY
    )

    def log(result):
        BulletinVerificationLog.objects.create(
            bulletin=bulletin,
            code_prefix=code[:8],
            method=method,
            result=result,
            ip_address=ip_address or None,
            user_agent=(user_agent or '')[:255],
        )

    if bulletin is None:
        log(BulletinVerificationLog.Result.INVALID_CODE)
        logger.info(f"Verification failed for code {code[:8]}... from {ip_address}")
        raise InvalidVerificationCode('Invalid verification code. Please check the code and try again.')

    if not SchoolSettings.load().public_verification_enabled:
        log(BulletinVerificationLog.Result.ACCESS_DENIED)
        raise VerificationDisabled('Public verification is not enabled for this institution.')

    Bulletin.objects.filter(pk=bulletin.pk).update(
        verification_count=F('verification_count') + 1,
        last_verified_at=timezone.now(),
    )
    log(BulletinVerificationLog.Result.SUCCESS)
    bulletin.refresh_from_db(fields=['verification_count', 'last_verified_at'])
    logger.info(f"Bulletin {bulletin.pk} verified ({method}) from {ip_address}")
    return public_summary(bulletin)
