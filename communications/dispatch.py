"""
Notification dispatcher: delivers a bulletin to the student's guardians.

Channels are independent: a failure on one never stops the others, and
each recipient gets an OutboundMessage row recording the outcome. Only
when nothing at all could be delivered is DownstreamUnavailable raised.
"""
import logging
from decimal import Decimal
from smtplib import SMTPException

import requests
from django.core.files.storage import default_storage
from django.core.mail import EmailMessage
from django.template.loader import render_to_string
from django.utils.module_loading import import_string

from core.choices import Channel, Language
from core.models import SchoolSettings
from gradebook import config
from gradebook.exceptions import ValidationError, DownstreamUnavailable
from .models import OutboundMessage
from .utils import send_sms_sync, send_chat_sync, get_from_email


logger = logging.getLogger(__name__)

SEND_ERRORS = (SMTPException, requests.RequestException, OSError, ValueError)

# Pre-defined summary templates, picked by term average
SUMMARY_TEMPLATES = {
    Language.ENGLISH: {
        'basic': "Dear Parent, {student_name}'s {term} results: average {average}/20, rank {rank}/{out_of}.",
        'encouraging': "Great news! {student_name} achieved {average}/20 (rank {rank}/{out_of}) in the {term}. Keep encouraging them!",
        'needs_improvement': "Dear Parent, {student_name} needs support: {average}/20 (rank {rank}/{out_of}) in the {term}. Please contact the school.",
        'decision': " Council decision: {decision}.",
        'subject': "Report card - {full_name} - {term}",
    },
    Language.FRENCH: {
        'basic': "Cher parent, résultats de {student_name} au {term} : moyenne {average}/20, rang {rank}/{out_of}.",
        'encouraging': "Félicitations ! {student_name} obtient {average}/20 (rang {rank}/{out_of}) au {term}. Continuez à l'encourager !",
        'needs_improvement': "Cher parent, {student_name} a besoin de soutien : {average}/20 (rang {rank}/{out_of}) au {term}. Merci de contacter l'établissement.",
        'decision': " Décision du conseil : {decision}.",
        'subject': "Bulletin - {full_name} - {term}",
    },
}


def pick_template(average):
    if average is None:
        return 'basic'
    average = Decimal(average)
    if average >= 16:
        return 'encouraging'
    if average < 10:
        return 'needs_improvement'
    return 'basic'


def build_summary_context(bulletin, language):
    from gradebook.rendering import LABELS

    labels = LABELS[language]
    student = bulletin.student
    return {
        'student_name': student.first_name,
        'full_name': student.full_name,
        'term': labels['terms'].get(bulletin.term, bulletin.term),
        'average': f"{bulletin.term_average:.2f}" if bulletin.term_average is not None else '-',
        'rank': bulletin.class_rank or '-',
        'out_of': bulletin.total_students_in_class or '-',
        'decision': labels['decisions'].get(bulletin.decision, ''),
    }


def bulletin_summary(bulletin, language, max_length=None):
    """Short plain-text summary for SMS and chat."""
    templates = SUMMARY_TEMPLATES[language]
    context = build_summary_context(bulletin, language)
    message = templates[pick_template(bulletin.term_average)].format(**context)
    if bulletin.is_final_term and bulletin.decision:
        message += templates['decision'].format(**context)

    if max_length and len(message) > max_length:
        message = message[:max_length - 3] + "..."
    return message


class NotificationDispatcher:
    """
    Sends a bulletin over email, SMS and chat.

    dispatch() returns {channel: {'delivered': n, 'failed': n}}.
    """

    def __init__(self, sent_by=None):
        self.sent_by = sent_by

    def recipients(self, bulletin, channel):
        student = bulletin.student
        address = {
            Channel.EMAIL: student.guardian_email,
            Channel.SMS: student.guardian_phone,
            Channel.CHAT: student.chat_number,
        }[channel]
        return [(address, student.guardian_name)] if address else []

    def dispatch(self, bulletin, channels=None):
        channels = list(dict.fromkeys(channels or SchoolSettings.load().channel_list))
        unknown = [c for c in channels if c not in Channel.values]
        if unknown:
            raise ValidationError(f"Unknown channel(s): {', '.join(unknown)}", code='unknown_channel')
        if not channels:
            raise ValidationError("No notification channel given", code='no_channels')

        recipients = {channel: self.recipients(bulletin, channel) for channel in channels}
        if not any(recipients.values()):
            raise ValidationError(
                f"{bulletin.student} has no guardian contact for {', '.join(channels)}",
                code='no_recipients',
            )

        language = bulletin.language or bulletin.student.preferred_language or SchoolSettings.load().bulletin_language
        if language not in SUMMARY_TEMPLATES:
            language = Language.FRENCH

        results = {}
        for channel in channels:
            delivered = failed = 0
            for address, name in recipients[channel]:
                if self._send_one(bulletin, channel, address, name, language):
                    delivered += 1
                else:
                    failed += 1
            results[channel] = {'delivered': delivered, 'failed': failed}

        if not any(r['delivered'] for r in results.values()):
            raise DownstreamUnavailable(
                f"Could not deliver bulletin {bulletin.pk} on any channel",
                channels=results,
            )
        logger.info(f"Bulletin {bulletin.pk} dispatched: {results}")
        return results

    def _send_one(self, bulletin, channel, address, name, language):
        if channel == Channel.EMAIL:
            subject = SUMMARY_TEMPLATES[language]['subject'].format(**build_summary_context(bulletin, language))
            body = render_to_string('communications/bulletin_email.html', {
                'bulletin': bulletin,
                'student': bulletin.student,
                'summary': bulletin_summary(bulletin, language),
                'school': SchoolSettings.load(),
            })
        else:
            subject = ''
            max_length = config.SMS_MAX_LENGTH if channel == Channel.SMS else None
            body = bulletin_summary(bulletin, language, max_length=max_length)

        message = OutboundMessage.objects.create(
            channel=channel,
            recipient=address,
            recipient_name=name,
            student=bulletin.student,
            bulletin=bulletin,
            subject=subject,
            body=body,
            created_by=self.sent_by,
        )

        try:
            if channel == Channel.EMAIL:
                result = self._send_email(bulletin, address, subject, body)
            elif channel == Channel.SMS:
                result = send_sms_sync(address, body)
            else:
                result = send_chat_sync(address, body)
        except SEND_ERRORS as e:
            logger.error(f"Failed to send {channel} for bulletin {bulletin.pk} to {address}: {e}")
            message.mark_failed(str(e)[:500])
            return False

        if result.get('success'):
            message.mark_sent(result.get('response', ''), provider=result.get('provider', ''))
            return True

        logger.warning(f"{channel} for bulletin {bulletin.pk} to {address} not sent: {result.get('error')}")
        message.mark_failed(result.get('error', ''))
        return False

    def _send_email(self, bulletin, address, subject, body):
        email = EmailMessage(
            subject=subject,
            body=body,
            from_email=get_from_email(),
            to=[address],
        )
        email.content_subtype = 'html'
        if bulletin.document:
            with default_storage.open(bulletin.document, 'rb') as f:
                email.attach(
                    f"bulletin_{bulletin.student.admission_number}_{bulletin.term}.pdf",
                    f.read(),
                    'application/pdf'
                )
        sent = email.send()
        return {'success': bool(sent), 'response': sent, 'provider': 'email', 'error': '' if sent else 'Not sent'}


def get_dispatcher(sent_by=None):
    return import_string(config.NOTIFICATION_DISPATCHER)(sent_by=sent_by)
