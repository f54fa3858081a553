import io
from decimal import Decimal
from unittest import mock

from django.core import mail
from django.core.cache import cache
from django.core.exceptions import ValidationError as DjangoValidationError
from django.test import TestCase, SimpleTestCase

from academics.models import SchoolClass
from core.models import SchoolSettings
from gradebook.exceptions import ValidationError, DownstreamUnavailable
from gradebook.models import Bulletin
from students.models import Student
from .dispatch import NotificationDispatcher, bulletin_summary, pick_template, get_dispatcher
from .models import OutboundMessage
from .tasks import format_phone_international, resend_message_task
from .utils import normalize_phone_number, validate_phone_number, send_sms_sync, get_from_email


class PhoneNumberTests(SimpleTestCase):
    """Tests for phone number normalization."""

    def test_local_numbers_get_country_code(self):
        self.assertEqual(normalize_phone_number('677 12 34 56'), '+237677123456')
        self.assertEqual(normalize_phone_number('0677-123-456'), '+237677123456')

    def test_international_formats(self):
        self.assertEqual(normalize_phone_number('+233241234567'), '+233241234567')
        self.assertEqual(normalize_phone_number('00233241234567'), '+233241234567')
        self.assertEqual(normalize_phone_number('237677123456'), '+237677123456')

    def test_empty(self):
        self.assertIsNone(normalize_phone_number(''))
        self.assertIsNone(normalize_phone_number('  '))

    def test_validate(self):
        self.assertEqual(validate_phone_number('677123456'), '+237677123456')
        with self.assertRaises(DjangoValidationError):
            validate_phone_number('not a number')
        with self.assertRaises(DjangoValidationError):
            validate_phone_number('')

    def test_provider_format(self):
        self.assertEqual(format_phone_international('+237677123456'), '237677123456')


class SendSmsTests(TestCase):
    """Tests for the synchronous SMS sender."""

    def setUp(self):
        cache.clear()
        self.school = SchoolSettings.load()

    def test_disabled(self):
        result = send_sms_sync('677123456', 'Hello')
        self.assertFalse(result['success'])

    def test_console_backend(self):
        self.school.sms_enabled = True
        self.school.save()
        result = send_sms_sync('677123456', 'Hello')
        self.assertTrue(result['success'])
        self.assertEqual(result['provider'], 'console')

    def test_invalid_number(self):
        result = send_sms_sync('abc', 'Hello')
        self.assertFalse(result['success'])

    def test_provider_without_key(self):
        self.school.sms_enabled = True
        self.school.sms_backend = 'arkesel'
        self.school.save()
        result = send_sms_sync('677123456', 'Hello')
        self.assertFalse(result['success'])
        self.assertIn('API key', result['error'])

    @mock.patch('communications.tasks.requests.post')
    def test_arkesel(self, post):
        post.return_value.json.return_value = {'status': 'success', 'data': []}
        self.school.sms_enabled = True
        self.school.sms_backend = 'arkesel'
        self.school.sms_api_key = 'secret'
        self.school.sms_sender_id = 'LYCEE'
        self.school.save()

        result = send_sms_sync('677123456', 'Hello')
        self.assertTrue(result['success'])
        self.assertEqual(result['provider'], 'arkesel')
        payload = post.call_args.kwargs['json']
        self.assertEqual(payload['recipients'], ['237677123456'])
        self.assertEqual(payload['sender'], 'LYCEE')


class DispatcherTestCase(TestCase):

    def setUp(self):
        cache.clear()
        self.school = SchoolSettings.load()
        self.school.display_name = 'Lycee de Bonaberi'
        self.school.save()

        self.school_class = SchoolClass.objects.create(name='Terminale C')
        self.student = Student.objects.create(
            first_name='Marie',
            last_name='Ekane',
            admission_number='ADM001',
            guardian_name='Paul Ekane',
            guardian_email='paul.ekane@example.com',
            guardian_phone='677123456',
        )
        self.bulletin = Bulletin.objects.create(
            student=self.student,
            school_class=self.school_class,
            academic_year='2024-2025',
            term='T1',
            status=Bulletin.Status.APPROVED,
            term_average=Decimal('16.50'),
            class_rank=2,
            total_students_in_class=30,
            language='fr',
        )


class SummaryTests(DispatcherTestCase):
    """Tests for the short guardian summary."""

    def test_template_choice(self):
        self.assertEqual(pick_template(Decimal('16')), 'encouraging')
        self.assertEqual(pick_template(Decimal('12')), 'basic')
        self.assertEqual(pick_template(Decimal('9.99')), 'needs_improvement')
        self.assertEqual(pick_template(None), 'basic')

    def test_french_summary(self):
        message = bulletin_summary(self.bulletin, 'fr')
        self.assertIn('Marie', message)
        self.assertIn('16.50/20', message)
        self.assertIn('2/30', message)

    def test_english_summary_with_decision(self):
        self.bulletin.term = 'T3'
        self.bulletin.decision = Bulletin.Decision.PROMOTED
        message = bulletin_summary(self.bulletin, 'en')
        self.assertTrue(message.startswith('Great news!'))
        self.assertIn('Council decision', message)

    def test_truncation(self):
        message = bulletin_summary(self.bulletin, 'fr', max_length=40)
        self.assertEqual(len(message), 40)
        self.assertTrue(message.endswith('...'))


class NotificationDispatcherTests(DispatcherTestCase):
    """Tests for per-channel delivery."""

    def test_email(self):
        results = NotificationDispatcher().dispatch(self.bulletin, ['email'])

        self.assertEqual(results, {'email': {'delivered': 1, 'failed': 0}})
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['paul.ekane@example.com'])
        self.assertEqual(mail.outbox[0].subject, 'Bulletin - Marie Ekane - Premier trimestre')

        message = OutboundMessage.objects.get()
        self.assertEqual(message.status, OutboundMessage.Status.SENT)
        self.assertEqual(message.bulletin, self.bulletin)
        self.assertEqual(message.attempts, 1)

    def test_email_attaches_document(self):
        self.bulletin.document = 'bulletins/2024-2025/T1/ADM001_v1.pdf'
        with mock.patch('communications.dispatch.default_storage') as storage:
            storage.open.return_value = io.BytesIO(b'%PDF-1.7')
            NotificationDispatcher().dispatch(self.bulletin, ['email'])

        attachment = mail.outbox[0].attachments[0]
        self.assertEqual(attachment[0], 'bulletin_ADM001_T1.pdf')
        self.assertEqual(attachment[2], 'application/pdf')

    def test_channel_failure_is_isolated(self):
        # SMS is disabled for the school, email still goes out
        results = NotificationDispatcher().dispatch(self.bulletin, ['email', 'sms'])

        self.assertEqual(results['email'], {'delivered': 1, 'failed': 0})
        self.assertEqual(results['sms'], {'delivered': 0, 'failed': 1})
        failed = OutboundMessage.objects.get(channel='sms')
        self.assertEqual(failed.status, OutboundMessage.Status.FAILED)
        self.assertEqual(failed.recipient, '677123456')

    def test_default_channels_come_from_settings(self):
        self.school.sms_enabled = True
        self.school.save()
        results = NotificationDispatcher().dispatch(self.bulletin)
        self.assertEqual(set(results), {'email', 'sms'})
        self.assertEqual(results['sms']['delivered'], 1)

    def test_nothing_delivered(self):
        with self.assertRaises(DownstreamUnavailable) as ctx:
            NotificationDispatcher().dispatch(self.bulletin, ['sms'])
        self.assertEqual(ctx.exception.details['channels']['sms'], {'delivered': 0, 'failed': 1})

    def test_no_recipients(self):
        self.student.guardian_phone = ''
        self.student.save()
        with self.assertRaises(ValidationError) as ctx:
            NotificationDispatcher().dispatch(self.bulletin, ['chat', 'sms'])
        self.assertEqual(ctx.exception.code, 'no_recipients')
        self.assertFalse(OutboundMessage.objects.exists())

    def test_unknown_channel(self):
        with self.assertRaises(ValidationError) as ctx:
            NotificationDispatcher().dispatch(self.bulletin, ['pigeon'])
        self.assertEqual(ctx.exception.code, 'unknown_channel')

    def test_from_address(self):
        self.school.email_from_address = 'bulletins@lycee.cm'
        self.school.email_from_name = 'Lycee de Bonaberi'
        self.school.save()
        self.assertEqual(get_from_email(), '"Lycee de Bonaberi" <bulletins@lycee.cm>')

    def test_get_dispatcher(self):
        dispatcher = get_dispatcher(sent_by=None)
        self.assertIsInstance(dispatcher, NotificationDispatcher)


class ResendMessageTaskTests(DispatcherTestCase):

    def test_resend_after_enabling_sms(self):
        message = OutboundMessage.objects.create(
            channel='sms',
            recipient='677123456',
            body='Hello',
            status=OutboundMessage.Status.FAILED,
            attempts=1,
        )
        self.school.sms_enabled = True
        self.school.save()

        result = resend_message_task.apply(args=[str(message.pk)]).get()
        self.assertEqual(result, {'status': 'sent'})
        message.refresh_from_db()
        self.assertEqual(message.status, OutboundMessage.Status.SENT)
        self.assertEqual(message.attempts, 2)
