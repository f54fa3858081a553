from decimal import Decimal

from django.core.cache import cache
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models

from .choices import Language


class SchoolSettings(models.Model):
    """
    Stores configuration specific to this institution.

    Grading policy fields left empty fall back to the gradebook defaults
    (see gradebook/config.py).
    """
    SMS_BACKEND_CHOICES = [
        ('console', 'Console (log only)'),
        ('arkesel', 'Arkesel'),
        ('hubtel', 'Hubtel'),
        ('africastalking', "Africa's Talking"),
    ]
    CHAT_BACKEND_CHOICES = [
        ('console', 'Console (log only)'),
        ('whatsapp', 'WhatsApp Cloud API'),
    ]

    # Branding
    display_name = models.CharField(max_length=100, blank=True)
    motto = models.CharField(max_length=200, blank=True)
    address = models.TextField(blank=True)

    # Grading policy
    promotion_threshold = models.DecimalField(
        max_digits=4,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('20'))],
        help_text='Minimum annual average (out of 20) for promotion. Empty = default (10).'
    )
    cc_weight = models.DecimalField(
        max_digits=3,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('1'))],
        help_text='Weight of the continuous-assessment score. Exam weight = 1 - this. Empty = default (0.40).'
    )
    bulletin_language = models.CharField(
        max_length=2,
        choices=Language.choices,
        default=Language.FRENCH
    )

    # Distribution
    email_from_address = models.EmailField(blank=True)
    email_from_name = models.CharField(max_length=100, blank=True)
    default_channels = models.CharField(
        max_length=50,
        default='email,sms',
        help_text='Comma-separated channels used when a send does not name any (email, sms, chat)'
    )
    sms_enabled = models.BooleanField(default=False)
    sms_backend = models.CharField(max_length=20, choices=SMS_BACKEND_CHOICES, default='console')
    sms_api_key = models.CharField(max_length=255, blank=True)
    sms_sender_id = models.CharField(max_length=11, blank=True)
    chat_enabled = models.BooleanField(default=False)
    chat_backend = models.CharField(max_length=20, choices=CHAT_BACKEND_CHOICES, default='console')

    # Verification
    public_verification_enabled = models.BooleanField(
        default=True,
        help_text='Let anyone holding a sent bulletin check it with its verification code'
    )

    updated_at = models.DateTimeField(auto_now=True)

    def save(self, *args, **kwargs):
        self.pk = 1
        super().save(*args, **kwargs)
        cache.delete('school_profile')

    @classmethod
    def load(cls):
        profile = cache.get('school_profile')
        if profile is None:
            profile, created = cls.objects.get_or_create(pk=1)
            cache.set('school_profile', profile, 60*60*24)
        return profile

    @property
    def channel_list(self):
        return [c.strip() for c in self.default_channels.split(',') if c.strip()]

    class Meta:
        verbose_name = "School Settings"
        verbose_name_plural = "School Settings"

    def __str__(self):
        return "School Profile & Settings"
