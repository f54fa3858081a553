import uuid

from django.db import models
from django.utils import timezone

from core.choices import Channel


class OutboundMessage(models.Model):
    """Log of every message sent to a guardian, one row per recipient and channel."""

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    channel = models.CharField(max_length=10, choices=Channel.choices)
    recipient = models.CharField(max_length=254, help_text="Email address or E.164 phone number")
    recipient_name = models.CharField(max_length=200, blank=True)
    student = models.ForeignKey(
        'students.Student',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='outbound_messages'
    )
    bulletin = models.ForeignKey(
        'gradebook.Bulletin',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='messages'
    )
    subject = models.CharField(max_length=200, blank=True)
    body = models.TextField()
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING
    )
    provider = models.CharField(max_length=30, blank=True)
    provider_response = models.TextField(blank=True)
    error_message = models.TextField(blank=True)
    attempts = models.PositiveSmallIntegerField(default=0)
    sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    created_by = models.ForeignKey(
        'accounts.User',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='sent_messages'
    )

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'Outbound Message'
        verbose_name_plural = 'Outbound Messages'
        indexes = [
            models.Index(fields=['status'], name='outbound_status_idx'),
            models.Index(fields=['channel', 'status'], name='outbound_channel_status_idx'),
            # Lookup by recipient
            models.Index(fields=['recipient'], name='outbound_recipient_idx'),
        ]

    def __str__(self):
        return f"{self.get_channel_display()} to {self.recipient} - {self.get_status_display()}"

    def mark_sent(self, response='', provider=''):
        self.status = self.Status.SENT
        self.sent_at = timezone.now()
        self.provider = provider or self.provider
        self.provider_response = str(response)
        self.error_message = ''
        self.attempts += 1
        self.save()

    def mark_failed(self, error=''):
        self.status = self.Status.FAILED
        self.error_message = str(error)
        self.attempts += 1
        self.save()
