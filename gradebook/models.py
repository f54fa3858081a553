import uuid
from decimal import Decimal

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from academics.models import Subject, SchoolClass
from core.choices import Term, FINAL_TERM, Language
from students.models import Student
from .exceptions import InvalidTransition


SCORE_VALIDATORS = [MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('20'))]


class GradeComponent(models.Model):
    """
    Raw score components of one student in one subject for one term.

    One row per (student, subject, class, year, term); a later write
    overwrites the earlier values. ``coefficient`` is the subject
    coefficient at the time of the write.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='grade_components'
    )
    subject = models.ForeignKey(
        Subject,
        on_delete=models.PROTECT,
        related_name='grade_components'
    )
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.PROTECT,
        related_name='grade_components'
    )
    academic_year = models.CharField(max_length=9)
    term = models.CharField(max_length=2, choices=Term.choices)

    continuous_score = models.DecimalField(
        max_digits=4,
        decimal_places=2,
        null=True,
        blank=True,
        validators=SCORE_VALIDATORS,
        help_text='Continuous assessment score out of 20'
    )
    exam_score = models.DecimalField(
        max_digits=4,
        decimal_places=2,
        null=True,
        blank=True,
        validators=SCORE_VALIDATORS,
        help_text='Examination score out of 20'
    )
    coefficient = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    comment = models.TextField(blank=True)

    entered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='grade_components'
    )
    revision = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'grade_component'
        ordering = ['student', 'subject']
        verbose_name = 'Grade Component'
        verbose_name_plural = 'Grade Components'
        unique_together = ['student', 'subject', 'school_class', 'academic_year', 'term']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(continuous_score__isnull=True) | models.Q(
                    continuous_score__gte=0, continuous_score__lte=20
                ),
                name='grade_component_cc_range',
            ),
            models.CheckConstraint(
                condition=models.Q(exam_score__isnull=True) | models.Q(
                    exam_score__gte=0, exam_score__lte=20
                ),
                name='grade_component_exam_range',
            ),
            models.CheckConstraint(
                condition=models.Q(coefficient__gt=0),
                name='grade_component_coefficient_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['school_class', 'academic_year', 'term'], name='grade_comp_class_term_idx'),
        ]

    def __str__(self):
        return f"{self.student} - {self.subject.name} ({self.academic_year} {self.term})"

    @property
    def has_score(self):
        return self.continuous_score is not None or self.exam_score is not None


class Bulletin(models.Model):
    """
    The frozen report of one student for one term.

    The snapshot fields are filled from the grade ledger while the bulletin
    is a draft and recomputed once more on submission; after that only the
    lifecycle fields (approval, signature, sending) and, for the final term,
    the council metadata change. Corrections create a new version.
    """
    class Status(models.TextChoices):
        DRAFT = 'draft', _('Draft')
        SUBMITTED = 'submitted', _('Submitted')
        APPROVED = 'approved', _('Approved')
        SENT = 'sent', _('Sent')

    class Decision(models.TextChoices):
        PROMOTED = 'promoted', _('Promoted')
        REPEAT = 'repeat', _('Repeat')
        PROMOTED_WITH_RESERVATIONS = 'promoted-with-reservations', _('Promoted with reservations')

    # The only forward moves; anything else is rejected
    TRANSITIONS = {
        Status.DRAFT: Status.SUBMITTED,
        Status.SUBMITTED: Status.APPROVED,
        Status.APPROVED: Status.SENT,
    }

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        related_name='bulletins'
    )
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.PROTECT,
        related_name='bulletins'
    )
    academic_year = models.CharField(max_length=9)
    term = models.CharField(max_length=2, choices=Term.choices)
    version = models.PositiveSmallIntegerField(default=1)
    supersedes = models.OneToOneField(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='superseded_by'
    )
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.DRAFT
    )
    language = models.CharField(max_length=2, choices=Language.choices, blank=True)

    # Snapshot
    subjects = models.JSONField(default=list, blank=True, encoder=DjangoJSONEncoder)
    term_average = models.DecimalField(max_digits=4, decimal_places=2, null=True, blank=True)
    class_rank = models.PositiveSmallIntegerField(null=True, blank=True)
    total_students_in_class = models.PositiveSmallIntegerField(null=True, blank=True)
    class_min_average = models.DecimalField(max_digits=4, decimal_places=2, null=True, blank=True)
    class_max_average = models.DecimalField(max_digits=4, decimal_places=2, null=True, blank=True)
    class_mean_average = models.DecimalField(max_digits=4, decimal_places=2, null=True, blank=True)
    previous_term_average = models.DecimalField(
        max_digits=4,
        decimal_places=2,
        null=True,
        blank=True,
        help_text='Only set when the previous term has real grades'
    )
    source_fingerprint = models.CharField(max_length=64, blank=True)
    is_stale = models.BooleanField(
        default=False,
        help_text='Grades changed after the snapshot was taken'
    )

    # Annual block (final term only)
    term_averages = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    annual_average = models.DecimalField(max_digits=4, decimal_places=2, null=True, blank=True)
    annual_rank = models.PositiveSmallIntegerField(null=True, blank=True)
    decision = models.CharField(max_length=30, choices=Decision.choices, blank=True)
    decision_justification = models.TextField(blank=True)
    decision_overridden_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    annual_withheld_reason = models.CharField(max_length=255, blank=True)
    council_observations = models.TextField(blank=True)
    conduct_summary = models.TextField(blank=True)

    # Signature
    signer_name = models.CharField(max_length=150, blank=True)
    signer_role = models.CharField(max_length=100, blank=True)
    signed_at = models.DateTimeField(null=True, blank=True)

    # Lifecycle
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_bulletins'
    )
    submitted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='submitted_bulletins'
    )
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='approved_bulletins'
    )
    submitted_at = models.DateTimeField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    document = models.CharField(
        max_length=255,
        blank=True,
        help_text='Storage path of the rendered document'
    )

    # Public verification, issued when the bulletin is sent
    verification_code = models.CharField(max_length=32, unique=True, null=True, blank=True, editable=False)
    short_code = models.CharField(
        max_length=8,
        unique=True,
        null=True,
        blank=True,
        editable=False,
        help_text='Printed under the QR code for manual entry'
    )
    verification_count = models.PositiveIntegerField(default=0)
    last_verified_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'bulletin'
        ordering = ['school_class', 'term', 'class_rank']
        verbose_name = 'Bulletin'
        verbose_name_plural = 'Bulletins'
        unique_together = ['student', 'school_class', 'academic_year', 'term', 'version']
        indexes = [
            models.Index(fields=['school_class', 'academic_year', 'term'], name='bulletin_class_term_idx'),
            models.Index(fields=['status'], name='bulletin_status_idx'),
        ]

    def __str__(self):
        return f"{self.student} - {self.academic_year} {self.term} v{self.version} ({self.get_status_display()})"

    @property
    def is_signed(self):
        return self.signed_at is not None

    @property
    def is_final_term(self):
        return self.term == FINAL_TERM

    @property
    def is_frozen(self):
        return self.status != self.Status.DRAFT

    @property
    def is_superseded(self):
        return Bulletin.objects.filter(supersedes=self).exists()

    def check_deletable(self):
        """Only drafts may be deleted; a frozen bulletin is corrected by supersede."""
        if self.is_frozen:
            raise InvalidTransition(
                f"A {self.status} bulletin cannot be deleted; supersede it instead",
                current_status=self.status,
            )

    def delete(self, *args, **kwargs):
        self.check_deletable()
        return super().delete(*args, **kwargs)

    @classmethod
    def next_status(cls, status):
        return cls.TRANSITIONS.get(status)

    @classmethod
    def current_for(cls, student, school_class, academic_year, term):
        """Latest version for the key, or None."""
        return cls.objects.filter(
            student=student,
            school_class=school_class,
            academic_year=academic_year,
            term=term,
        ).order_by('-version').first()


class BulkOperation(models.Model):
    """
    One bulk sign/send batch and its per-item outcome.

    Items already processed keep their outcome even if the batch is
    interrupted, so a partially completed batch can be inspected and rerun.
    """
    class Action(models.TextChoices):
        SIGN = 'sign', _('Sign')
        SEND = 'send', _('Send')

    class State(models.TextChoices):
        RUNNING = 'running', _('Running')
        COMPLETED = 'completed', _('Completed')
        INTERRUPTED = 'interrupted', _('Interrupted')

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    action = models.CharField(max_length=10, choices=Action.choices)
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        related_name='bulk_operations'
    )
    state = models.CharField(
        max_length=12,
        choices=State.choices,
        default=State.RUNNING
    )
    total = models.PositiveIntegerField(default=0)
    succeeded = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)
    skipped = models.PositiveIntegerField(default=0)
    details = models.JSONField(default=list, blank=True, encoder=DjangoJSONEncoder)
    started_at = models.DateTimeField(auto_now_add=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'bulletin_bulk_operation'
        ordering = ['-started_at']
        verbose_name = 'Bulk Operation'
        verbose_name_plural = 'Bulk Operations'

    def __str__(self):
        return f"{self.get_action_display()} x{self.total} ({self.get_state_display()})"

    def as_result(self):
        return {
            'batch_id': str(self.pk),
            'state': self.state,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'details': self.details,
        }


class BulletinDistributionLog(models.Model):
    """
    Record of a bulletin handed to the notification dispatcher.

    At most one row per bulletin per batch; the row is written before the
    dispatcher is called.
    """
    class Status(models.TextChoices):
        PENDING = 'pending', _('Pending')
        DELIVERED = 'delivered', _('Delivered')
        FAILED = 'failed', _('Failed')

    bulletin = models.ForeignKey(
        Bulletin,
        on_delete=models.PROTECT,
        related_name='distribution_logs'
    )
    batch = models.ForeignKey(
        BulkOperation,
        on_delete=models.CASCADE,
        related_name='distribution_logs'
    )
    channels = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.PENDING
    )
    error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'bulletin_distribution_log'
        ordering = ['-created_at']
        unique_together = ['bulletin', 'batch']
        verbose_name = 'Distribution Log'
        verbose_name_plural = 'Distribution Logs'

    def __str__(self):
        return f"{self.bulletin_id} in batch {self.batch_id}: {self.status}"


class BulletinVerificationLog(models.Model):
    """One public lookup of a verification code, successful or not."""
    class Method(models.TextChoices):
        QR_CODE = 'qr_code', _('QR code')
        MANUAL_ENTRY = 'manual_entry', _('Manual entry')

    class Result(models.TextChoices):
        SUCCESS = 'success', _('Success')
        INVALID_CODE = 'invalid_code', _('Invalid code')
        ACCESS_DENIED = 'access_denied', _('Access denied')

    bulletin = models.ForeignKey(
        Bulletin,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='verification_logs'
    )
    code_prefix = models.CharField(max_length=8, blank=True)
    method = models.CharField(max_length=15, choices=Method.choices)
    result = models.CharField(max_length=15, choices=Result.choices)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'bulletin_verification_log'
        ordering = ['-created_at']
        verbose_name = 'Verification Log'
        verbose_name_plural = 'Verification Logs'

    def __str__(self):
        return f"{self.code_prefix}... {self.result} ({self.method})"
