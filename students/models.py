import uuid
from django.db import models
from django.utils.translation import gettext_lazy as _

from core.choices import Language


class Student(models.Model):
    """A pupil and the guardian contact their bulletins are sent to."""
    class Gender(models.TextChoices):
        MALE = 'M', _('Male')
        FEMALE = 'F', _('Female')

    class Status(models.TextChoices):
        ACTIVE = 'active', _('Active')
        GRADUATED = 'graduated', _('Graduated')
        WITHDRAWN = 'withdrawn', _('Withdrawn')
        TRANSFERRED = 'transferred', _('Transferred')

    # Identity, as printed on the bulletin
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    other_names = models.CharField(max_length=100, blank=True)
    date_of_birth = models.DateField(null=True, blank=True)
    place_of_birth = models.CharField(max_length=100, blank=True)
    gender = models.CharField(max_length=1, choices=Gender.choices, blank=True)

    # Bulletin recipients
    guardian_name = models.CharField(max_length=200, blank=True)
    guardian_phone = models.CharField(max_length=20, blank=True)
    guardian_email = models.EmailField(blank=True)
    guardian_chat_number = models.CharField(
        max_length=20,
        blank=True,
        help_text="WhatsApp number, if different from the phone number"
    )
    preferred_language = models.CharField(
        max_length=2,
        choices=Language.choices,
        blank=True,
        help_text="Language for bulletins and messages. Empty = school default."
    )

    admission_number = models.CharField(
        max_length=50,
        unique=True,
        help_text="Unique student ID/admission number"
    )

    current_class = models.ForeignKey(
        'academics.SchoolClass',
        on_delete=models.PROTECT,
        related_name='students',
        null=True,
        blank=True
    )

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['last_name', 'first_name']
        verbose_name = "Student"
        verbose_name_plural = "Students"

    def __str__(self):
        return f"{self.full_name} ({self.admission_number})"

    @property
    def full_name(self):
        """Return full name of student."""
        names = [self.first_name]
        if self.other_names:
            names.append(self.other_names)
        names.append(self.last_name)
        return ' '.join(names)

    @property
    def chat_number(self):
        return self.guardian_chat_number or self.guardian_phone

    def get_enrollment(self, academic_year):
        """Return the active enrollment for an academic year, if any."""
        return self.enrollments.filter(
            academic_year=academic_year,
            status=Enrollment.Status.ACTIVE
        ).select_related('class_assigned').first()


class Enrollment(models.Model):
    """
    Tracks a student's enrollment in a class for a specific academic year.

    The active enrollments of a class for a year form its roster; ranks
    and class sizes are computed against that roster.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        ACTIVE = 'active', _('Active')
        PROMOTED = 'promoted', _('Promoted')
        REPEATED = 'repeated', _('Repeated')
        WITHDRAWN = 'withdrawn', _('Withdrawn')
        TRANSFERRED = 'transferred', _('Transferred')

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='enrollments'
    )
    academic_year = models.CharField(
        max_length=9,
        help_text="e.g., 2024-2025"
    )
    class_assigned = models.ForeignKey(
        'academics.SchoolClass',
        on_delete=models.PROTECT,
        related_name='enrollments'
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE
    )
    remarks = models.TextField(blank=True, help_text="Notes about this enrollment")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-academic_year', 'student__last_name']
        unique_together = ['student', 'academic_year']
        indexes = [
            models.Index(fields=['class_assigned', 'academic_year', 'status'], name='enrollment_roster_idx'),
        ]
        verbose_name = "Enrollment"
        verbose_name_plural = "Enrollments"

    def __str__(self):
        return f"{self.student.full_name} - {self.class_assigned.name} ({self.academic_year})"

    def save(self, *args, **kwargs):
        super().save(*args, **kwargs)
        if self.status == self.Status.ACTIVE:
            Student.objects.filter(pk=self.student_id).update(
                current_class=self.class_assigned
            )

    @classmethod
    def roster(cls, school_class, academic_year):
        """Active enrollments of a class for one academic year."""
        return cls.objects.filter(
            class_assigned=school_class,
            academic_year=academic_year,
            status=cls.Status.ACTIVE,
        )
