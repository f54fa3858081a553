from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from core.choices import SubjectCategory, BulletinSection


class SchoolClass(models.Model):
    """
    Represents a class/classroom grouping of students.

    Technical-track classes print their bulletins in sections
    (general / professional / other); every other class prints a flat list.
    """
    class Track(models.TextChoices):
        GENERAL = 'general', _('General Education')
        TECHNICAL = 'technical', _('Technical Education')

    name = models.CharField(
        max_length=50,
        unique=True,
        help_text="e.g., Form 1A, Terminale C, 1ere F3"
    )
    level = models.CharField(max_length=30, blank=True)
    track = models.CharField(
        max_length=10,
        choices=Track.choices,
        default=Track.GENERAL
    )
    capacity = models.PositiveIntegerField(
        default=60,
        help_text="Maximum number of students"
    )
    class_teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assigned_classes',
        help_text="The form tutor or class teacher responsible for this class."
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        verbose_name = "Class"
        verbose_name_plural = "Classes"

    def __str__(self):
        return self.name

    @property
    def is_technical(self):
        return self.track == self.Track.TECHNICAL


class SubjectCategoryRule(models.Model):
    """
    Maps a subject code to its category and bulletin section.

    Consulted when a subject is saved without an explicit category, so the
    general/professional split of technical bulletins lives in data rather
    than in code.
    """
    code = models.CharField(max_length=20, unique=True)
    category = models.CharField(
        max_length=15,
        choices=SubjectCategory.choices,
        default=SubjectCategory.GENERAL
    )
    bulletin_section = models.CharField(
        max_length=15,
        choices=BulletinSection.choices,
        blank=True
    )

    class Meta:
        ordering = ['code']
        verbose_name = "Subject Category Rule"
        verbose_name_plural = "Subject Category Rules"

    def __str__(self):
        return f"{self.code} -> {self.category}"

    @classmethod
    def lookup(cls, code):
        if not code:
            return None
        return cls.objects.filter(code__iexact=code.strip()).first()


class Subject(models.Model):
    """
    A subject taught to one class.

    The coefficient may change during the year; grade components keep the
    coefficient they were written with.
    """
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.CASCADE,
        related_name='subjects'
    )
    name = models.CharField(
        max_length=100,
        help_text="e.g., Mathematics, English Language, Electrotechnics"
    )
    code = models.CharField(
        max_length=20,
        blank=True,
        help_text="Optional subject code, used for category lookup"
    )
    coefficient = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal('1.00'),
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    weekly_hours = models.PositiveSmallIntegerField(default=0)
    category = models.CharField(
        max_length=15,
        choices=SubjectCategory.choices,
        blank=True
    )
    bulletin_section = models.CharField(
        max_length=15,
        choices=BulletinSection.choices,
        blank=True,
        help_text="Only used for technical-track bulletin layouts"
    )
    teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='subject_assignments'
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['school_class', 'name']
        unique_together = ['school_class', 'name']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(coefficient__gt=0),
                name='subject_coefficient_positive',
            ),
        ]
        verbose_name = "Subject"
        verbose_name_plural = "Subjects"

    def __str__(self):
        return f"{self.name} - {self.school_class}"

    def save(self, *args, **kwargs):
        if not self.category or not self.bulletin_section:
            rule = SubjectCategoryRule.lookup(self.code)
            if not self.category:
                self.category = rule.category if rule else SubjectCategory.GENERAL
            if not self.bulletin_section and rule and rule.bulletin_section:
                self.bulletin_section = rule.bulletin_section
        super().save(*args, **kwargs)

    @property
    def section(self):
        """Bulletin section, falling back to one derived from the category."""
        if self.bulletin_section:
            return self.bulletin_section
        if self.category == SubjectCategory.PROFESSIONAL:
            return BulletinSection.PROFESSIONAL
        if self.category == SubjectCategory.OTHER:
            return BulletinSection.OTHER
        return BulletinSection.GENERAL


class SubjectEnrollment(models.Model):
    """
    Optional per-student subject selection.

    A student without any active selection in a class takes every subject
    of that class.
    """
    student = models.ForeignKey(
        'students.Student',
        on_delete=models.CASCADE,
        related_name='subject_enrollments'
    )
    subject = models.ForeignKey(
        Subject,
        on_delete=models.CASCADE,
        related_name='enrollments'
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ['student', 'subject']
        verbose_name = "Subject Enrollment"
        verbose_name_plural = "Subject Enrollments"

    def __str__(self):
        return f"{self.student} - {self.subject.name}"
