"""
The grade ledger: the only place grade components are written.

A write for an existing key overwrites the stored values (last write wins).
Components left out of a write keep their stored value; erasing one
takes an explicit `clear`. The coefficient snapshot of a row only changes
when a write gives a coefficient. Saving a component
fires the post_save signal that marks dependent draft bulletins stale
(see signals.py).
"""
import logging
import re

from django.db import transaction, IntegrityError

from core.choices import Term
from students.models import Enrollment
from .calculations import validate_score, validate_coefficient
from .exceptions import ValidationError, PermissionDenied
from .models import GradeComponent
from .permissions import can_edit_scores


logger = logging.getLogger(__name__)

ACADEMIC_YEAR_PATTERN = re.compile(r'^(\d{4})-(\d{4})$')

# Components a write may erase
CLEARABLE = ('continuous_score', 'exam_score')


def validate_academic_year(value):
    match = ACADEMIC_YEAR_PATTERN.match(value or '')
    if not match or int(match.group(2)) != int(match.group(1)) + 1:
        raise ValidationError(
            f"Academic year must look like 2024-2025, got {value!r}",
            code='invalid_academic_year',
        )
    return value


def validate_term(value):
    if value not in Term.values:
        raise ValidationError(
            f"Term must be one of {', '.join(Term.values)}, got {value!r}",
            code='invalid_term',
        )
    return value


def write_grade(*, student, subject, school_class, academic_year, term, actor,
                continuous_score=None, exam_score=None, coefficient=None, comment=None, clear=()):
    """
    Store the score components of one student in one subject for one term.

    Args:
        student, subject, school_class: model instances
        academic_year: e.g. '2024-2025'
        term: 'T1', 'T2' or 'T3'
        actor: the user writing the grade
        continuous_score, exam_score: optional, 0..20
        coefficient: optional override, > 0. A new row takes the subject's
            coefficient when none is given; an existing row keeps its snapshot
        comment: optional teacher comment
        clear: component names ('continuous_score', 'exam_score') to erase

    Returns:
        The stored GradeComponent.

    Raises:
        ValidationError: bad identity or out-of-range value
        PermissionDenied: actor neither teaches the subject, is class
            teacher, nor is a director
    """
    validate_academic_year(academic_year)
    validate_term(term)
    continuous_score = validate_score(continuous_score, 'continuous_score')
    exam_score = validate_score(exam_score, 'exam_score')
    coefficient = validate_coefficient(coefficient)
    clear = validate_clear(clear, continuous_score=continuous_score, exam_score=exam_score)

    if continuous_score is None and exam_score is None and comment is None and not clear:
        raise ValidationError("Nothing to write: give a score or a comment", code='empty_grade')

    if subject.school_class_id != school_class.pk:
        raise ValidationError(
            f"{subject.name} is not taught in {school_class}",
            code='subject_not_in_class',
        )

    if not Enrollment.roster(school_class, academic_year).filter(student=student).exists():
        raise ValidationError(
            f"{student} is not enrolled in {school_class} for {academic_year}",
            code='not_enrolled',
        )

    if not can_edit_scores(actor, school_class, subject):
        raise PermissionDenied(f"You cannot write grades for {subject.name} in {school_class}")

    key = dict(
        student=student,
        subject=subject,
        school_class=school_class,
        academic_year=academic_year,
        term=term,
    )
    values = dict(
        continuous_score=continuous_score,
        exam_score=exam_score,
        coefficient=coefficient,
        comment=comment,
        clear=clear,
    )

    try:
        component = _upsert(key, subject.coefficient, actor, **values)
    except IntegrityError:
        # Lost a create race on the unique key; the row exists now
        component = _upsert(key, subject.coefficient, actor, **values)

    logger.info(
        f"Grade written: student={student.pk} subject={subject.pk} {academic_year} {term} "
        f"cc={component.continuous_score} exam={component.exam_score} rev={component.revision} "
        f"by {getattr(actor, 'pk', None)}"
    )
    return component


def validate_clear(clear, **given):
    """Check the component names to erase; a component cannot be set and erased at once."""
    clear = tuple(dict.fromkeys(clear or ()))
    unknown = [name for name in clear if name not in CLEARABLE]
    if unknown:
        raise ValidationError(
            f"Only {', '.join(CLEARABLE)} can be cleared, got {', '.join(unknown)}",
            code='invalid_clear',
        )
    conflicting = [name for name in clear if given.get(name) is not None]
    if conflicting:
        raise ValidationError(
            f"{', '.join(conflicting)} cannot be given and cleared in the same write",
            code='conflicting_clear',
        )
    return clear


def _upsert(key, subject_coefficient, actor, continuous_score, exam_score, coefficient, comment, clear):
    with transaction.atomic():
        component = GradeComponent.objects.select_for_update().filter(**key).first()
        if component is None:
            return GradeComponent.objects.create(
                **key,
                continuous_score=continuous_score,
                exam_score=exam_score,
                # Coefficient snapshot is taken when the row is first written
                coefficient=coefficient if coefficient is not None else subject_coefficient,
                comment=comment or '',
                entered_by=actor,
            )

        if continuous_score is not None:
            component.continuous_score = continuous_score
        if exam_score is not None:
            component.exam_score = exam_score
        for name in clear:
            setattr(component, name, None)
        if comment is not None:
            component.comment = comment
        if coefficient is not None:
            component.coefficient = coefficient
        component.entered_by = actor
        component.revision += 1
        component.save()
        return component
