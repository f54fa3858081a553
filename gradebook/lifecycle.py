"""
Bulletin lifecycle: draft -> submitted -> approved -> sent.

Every status change goes through _advance(), a conditional UPDATE on the
expected current status. If another actor moved the bulletin first the
UPDATE matches nothing and InvalidTransition is raised with the row left as
the winner wrote it. The approved -> sent step is only taken by the bulk
coordinator (bulk.py), after a signature has been recorded.
"""
import logging

from django.db import transaction
from django.utils import timezone

from core.choices import FINAL_TERM
from core.models import SchoolSettings
from students.models import Enrollment
from .aggregation import build_snapshot, ledger_fingerprint
from .exceptions import (
    ValidationError, InvalidTransition, ConcurrentGradeWrite, IncompleteGrades,
    MissingSignature, PermissionDenied, DownstreamUnavailable,
)
from .models import Bulletin
from .permissions import can_submit_bulletin, require_director
from .verification import issue_verification_code


logger = logging.getLogger(__name__)


def _advance(bulletin, expected, target, **changes):
    """
    Compare-and-swap the status of ``bulletin`` from ``expected`` to ``target``.

    Refreshes ``bulletin`` from the database either way.
    """
    if Bulletin.next_status(expected) != target:
        raise InvalidTransition(f"Cannot move a bulletin from {expected} to {target}")

    updated = Bulletin.objects.filter(pk=bulletin.pk, status=expected).update(
        status=target,
        updated_at=timezone.now(),
        **changes
    )
    bulletin.refresh_from_db()
    if not updated:
        raise InvalidTransition(
            f"Bulletin {bulletin.pk} is {bulletin.status}, expected {expected}",
            current_status=bulletin.status,
        )
    logger.info(f"Bulletin {bulletin.pk} moved {expected} -> {target}")
    return bulletin


def _snapshot_for(bulletin):
    snapshot = build_snapshot(
        bulletin.student,
        bulletin.school_class,
        bulletin.academic_year,
        bulletin.term,
    )
    if bulletin.term != FINAL_TERM:
        for field in ('term_averages', 'annual_average', 'annual_rank', 'decision', 'annual_withheld_reason'):
            snapshot.pop(field, None)
    elif bulletin.decision_overridden_by_id:
        # A director override survives recomputation
        snapshot.pop('decision', None)
    return snapshot


def compose_draft(student, school_class, academic_year, term, actor):
    """
    Create or refresh the draft bulletin of a student for a term.

    Refuses when the current version is already past draft; that version
    must be superseded instead.
    """
    if not can_submit_bulletin(actor, Bulletin(school_class=school_class)):
        raise PermissionDenied(f"You cannot prepare bulletins for {school_class}")

    with transaction.atomic():
        bulletin = Bulletin.current_for(student, school_class, academic_year, term)
        if bulletin is not None and bulletin.is_frozen:
            raise InvalidTransition(
                f"Bulletin {bulletin.pk} is already {bulletin.status}; supersede it to correct it",
                current_status=bulletin.status,
            )
        if bulletin is None:
            bulletin = Bulletin(
                student=student,
                school_class=school_class,
                academic_year=academic_year,
                term=term,
                created_by=actor,
                language=student.preferred_language or SchoolSettings.load().bulletin_language,
            )
        for field, value in _snapshot_for(bulletin).items():
            setattr(bulletin, field, value)
        bulletin.is_stale = False
        bulletin.save()

    bulletin.refresh_from_db()
    return bulletin


def compose_class_bulletins(school_class, academic_year, term, actor):
    """
    Compose drafts for every enrolled student of a class.

    Returns (composed, skipped) where skipped lists (student, reason) for
    students whose bulletin is already frozen.
    """
    composed, skipped = [], []
    enrollments = Enrollment.roster(school_class, academic_year).select_related('student')
    for enrollment in enrollments:
        try:
            composed.append(compose_draft(enrollment.student, school_class, academic_year, term, actor))
        except InvalidTransition as e:
            skipped.append((enrollment.student, e.message))
    return composed, skipped


def submit(bulletin, actor):
    """
    draft -> submitted, by a teacher of the class or a director.

    The snapshot is recomputed from the ledger and written in the same
    conditional UPDATE as the status change.
    """
    if not can_submit_bulletin(actor, bulletin):
        raise PermissionDenied("Only a teacher of this class or a director can submit its bulletins")
    if bulletin.status != Bulletin.Status.DRAFT:
        raise InvalidTransition(
            f"Only a draft can be submitted; this bulletin is {bulletin.status}",
            current_status=bulletin.status,
        )

    with transaction.atomic():
        snapshot = _snapshot_for(bulletin)
        if not snapshot['subjects'] or snapshot['term_average'] is None:
            raise IncompleteGrades(f"{bulletin.student} has no scored subject for {bulletin.term}")

        current = ledger_fingerprint(bulletin.school_class, bulletin.academic_year, bulletin.term)
        if current != snapshot['source_fingerprint']:
            raise ConcurrentGradeWrite("Grades changed while the bulletin was being computed; retry")

        return _advance(
            bulletin,
            Bulletin.Status.DRAFT,
            Bulletin.Status.SUBMITTED,
            submitted_by=actor,
            submitted_at=timezone.now(),
            is_stale=False,
            **snapshot
        )


def approve(bulletin, actor):
    """submitted -> approved, director only. Approving an approved bulletin is a no-op."""
    require_director(actor, 'approve bulletins')
    if bulletin.status == Bulletin.Status.APPROVED:
        return bulletin
    if bulletin.status != Bulletin.Status.SUBMITTED:
        raise InvalidTransition(
            f"Only a submitted bulletin can be approved; this one is {bulletin.status}",
            current_status=bulletin.status,
        )
    return _advance(
        bulletin,
        Bulletin.Status.SUBMITTED,
        Bulletin.Status.APPROVED,
        approved_by=actor,
        approved_at=timezone.now(),
    )


def sign(bulletin, actor, signer_name, signer_role):
    """
    Record the signature on an approved bulletin (status stays approved).

    Signing an already signed bulletin keeps the first signature.
    """
    require_director(actor, 'sign bulletins')
    signer_name = (signer_name or '').strip()
    signer_role = (signer_role or '').strip()
    if not signer_name or not signer_role:
        raise ValidationError("Signer name and role are required", code='missing_signer')

    if bulletin.status != Bulletin.Status.APPROVED:
        raise InvalidTransition(
            f"Only an approved bulletin can be signed; this one is {bulletin.status}",
            current_status=bulletin.status,
        )
    if bulletin.is_signed:
        return bulletin

    updated = Bulletin.objects.filter(
        pk=bulletin.pk,
        status=Bulletin.Status.APPROVED,
        signed_at__isnull=True,
    ).update(
        signer_name=signer_name,
        signer_role=signer_role,
        signed_at=timezone.now(),
        updated_at=timezone.now(),
    )
    bulletin.refresh_from_db()
    if not updated and bulletin.status != Bulletin.Status.APPROVED:
        raise InvalidTransition(
            f"Bulletin {bulletin.pk} is {bulletin.status}, expected approved",
            current_status=bulletin.status,
        )
    logger.info(f"Bulletin {bulletin.pk} signed by {signer_name} ({signer_role})")
    return bulletin


def mark_sent(bulletin):
    """
    approved -> sent. Only called by the bulk coordinator after dispatch.

    A sent bulletin always carries its verification codes.
    """
    if not bulletin.is_signed:
        raise MissingSignature(f"Bulletin {bulletin.pk} has no recorded signature")
    issue_verification_code(bulletin)
    return _advance(
        bulletin,
        Bulletin.Status.APPROVED,
        Bulletin.Status.SENT,
        sent_at=timezone.now(),
    )


def supersede(bulletin, actor, reason=''):
    """
    Start a corrected version of a submitted/approved/sent bulletin.

    The previous version keeps its status and data; the new version is a
    fresh draft computed from the current ledger.
    """
    if not can_submit_bulletin(actor, bulletin):
        raise PermissionDenied("Only a teacher of this class or a director can correct its bulletins")
    if bulletin.status == Bulletin.Status.DRAFT:
        raise InvalidTransition("A draft can be edited directly; only frozen bulletins are superseded")

    with transaction.atomic():
        latest = Bulletin.current_for(
            bulletin.student, bulletin.school_class, bulletin.academic_year, bulletin.term
        )
        if latest.pk != bulletin.pk:
            raise InvalidTransition(
                f"Bulletin {bulletin.pk} was already superseded by version {latest.version}"
            )
        replacement = Bulletin(
            student=bulletin.student,
            school_class=bulletin.school_class,
            academic_year=bulletin.academic_year,
            term=bulletin.term,
            version=bulletin.version + 1,
            supersedes=bulletin,
            language=bulletin.language,
            council_observations=bulletin.council_observations,
            conduct_summary=bulletin.conduct_summary,
            created_by=actor,
        )
        for field, value in _snapshot_for(replacement).items():
            setattr(replacement, field, value)
        replacement.save()

    logger.info(
        f"Bulletin {bulletin.pk} v{bulletin.version} superseded by {replacement.pk} "
        f"v{replacement.version}: {reason or 'no reason given'}"
    )
    replacement.refresh_from_db()
    return replacement


def record_council_decision(bulletin, actor, council_observations=None, conduct_summary=None,
                            override=False, justification=''):
    """
    Director-entered council metadata on a final-term bulletin.

    ``override`` changes the decision to promoted-with-reservations and
    requires a justification. Not allowed once the bulletin is sent.
    """
    require_director(actor, 'record council decisions')
    if not bulletin.is_final_term:
        raise ValidationError("Council decisions only apply to the final term", code='not_final_term')
    if bulletin.status == Bulletin.Status.SENT:
        raise InvalidTransition("A sent bulletin cannot be changed", current_status=bulletin.status)

    changes = {'updated_at': timezone.now()}
    if council_observations is not None:
        changes['council_observations'] = council_observations
    if conduct_summary is not None:
        changes['conduct_summary'] = conduct_summary
    if override:
        justification = (justification or '').strip()
        if not justification:
            raise ValidationError("An override needs a justification", code='missing_justification')
        if bulletin.annual_average is None:
            raise IncompleteGrades(
                bulletin.annual_withheld_reason or "No annual average to decide on",
                missing_terms=[t for t, v in (bulletin.term_averages or {}).items() if v is None],
            )
        changes.update(
            decision=Bulletin.Decision.PROMOTED_WITH_RESERVATIONS,
            decision_justification=justification,
            decision_overridden_by=actor,
        )

    updated = Bulletin.objects.filter(pk=bulletin.pk).exclude(
        status=Bulletin.Status.SENT
    ).update(**changes)
    bulletin.refresh_from_db()
    if not updated:
        raise InvalidTransition("A sent bulletin cannot be changed", current_status=bulletin.status)
    return bulletin


def create_bulletin(data, actor):
    """
    Director direct creation: write the grades, then compose, submit and render.

    Args:
        data: cleaned BulletinCreateForm data; 'grades' is a list of dicts
            with subject, continuous_score, exam_score, coefficient, comment

    Returns:
        {'bulletin_id': ..., 'document': ...}; document is None when the
        renderer is down and rendering was queued instead
    """
    from .ledger import write_grade
    from .rendering import get_renderer, template_for
    from .signals import signals_disabled, mark_bulletins_stale
    from .tasks import render_bulletin_task

    require_director(actor, 'create bulletins directly')

    student = data['student']
    school_class = data['school_class']
    academic_year = data['academic_year']
    term = data['term']

    with transaction.atomic():
        enrollment, created = Enrollment.objects.get_or_create(
            student=student,
            academic_year=academic_year,
            defaults={'class_assigned': school_class},
        )
        if enrollment.class_assigned_id != school_class.pk:
            raise ValidationError(
                f"{student} is enrolled in {enrollment.class_assigned} for {academic_year}",
                code='enrolled_elsewhere',
            )
        if created:
            logger.info(f"Enrolled student {student.pk} in {school_class} for {academic_year}")

        with signals_disabled():
            for grade in data['grades']:
                write_grade(
                    student=student,
                    subject=grade['subject'],
                    school_class=school_class,
                    academic_year=academic_year,
                    term=term,
                    actor=actor,
                    continuous_score=grade.get('continuous_score'),
                    exam_score=grade.get('exam_score'),
                    coefficient=grade.get('coefficient'),
                    comment=grade.get('comment'),
                )
        mark_bulletins_stale(school_class.pk, academic_year, term, student.pk)
        bulletin = compose_draft(student, school_class, academic_year, term, actor)
        if data.get('language'):
            Bulletin.objects.filter(pk=bulletin.pk).update(language=data['language'])
            bulletin.language = data['language']
        bulletin = submit(bulletin, actor)

    try:
        document = get_renderer().render(bulletin, language=bulletin.language, template=template_for(bulletin))
    except DownstreamUnavailable as e:
        # The bulletin is already submitted; the document follows from the worker
        logger.warning(f"Rendering bulletin {bulletin.pk} deferred: {e.message}")
        render_bulletin_task.delay(str(bulletin.pk), bulletin.language or None)
        return {'bulletin_id': str(bulletin.pk), 'document': None}

    Bulletin.objects.filter(pk=bulletin.pk).update(document=document)
    logger.info(f"Bulletin {bulletin.pk} created directly by {actor.pk}, document {document}")
    return {'bulletin_id': str(bulletin.pk), 'document': document}
