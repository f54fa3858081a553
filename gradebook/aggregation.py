"""
Term and annual aggregation for a whole class.

Derived figures (subject scores, term averages, ranks, annual averages) are
never stored as a source of truth; they are recomputed from the grade
ledger here and only frozen onto a Bulletin as a snapshot.

Each term is read with one query inside a transaction, and the rows read
are summarised by a fingerprint so callers can detect a write that landed
between computing and persisting.
"""
import hashlib
import logging
from collections import defaultdict

from django.db import transaction

from academics.models import SubjectEnrollment
from core.choices import Term, TERM_ORDER, FINAL_TERM, BulletinSection
from students.models import Enrollment
from . import config
from .calculations import (
    subject_score, term_average, annual_average, promotion_decision,
    rank_entries, class_statistics, remark_for, round2,
)
from .exceptions import IncompleteGrades, InsufficientHistory, ValidationError
from .models import GradeComponent


logger = logging.getLogger(__name__)

SECTION_ORDER = {
    BulletinSection.GENERAL: 0,
    BulletinSection.PROFESSIONAL: 1,
    BulletinSection.OTHER: 2,
}


def fingerprint(rows):
    """Order-independent digest of (component id, revision) pairs."""
    digest = hashlib.sha256()
    for pk, revision in sorted((str(pk), revision) for pk, revision in rows):
        digest.update(f'{pk}:{revision};'.encode())
    return digest.hexdigest()


def combine_fingerprints(parts):
    return hashlib.sha256('|'.join(parts).encode()).hexdigest()


def ledger_fingerprint(school_class, academic_year, term):
    """
    Fingerprint of the ledger rows a bulletin for this term depends on.

    A final-term bulletin depends on all three terms of the year.
    """
    terms = TERM_ORDER if term == FINAL_TERM else [term]
    parts = []
    for t in terms:
        rows = GradeComponent.objects.filter(
            school_class=school_class,
            academic_year=academic_year,
            term=t,
        ).values_list('id', 'revision')
        parts.append(fingerprint(rows))
    if term == FINAL_TERM:
        return combine_fingerprints(parts)
    return parts[0]


def _subject_selections(school_class, student_ids):
    """student id -> set of selected subject ids, for students who made a selection."""
    selections = defaultdict(set)
    enrollments = SubjectEnrollment.objects.filter(
        student_id__in=student_ids,
        subject__school_class=school_class,
        is_active=True,
    ).values_list('student_id', 'subject_id')
    for student_id, subject_id in enrollments:
        selections[student_id].add(subject_id)
    return selections


def build_subject_row(component, policy):
    """Bulletin row for one grade component, or None when it has no score."""
    score = subject_score(
        component.continuous_score,
        component.exam_score,
        policy.cc_weight,
        policy.exam_weight,
    )
    if score is None:
        return None

    subject = component.subject
    teacher = subject.teacher
    return {
        'subject_id': subject.pk,
        'subject': subject.name,
        'code': subject.code,
        'category': subject.category,
        'section': subject.section,
        'teacher': teacher.display_name if teacher else '',
        'continuous_score': component.continuous_score,
        'exam_score': component.exam_score,
        'score': score,
        'coefficient': component.coefficient,
        'weighted': round2(score * component.coefficient),
        'remark': remark_for(score),
        'comment': component.comment,
    }


def _row_order(row):
    return (SECTION_ORDER.get(row['section'], len(SECTION_ORDER)), row['subject'].lower())


def compute_term_results(school_class, academic_year, term, policy=None):
    """
    Compute every enrolled student's subject rows, term average and rank.

    Returns a dict:
        roster_size: number of active enrollments of the class for the year
        fingerprint: digest of the ledger rows read
        statistics: min/max/mean/count of the term averages, or None
        students: {student_id: {'rows', 'average', 'rank'}} for every
            enrolled student; 'average' and 'rank' are None when the
            student has no scored subject
    """
    policy = policy or config.grading_policy()

    with transaction.atomic():
        roster_ids = list(
            Enrollment.roster(school_class, academic_year).values_list('student_id', flat=True)
        )
        components = list(
            GradeComponent.objects.filter(
                school_class=school_class,
                academic_year=academic_year,
                term=term,
            ).select_related('subject', 'subject__teacher')
        )
        selections = _subject_selections(school_class, roster_ids)

    roster = set(roster_ids)
    rows_by_student = defaultdict(list)
    for component in components:
        if component.student_id not in roster:
            continue
        selected = selections.get(component.student_id)
        if selected and component.subject_id not in selected:
            continue
        row = build_subject_row(component, policy)
        if row is not None:
            rows_by_student[component.student_id].append(row)

    students = {}
    for student_id in roster_ids:
        rows = sorted(rows_by_student.get(student_id, []), key=_row_order)
        average = None
        if rows:
            average = term_average((row['score'], row['coefficient']) for row in rows)
        students[student_id] = {'rows': rows, 'average': average, 'rank': None}

    for student_id, average, rank in rank_entries(
        (student_id, entry['average']) for student_id, entry in students.items()
    ):
        students[student_id]['rank'] = rank

    return {
        'school_class': school_class,
        'academic_year': academic_year,
        'term': term,
        'roster_size': len(roster_ids),
        'fingerprint': fingerprint((c.pk, c.revision) for c in components),
        'statistics': class_statistics(entry['average'] for entry in students.values()),
        'students': students,
    }


def compute_annual_results(school_class, academic_year, policy=None, term_results=None):
    """
    Annual averages, ranks and promotion decisions for a class.

    A student missing any term average gets no annual figures; the decision
    is withheld with a reason naming the missing terms.

    Args:
        term_results: optional {term: compute_term_results(...)} already
            computed by the caller; missing terms are computed here
    """
    policy = policy or config.grading_policy()
    term_results = dict(term_results or {})
    for term in TERM_ORDER:
        if term not in term_results:
            term_results[term] = compute_term_results(school_class, academic_year, term, policy)

    final = term_results[FINAL_TERM]
    students = {}
    for student_id in final['students']:
        averages = {
            term: term_results[term]['students'].get(student_id, {}).get('average')
            for term in TERM_ORDER
        }
        entry = {
            'term_averages': averages,
            'annual_average': None,
            'annual_rank': None,
            'decision': '',
            'withheld_reason': '',
            'missing_terms': [],
        }
        try:
            entry['annual_average'] = annual_average(*(averages[t] for t in TERM_ORDER))
        except IncompleteGrades as e:
            entry['withheld_reason'] = e.message
            entry['missing_terms'] = e.details.get('missing_terms', [])
        else:
            entry['decision'] = promotion_decision(entry['annual_average'], policy.promotion_threshold)
        students[student_id] = entry

    for student_id, average, rank in rank_entries(
        (student_id, entry['annual_average']) for student_id, entry in students.items()
    ):
        students[student_id]['annual_rank'] = rank

    return {
        'roster_size': final['roster_size'],
        'fingerprint': combine_fingerprints([term_results[t]['fingerprint'] for t in TERM_ORDER]),
        'students': students,
        'term_results': term_results,
    }


def previous_term(term):
    index = TERM_ORDER.index(term)
    if index == 0:
        return None
    return TERM_ORDER[index - 1]


def previous_term_average(student, school_class, academic_year, term, policy=None, term_results=None):
    """
    The student's average for the term before ``term`` in the same year.

    Raises InsufficientHistory when there is no earlier term or it has no
    grades; nothing is ever estimated.
    """
    earlier = previous_term(term)
    if earlier is None:
        raise InsufficientHistory(f"{Term(term).label} has no earlier term in {academic_year}")

    results = (term_results or {}).get(earlier)
    if results is None:
        results = compute_term_results(school_class, academic_year, earlier, policy)
    entry = results['students'].get(student.pk)
    if not entry or entry['average'] is None:
        raise InsufficientHistory(
            f"No {Term(earlier).label} grades for {student} in {academic_year}"
        )
    return entry['average']


def build_snapshot(student, school_class, academic_year, term, policy=None):
    """
    Bulletin snapshot fields for one student, computed from the ledger.

    Returns a dict of Bulletin field values including source_fingerprint.
    The subject list may be empty and term_average None when the student
    has no scored subject; callers decide whether that is acceptable.
    """
    policy = policy or config.grading_policy()
    results = compute_term_results(school_class, academic_year, term, policy)
    entry = results['students'].get(student.pk)
    if entry is None:
        raise ValidationError(
            f"{student} is not enrolled in {school_class} for {academic_year}",
            code='not_enrolled',
        )

    statistics = results['statistics'] or {}
    snapshot = {
        'subjects': entry['rows'],
        'term_average': entry['average'],
        'class_rank': entry['rank'],
        'total_students_in_class': results['roster_size'],
        'class_min_average': statistics.get('min'),
        'class_max_average': statistics.get('max'),
        'class_mean_average': statistics.get('mean'),
        'previous_term_average': None,
        'source_fingerprint': results['fingerprint'],
    }

    term_results = {term: results}
    if term == FINAL_TERM:
        annual = compute_annual_results(school_class, academic_year, policy, term_results)
        term_results = annual['term_results']
        annual_entry = annual['students'][student.pk]
        snapshot.update({
            'term_averages': annual_entry['term_averages'],
            'annual_average': annual_entry['annual_average'],
            'annual_rank': annual_entry['annual_rank'],
            'decision': annual_entry['decision'],
            'annual_withheld_reason': annual_entry['withheld_reason'],
            'source_fingerprint': annual['fingerprint'],
        })
        if annual_entry['withheld_reason']:
            logger.warning(
                f"Annual decision withheld for student {student.pk} in {school_class} "
                f"{academic_year}: {annual_entry['withheld_reason']}"
            )

    try:
        snapshot['previous_term_average'] = previous_term_average(
            student, school_class, academic_year, term, policy, term_results
        )
    except InsufficientHistory as e:
        logger.debug(f"No previous-term average: {e.message}")

    return snapshot
