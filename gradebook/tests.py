import datetime
import itertools
import json
from decimal import Decimal
from unittest import mock

from celery.exceptions import SoftTimeLimitExceeded
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import transaction
from django.db.models import ProtectedError
from django.test import TestCase, SimpleTestCase, override_settings
from django.urls import reverse

from academics.models import SchoolClass, Subject, SubjectEnrollment
from core.models import SchoolSettings
from students.models import Student, Enrollment
from . import config
from .aggregation import compute_term_results, build_snapshot, previous_term_average
from .bulk import run_bulk_action
from .calculations import (
    subject_score, term_average, annual_average, promotion_decision,
    rank_entries, class_statistics, remark_for, validate_score,
)
from .exceptions import (
    ValidationError, IncompleteGrades, InsufficientHistory, InvalidTransition,
    PermissionDenied, ConcurrentGradeWrite, MissingSignature, DownstreamUnavailable,
    InvalidVerificationCode, VerificationDisabled, TooManyAttempts,
)
from .ledger import write_grade
from .lifecycle import (
    compose_draft, compose_class_bulletins, submit, approve, sign, mark_sent,
    supersede, record_council_decision, create_bulletin,
)
from .models import (
    GradeComponent, Bulletin, BulkOperation, BulletinDistributionLog, BulletinVerificationLog,
)
from .rendering import BaseRenderer, group_rows, template_for, TERM_TEMPLATE, ANNUAL_TEMPLATE
from .selectors import read_bulletin_data
from .verification import SHORT_CODE_ALPHABET, issue_verification_code, verify_bulletin


User = get_user_model()

YEAR = '2024-2025'


class FakeRenderer(BaseRenderer):
    """Records render calls instead of producing a PDF; raises while ``failing`` is set."""
    rendered = []
    failing = False

    def render(self, bulletin, language=None, template=None):
        if FakeRenderer.failing:
            raise DownstreamUnavailable('Renderer down')
        FakeRenderer.rendered.append((bulletin.pk, language, template))
        return f'bulletins/test/{bulletin.pk}.pdf'


class FakeDispatcher:
    """Records dispatch calls; fails for admission numbers listed in ``failing``."""
    calls = []
    failing = set()

    def __init__(self, sent_by=None):
        self.sent_by = sent_by

    def dispatch(self, bulletin, channels=None):
        FakeDispatcher.calls.append((bulletin.pk, channels))
        if bulletin.student.admission_number in FakeDispatcher.failing:
            raise DownstreamUnavailable(
                'Gateway down',
                channels={'sms': {'delivered': 0, 'failed': 1}},
            )
        return {'email': {'delivered': 1, 'failed': 0}}


FAKES = dict(
    GRADEBOOK_DOCUMENT_RENDERER='gradebook.tests.FakeRenderer',
    GRADEBOOK_NOTIFICATION_DISPATCHER='gradebook.tests.FakeDispatcher',
    GRADEBOOK_BULK_MAX_WORKERS=1,
)


class GradebookTestMixin:
    """Shared fixtures: one class, two subjects, a director and a teacher."""

    def setUp(self):
        # SchoolSettings.load() caches across test rollbacks
        cache.clear()
        FakeRenderer.rendered = []
        FakeRenderer.failing = False
        FakeDispatcher.calls = []
        FakeDispatcher.failing = set()

        self.director = User.objects.create_school_admin(
            email='director@school.cm', password='pass', first_name='Awa', last_name='Ngono'
        )
        self.teacher = User.objects.create_teacher(email='maths@school.cm', password='pass')
        self.other_teacher = User.objects.create_teacher(email='history@school.cm', password='pass')

        self.school_class = SchoolClass.objects.create(name='Terminale C', level='Terminale')
        self.maths = Subject.objects.create(
            school_class=self.school_class, name='Mathematics', code='MATH',
            coefficient=Decimal('4'), teacher=self.teacher,
        )
        self.french = Subject.objects.create(
            school_class=self.school_class, name='French', code='FRAN', coefficient=Decimal('2'),
        )

    def make_student(self, number, school_class=None, **extra):
        extra.setdefault('guardian_email', f'parent{number}@example.com')
        student = Student.objects.create(
            first_name=f'Student{number}',
            last_name=f'Family{number}',
            admission_number=f'ADM{number:03d}',
            **extra
        )
        Enrollment.objects.create(
            student=student,
            academic_year=YEAR,
            class_assigned=school_class or self.school_class,
        )
        return student

    def grade(self, student, subject=None, term='T1', cc=None, exam=None, actor=None, **extra):
        return write_grade(
            student=student,
            subject=subject or self.maths,
            school_class=self.school_class,
            academic_year=YEAR,
            term=term,
            actor=actor or self.director,
            continuous_score=cc,
            exam_score=exam,
            **extra
        )

    def approved_bulletin(self, student, exam='14', term='T1'):
        self.grade(student, term=term, exam=exam)
        bulletin = compose_draft(student, self.school_class, YEAR, term, self.director)
        submit(bulletin, self.director)
        return approve(bulletin, self.director)


# ============ CALCULATIONS ============

class SubjectScoreTest(SimpleTestCase):
    """Tests for combining CC and exam scores."""

    def test_weighted_sum_of_both_components(self):
        """12 CC and 14 exam at 40/60 give 13.20."""
        self.assertEqual(subject_score(Decimal('12'), Decimal('14')), Decimal('13.20'))

    def test_explicit_weights(self):
        score = subject_score(Decimal('10'), Decimal('20'), Decimal('0.5'), Decimal('0.5'))
        self.assertEqual(score, Decimal('15.00'))

    def test_single_component_is_the_score(self):
        self.assertEqual(subject_score(None, Decimal('11.5')), Decimal('11.50'))
        self.assertEqual(subject_score(Decimal('8'), None), Decimal('8.00'))

    def test_no_component_means_not_scored(self):
        self.assertIsNone(subject_score(None, None))

    def test_rounding_is_half_up(self):
        # 12.125 x 0.4 + 12.125 x 0.6 = 12.125 -> 12.13
        self.assertEqual(subject_score(Decimal('12.125'), Decimal('12.125')), Decimal('12.13'))

    def test_out_of_range_scores_are_rejected(self):
        for value in ('20.01', '-0.5', 'abc'):
            with self.assertRaises(ValidationError):
                validate_score(value)
        self.assertEqual(validate_score('20'), Decimal('20'))
        self.assertEqual(validate_score('0'), Decimal('0'))

    def test_out_of_range_code(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_score('21')
        self.assertEqual(ctx.exception.code, 'score_out_of_range')

    def test_remarks(self):
        self.assertEqual(remark_for(Decimal('16')), 'excellent')
        self.assertEqual(remark_for(Decimal('14.5')), 'good')
        self.assertEqual(remark_for(Decimal('13.99')), 'fairly-good')
        self.assertEqual(remark_for(Decimal('4')), 'needs-improvement')
        self.assertEqual(remark_for(None), '')


class AverageTest(SimpleTestCase):
    """Tests for term and annual averages."""

    def test_term_average_is_coefficient_weighted(self):
        entries = [(Decimal('12.5'), 4), (Decimal('9'), 2), (Decimal('15.25'), 1)]
        # (50 + 18 + 15.25) / 7 = 11.892...
        self.assertEqual(term_average(entries), Decimal('11.89'))

    def test_term_average_does_not_depend_on_order(self):
        entries = [(Decimal('12.5'), 4), (Decimal('9'), 2), (Decimal('15.25'), 1)]
        expected = term_average(entries)
        for permutation in itertools.permutations(entries):
            self.assertEqual(term_average(list(permutation)), expected)

    def test_unscored_subjects_are_ignored(self):
        self.assertEqual(term_average([(Decimal('14'), 2), (None, 5)]), Decimal('14.00'))

    def test_nothing_scored_raises(self):
        with self.assertRaises(IncompleteGrades):
            term_average([(None, 2)])
        with self.assertRaises(IncompleteGrades):
            term_average([])

    def test_annual_average_is_simple_mean(self):
        self.assertEqual(
            annual_average(Decimal('12'), Decimal('14'), Decimal('16')),
            Decimal('14.00'),
        )

    def test_annual_average_reports_missing_terms(self):
        with self.assertRaises(IncompleteGrades) as ctx:
            annual_average(Decimal('12'), None, Decimal('14'))
        self.assertEqual(ctx.exception.details['missing_terms'], ['T2'])

    def test_promotion_threshold_is_inclusive(self):
        self.assertEqual(promotion_decision(Decimal('9.99')), Bulletin.Decision.REPEAT)
        self.assertEqual(promotion_decision(Decimal('10.00')), Bulletin.Decision.PROMOTED)
        self.assertEqual(promotion_decision(Decimal('11'), Decimal('12')), Bulletin.Decision.REPEAT)


class RankingTest(SimpleTestCase):
    """Tests for competition ranking."""

    def test_ties_share_rank_and_next_rank_skips(self):
        ranked = rank_entries([(1, Decimal('15')), (2, Decimal('12')), (3, Decimal('15')), (4, Decimal('10'))])
        self.assertEqual(
            [(key, rank) for key, _, rank in ranked],
            [(1, 1), (3, 1), (2, 3), (4, 4)],
        )

    def test_ranking_is_order_independent_and_idempotent(self):
        entries = [(7, Decimal('13')), (3, Decimal('13')), (5, Decimal('18')), (1, None)]
        first = rank_entries(entries)
        self.assertEqual(rank_entries(list(reversed(entries))), first)
        self.assertEqual(rank_entries([(k, a) for k, a, _ in first]), first)

    def test_missing_averages_are_left_out(self):
        self.assertEqual(rank_entries([(1, None)]), [])

    def test_class_statistics(self):
        stats = class_statistics([Decimal('8'), None, Decimal('12'), Decimal('13')])
        self.assertEqual(stats, {'min': Decimal('8'), 'max': Decimal('13'), 'mean': Decimal('11.00'), 'count': 3})
        self.assertIsNone(class_statistics([None]))


class GradingPolicyTest(GradebookTestMixin, TestCase):
    """Tests for resolving weights and threshold."""

    def test_defaults(self):
        policy = config.grading_policy()
        self.assertEqual(policy.cc_weight, Decimal('0.40'))
        self.assertEqual(policy.exam_weight, Decimal('0.60'))
        self.assertEqual(policy.promotion_threshold, Decimal('10.00'))

    @override_settings(GRADEBOOK_PROMOTION_THRESHOLD=Decimal('12.00'))
    def test_setting_override(self):
        self.assertEqual(config.grading_policy().promotion_threshold, Decimal('12.00'))

    def test_school_settings_win(self):
        school = SchoolSettings.load()
        school.cc_weight = Decimal('0.30')
        school.promotion_threshold = Decimal('11.00')
        school.save()

        policy = config.grading_policy()
        self.assertEqual(policy.cc_weight, Decimal('0.30'))
        self.assertEqual(policy.exam_weight, Decimal('0.70'))
        self.assertEqual(policy.promotion_threshold, Decimal('11.00'))


# ============ LEDGER ============

class WriteGradeTest(GradebookTestMixin, TestCase):
    """Tests for the grade ledger."""

    def setUp(self):
        super().setUp()
        self.student = self.make_student(1)

    def test_write_creates_component_with_coefficient_snapshot(self):
        component = self.grade(self.student, cc='12', exam='14')
        self.assertEqual(component.continuous_score, Decimal('12'))
        self.assertEqual(component.exam_score, Decimal('14'))
        self.assertEqual(component.coefficient, Decimal('4'))
        self.assertEqual(component.revision, 1)
        self.assertEqual(component.entered_by, self.director)

    def test_last_write_wins(self):
        self.grade(self.student, cc='12', exam='14')
        component = self.grade(self.student, exam='9')

        self.assertEqual(GradeComponent.objects.count(), 1)
        component.refresh_from_db()
        self.assertEqual(component.exam_score, Decimal('9.00'))
        # Omitted components keep their stored value
        self.assertEqual(component.continuous_score, Decimal('12.00'))
        self.assertEqual(component.revision, 2)

    def test_coefficient_change_does_not_rewrite_history(self):
        component = self.grade(self.student, exam='14')
        self.maths.coefficient = Decimal('5')
        self.maths.save()

        component.refresh_from_db()
        self.assertEqual(component.coefficient, Decimal('4.00'))

        component = self.grade(self.student, exam='15')
        self.assertEqual(component.coefficient, Decimal('4.00'))

    def test_rewrite_keeps_snapshot_used_by_classmates(self):
        other = self.make_student(2)
        self.grade(self.student, subject=self.maths, exam='16')
        self.grade(self.student, subject=self.french, exam='10')
        self.grade(other, subject=self.maths, exam='12')
        self.grade(other, subject=self.french, exam='10')
        self.maths.coefficient = Decimal('1')
        self.maths.save()

        # A comment on one row must not reweight that student's average
        self.grade(self.student, subject=self.maths, comment='Well done')

        results = compute_term_results(self.school_class, YEAR, 'T1')
        # (16 x 4 + 10 x 2) / 6 = 14.00 and (12 x 4 + 10 x 2) / 6 = 11.33
        self.assertEqual(results['students'][self.student.pk]['average'], Decimal('14.00'))
        self.assertEqual(results['students'][other.pk]['average'], Decimal('11.33'))

    def test_explicit_coefficient_on_rewrite(self):
        self.grade(self.student, exam='14')
        component = self.grade(self.student, exam='14', coefficient='6')
        self.assertEqual(component.coefficient, Decimal('6'))

    def test_clear_erases_a_component(self):
        self.grade(self.student, cc='12', exam='14')
        component = self.grade(self.student, clear=['continuous_score'])

        component.refresh_from_db()
        self.assertIsNone(component.continuous_score)
        self.assertEqual(component.exam_score, Decimal('14.00'))
        self.assertEqual(component.revision, 2)

    def test_clear_with_a_new_value(self):
        self.grade(self.student, cc='12', exam='14')
        component = self.grade(self.student, exam='9', clear=['continuous_score'])
        self.assertIsNone(component.continuous_score)
        self.assertEqual(component.exam_score, Decimal('9'))

    def test_clear_conflicts_and_unknown_names(self):
        self.grade(self.student, cc='12', exam='14')
        with self.assertRaises(ValidationError) as ctx:
            self.grade(self.student, exam='9', clear=['exam_score'])
        self.assertEqual(ctx.exception.code, 'conflicting_clear')
        with self.assertRaises(ValidationError) as ctx:
            self.grade(self.student, clear=['coefficient'])
        self.assertEqual(ctx.exception.code, 'invalid_clear')

        component = GradeComponent.objects.get()
        self.assertEqual(component.exam_score, Decimal('14.00'))
        self.assertEqual(component.revision, 1)

    def test_explicit_coefficient(self):
        component = self.grade(self.student, exam='14', coefficient='3')
        self.assertEqual(component.coefficient, Decimal('3'))

    def test_out_of_range_is_rejected_and_nothing_stored(self):
        with self.assertRaises(ValidationError):
            self.grade(self.student, exam='20.5')
        with self.assertRaises(ValidationError):
            self.grade(self.student, cc='-1')
        self.assertFalse(GradeComponent.objects.exists())

    def test_empty_write_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            self.grade(self.student)
        self.assertEqual(ctx.exception.code, 'empty_grade')

    def test_comment_only_write(self):
        self.grade(self.student, exam='14')
        component = self.grade(self.student, comment='Good effort')
        self.assertEqual(component.comment, 'Good effort')
        self.assertEqual(component.exam_score, Decimal('14.00'))

    def test_bad_identity(self):
        with self.assertRaises(ValidationError):
            write_grade(
                student=self.student, subject=self.maths, school_class=self.school_class,
                academic_year='2024-2026', term='T1', actor=self.director, exam_score='10',
            )
        with self.assertRaises(ValidationError):
            write_grade(
                student=self.student, subject=self.maths, school_class=self.school_class,
                academic_year=YEAR, term='T4', actor=self.director, exam_score='10',
            )

    def test_subject_must_belong_to_class(self):
        other_class = SchoolClass.objects.create(name='Premiere D')
        other_subject = Subject.objects.create(school_class=other_class, name='Biology')
        with self.assertRaises(ValidationError) as ctx:
            self.grade(self.student, subject=other_subject, exam='10')
        self.assertEqual(ctx.exception.code, 'subject_not_in_class')

    def test_student_must_be_enrolled(self):
        outsider = Student.objects.create(first_name='Out', last_name='Sider', admission_number='OUT001')
        with self.assertRaises(ValidationError) as ctx:
            self.grade(outsider, exam='10')
        self.assertEqual(ctx.exception.code, 'not_enrolled')

    def test_subject_teacher_may_write(self):
        component = self.grade(self.student, exam='13', actor=self.teacher)
        self.assertEqual(component.entered_by, self.teacher)

    def test_class_teacher_may_write_any_subject(self):
        self.school_class.class_teacher = self.other_teacher
        self.school_class.save()
        component = self.grade(self.student, subject=self.french, exam='13', actor=self.other_teacher)
        self.assertEqual(component.exam_score, Decimal('13'))

    def test_other_teacher_is_denied(self):
        with self.assertRaises(PermissionDenied):
            self.grade(self.student, exam='13', actor=self.other_teacher)
        self.assertFalse(GradeComponent.objects.exists())


# ============ AGGREGATION ============

class TermResultsTest(GradebookTestMixin, TestCase):
    """Tests for class-wide term computation."""

    def setUp(self):
        super().setUp()
        self.a = self.make_student(1)
        self.b = self.make_student(2)
        self.c = self.make_student(3)
        self.d = self.make_student(4)

    def test_ranks_with_ties(self):
        self.grade(self.a, exam='15')
        self.grade(self.b, exam='12')
        self.grade(self.c, exam='15')

        results = compute_term_results(self.school_class, YEAR, 'T1')
        students = results['students']
        self.assertEqual(students[self.a.pk]['rank'], 1)
        self.assertEqual(students[self.c.pk]['rank'], 1)
        self.assertEqual(students[self.b.pk]['rank'], 3)

    def test_roster_counts_students_without_grades(self):
        self.grade(self.a, exam='15')
        results = compute_term_results(self.school_class, YEAR, 'T1')

        self.assertEqual(results['roster_size'], 4)
        self.assertIsNone(results['students'][self.d.pk]['average'])
        self.assertIsNone(results['students'][self.d.pk]['rank'])
        self.assertEqual(results['statistics']['count'], 1)

    def test_weighted_term_average(self):
        self.grade(self.a, subject=self.maths, cc='12', exam='14')   # 13.20 x4
        self.grade(self.a, subject=self.french, exam='10')           # 10.00 x2
        results = compute_term_results(self.school_class, YEAR, 'T1')
        # (52.80 + 20.00) / 6 = 12.133...
        self.assertEqual(results['students'][self.a.pk]['average'], Decimal('12.13'))

    def test_subject_selection_limits_rows(self):
        self.grade(self.a, subject=self.maths, exam='15')
        self.grade(self.a, subject=self.french, exam='5')
        SubjectEnrollment.objects.create(student=self.a, subject=self.maths)

        rows = compute_term_results(self.school_class, YEAR, 'T1')['students'][self.a.pk]['rows']
        self.assertEqual([row['subject'] for row in rows], ['Mathematics'])

    def test_withdrawn_student_leaves_roster(self):
        self.grade(self.a, exam='15')
        Enrollment.objects.filter(student=self.d).update(status=Enrollment.Status.WITHDRAWN)
        results = compute_term_results(self.school_class, YEAR, 'T1')
        self.assertEqual(results['roster_size'], 3)
        self.assertNotIn(self.d.pk, results['students'])

    def test_previous_term_is_never_invented(self):
        self.grade(self.a, term='T2', exam='12')
        with self.assertRaises(InsufficientHistory):
            previous_term_average(self.a, self.school_class, YEAR, 'T1')
        with self.assertRaises(InsufficientHistory):
            previous_term_average(self.a, self.school_class, YEAR, 'T2')

        snapshot = build_snapshot(self.a, self.school_class, YEAR, 'T2')
        self.assertIsNone(snapshot['previous_term_average'])

        self.grade(self.a, term='T1', exam='10')
        snapshot = build_snapshot(self.a, self.school_class, YEAR, 'T2')
        self.assertEqual(snapshot['previous_term_average'], Decimal('10.00'))

    def test_snapshot_for_unenrolled_student(self):
        outsider = Student.objects.create(first_name='Out', last_name='Sider', admission_number='OUT001')
        with self.assertRaises(ValidationError):
            build_snapshot(outsider, self.school_class, YEAR, 'T1')


class AnnualResultsTest(GradebookTestMixin, TestCase):
    """Tests for the final-term annual block."""

    def grade_year(self, student, t1, t2, t3):
        for term, exam in (('T1', t1), ('T2', t2), ('T3', t3)):
            if exam is not None:
                self.grade(student, term=term, exam=exam)

    def test_annual_average_and_promotion(self):
        student = self.make_student(1)
        self.grade_year(student, '12', '14', '16')

        snapshot = build_snapshot(student, self.school_class, YEAR, 'T3')
        self.assertEqual(snapshot['annual_average'], Decimal('14.00'))
        self.assertEqual(snapshot['decision'], Bulletin.Decision.PROMOTED)
        self.assertEqual(snapshot['annual_rank'], 1)
        self.assertEqual(snapshot['previous_term_average'], Decimal('14.00'))

    def test_threshold_boundary(self):
        below = self.make_student(1)
        at = self.make_student(2)
        self.grade_year(below, '9.99', '9.99', '9.99')
        self.grade_year(at, '10', '10', '10')

        self.assertEqual(
            build_snapshot(below, self.school_class, YEAR, 'T3')['decision'],
            Bulletin.Decision.REPEAT,
        )
        self.assertEqual(
            build_snapshot(at, self.school_class, YEAR, 'T3')['decision'],
            Bulletin.Decision.PROMOTED,
        )

    def test_missing_term_withholds_decision(self):
        student = self.make_student(1)
        self.grade_year(student, '12', None, '16')

        snapshot = build_snapshot(student, self.school_class, YEAR, 'T3')
        self.assertIsNone(snapshot['annual_average'])
        self.assertIsNone(snapshot['annual_rank'])
        self.assertEqual(snapshot['decision'], '')
        self.assertIn('T2', snapshot['annual_withheld_reason'])


# ============ LIFECYCLE ============

class LifecycleTest(GradebookTestMixin, TestCase):
    """Tests for draft -> submitted -> approved -> sent."""

    def setUp(self):
        super().setUp()
        self.student = self.make_student(1)
        self.classmate = self.make_student(2)

    def test_compose_submit_approve(self):
        self.grade(self.student, cc='12', exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.teacher)

        self.assertEqual(bulletin.status, Bulletin.Status.DRAFT)
        self.assertEqual(bulletin.term_average, Decimal('13.20'))
        self.assertEqual(bulletin.total_students_in_class, 2)
        self.assertEqual(bulletin.language, 'fr')

        submit(bulletin, self.teacher)
        self.assertEqual(bulletin.status, Bulletin.Status.SUBMITTED)
        self.assertEqual(bulletin.submitted_by, self.teacher)

        approve(bulletin, self.director)
        self.assertEqual(bulletin.status, Bulletin.Status.APPROVED)
        self.assertIsNotNone(bulletin.approved_at)

    def test_approve_draft_is_rejected(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)

        with self.assertRaises(InvalidTransition):
            approve(bulletin, self.director)
        bulletin.refresh_from_db()
        self.assertEqual(bulletin.status, Bulletin.Status.DRAFT)

    def test_approve_twice_is_a_no_op(self):
        bulletin = self.approved_bulletin(self.student)
        approved_at = bulletin.approved_at
        approve(bulletin, self.director)
        bulletin.refresh_from_db()
        self.assertEqual(bulletin.status, Bulletin.Status.APPROVED)
        self.assertEqual(bulletin.approved_at, approved_at)

    def test_only_directors_approve(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        submit(bulletin, self.director)
        with self.assertRaises(PermissionDenied):
            approve(bulletin, self.teacher)

    def test_unrelated_teacher_cannot_compose(self):
        self.grade(self.student, exam='14')
        with self.assertRaises(PermissionDenied):
            compose_draft(self.student, self.school_class, YEAR, 'T1', self.other_teacher)

    def test_submit_without_grades(self):
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        self.assertEqual(bulletin.subjects, [])
        self.assertIsNone(bulletin.term_average)
        with self.assertRaises(IncompleteGrades):
            submit(bulletin, self.director)

    def test_grade_write_marks_draft_stale_and_submit_recomputes(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        self.assertFalse(bulletin.is_stale)

        self.grade(self.classmate, exam='18')
        self.grade(self.student, exam='8')
        bulletin.refresh_from_db()
        self.assertTrue(bulletin.is_stale)

        submit(bulletin, self.director)
        self.assertFalse(bulletin.is_stale)
        self.assertEqual(bulletin.term_average, Decimal('8.00'))
        self.assertEqual(bulletin.class_rank, 2)

    def test_frozen_bulletin_ignores_later_writes(self):
        bulletin = self.approved_bulletin(self.student, exam='14')
        self.grade(self.student, exam='6')

        bulletin.refresh_from_db()
        self.assertEqual(bulletin.term_average, Decimal('14.00'))
        self.assertFalse(bulletin.is_stale)

    def test_concurrent_write_during_submit(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)

        with mock.patch('gradebook.lifecycle.ledger_fingerprint', return_value='changed'):
            with self.assertRaises(ConcurrentGradeWrite):
                submit(bulletin, self.director)
        bulletin.refresh_from_db()
        self.assertEqual(bulletin.status, Bulletin.Status.DRAFT)

    def test_compose_refuses_frozen_version(self):
        self.approved_bulletin(self.student)
        with self.assertRaises(InvalidTransition):
            compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)

    def test_compose_class_bulletins_skips_frozen(self):
        self.approved_bulletin(self.student)
        self.grade(self.classmate, exam='11')

        composed, skipped = compose_class_bulletins(self.school_class, YEAR, 'T1', self.director)
        self.assertEqual([b.student for b in composed], [self.classmate])
        self.assertEqual([s for s, _ in skipped], [self.student])

    def test_supersede_creates_next_version(self):
        bulletin = self.approved_bulletin(self.student, exam='14')
        self.grade(self.student, exam='15')

        replacement = supersede(bulletin, self.director, reason='Exam re-marked')
        self.assertEqual(replacement.version, 2)
        self.assertEqual(replacement.status, Bulletin.Status.DRAFT)
        self.assertEqual(replacement.supersedes, bulletin)
        self.assertEqual(replacement.term_average, Decimal('15.00'))

        bulletin.refresh_from_db()
        self.assertEqual(bulletin.status, Bulletin.Status.APPROVED)
        self.assertEqual(bulletin.term_average, Decimal('14.00'))
        self.assertTrue(bulletin.is_superseded)
        self.assertEqual(
            Bulletin.current_for(self.student, self.school_class, YEAR, 'T1'),
            replacement,
        )

        with self.assertRaises(InvalidTransition):
            supersede(bulletin, self.director)

    def test_draft_cannot_be_superseded(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        with self.assertRaises(InvalidTransition):
            supersede(bulletin, self.director)

    def test_sign_and_mark_sent(self):
        bulletin = self.approved_bulletin(self.student)
        with self.assertRaises(MissingSignature):
            mark_sent(bulletin)

        sign(bulletin, self.director, 'Awa Ngono', 'Principal')
        self.assertTrue(bulletin.is_signed)
        self.assertEqual(bulletin.status, Bulletin.Status.APPROVED)

        first_signed_at = bulletin.signed_at
        sign(bulletin, self.director, 'Someone Else', 'Deputy')
        self.assertEqual(bulletin.signer_name, 'Awa Ngono')
        self.assertEqual(bulletin.signed_at, first_signed_at)

        mark_sent(bulletin)
        self.assertEqual(bulletin.status, Bulletin.Status.SENT)
        self.assertIsNotNone(bulletin.sent_at)

    def test_sign_requires_approved_and_signer(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        with self.assertRaises(InvalidTransition):
            sign(bulletin, self.director, 'Awa Ngono', 'Principal')

        bulletin = self.approved_bulletin(self.classmate)
        with self.assertRaises(ValidationError):
            sign(bulletin, self.director, '', 'Principal')

    def test_council_override_survives_submit(self):
        for term in ('T1', 'T2', 'T3'):
            self.grade(self.student, term=term, exam='9')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T3', self.director)
        self.assertEqual(bulletin.decision, Bulletin.Decision.REPEAT)

        with self.assertRaises(ValidationError):
            record_council_decision(bulletin, self.director, override=True)

        record_council_decision(
            bulletin, self.director,
            council_observations='Steady progress in the third term',
            override=True,
            justification='Medical absence during the first term',
        )
        self.assertEqual(bulletin.decision, Bulletin.Decision.PROMOTED_WITH_RESERVATIONS)

        submit(bulletin, self.director)
        self.assertEqual(bulletin.decision, Bulletin.Decision.PROMOTED_WITH_RESERVATIONS)
        self.assertEqual(bulletin.decision_overridden_by, self.director)
        self.assertEqual(bulletin.council_observations, 'Steady progress in the third term')

    def test_council_decision_only_on_final_term(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        with self.assertRaises(ValidationError):
            record_council_decision(bulletin, self.director, conduct_summary='Good')

    def test_non_final_term_has_no_annual_block(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        self.assertIsNone(bulletin.annual_average)
        self.assertEqual(bulletin.decision, '')
        self.assertEqual(template_for(bulletin), TERM_TEMPLATE)


@override_settings(**FAKES)
class CreateBulletinTest(GradebookTestMixin, TestCase):
    """Tests for director direct creation."""

    def setUp(self):
        super().setUp()
        self.student = Student.objects.create(first_name='New', last_name='Comer', admission_number='NEW001')

    def data(self, **overrides):
        data = {
            'student': self.student,
            'school_class': self.school_class,
            'academic_year': YEAR,
            'term': 'T1',
            'grades': [
                {'subject': self.maths, 'continuous_score': Decimal('12'), 'exam_score': Decimal('14')},
                {'subject': self.french, 'exam_score': Decimal('10'), 'comment': 'Reads well'},
            ],
        }
        data.update(overrides)
        return data

    def test_creates_submitted_bulletin_and_document(self):
        result = create_bulletin(self.data(language='en'), self.director)

        bulletin = Bulletin.objects.get(pk=result['bulletin_id'])
        self.assertEqual(bulletin.status, Bulletin.Status.SUBMITTED)
        self.assertEqual(bulletin.language, 'en')
        self.assertEqual(bulletin.term_average, Decimal('12.13'))
        self.assertEqual(bulletin.document, result['document'])
        self.assertEqual(len(FakeRenderer.rendered), 1)
        self.assertEqual(FakeRenderer.rendered[0][1], 'en')

        # The student is enrolled on the way
        self.assertTrue(Enrollment.roster(self.school_class, YEAR).filter(student=self.student).exists())

    def test_director_only(self):
        with self.assertRaises(PermissionDenied):
            create_bulletin(self.data(), self.teacher)
        self.assertFalse(Bulletin.objects.exists())

    def test_invalid_grade_rolls_back(self):
        data = self.data(grades=[
            {'subject': self.maths, 'exam_score': Decimal('14')},
            {'subject': self.french, 'exam_score': Decimal('25')},
        ])
        with self.assertRaises(ValidationError):
            create_bulletin(data, self.director)
        self.assertFalse(GradeComponent.objects.exists())
        self.assertFalse(Enrollment.objects.filter(student=self.student).exists())

    def test_renderer_outage_queues_rendering(self):
        FakeRenderer.failing = True
        with mock.patch('gradebook.tasks.render_bulletin_task.delay') as delay:
            result = create_bulletin(self.data(language='en'), self.director)

        self.assertIsNone(result['document'])
        bulletin = Bulletin.objects.get(pk=result['bulletin_id'])
        self.assertEqual(bulletin.status, Bulletin.Status.SUBMITTED)
        self.assertEqual(bulletin.document, '')
        delay.assert_called_once_with(str(bulletin.pk), 'en')

        # The queued task stores the document once the renderer is back
        FakeRenderer.failing = False
        from .tasks import render_bulletin_task
        outcome = render_bulletin_task.apply(args=[str(bulletin.pk), 'en']).get()
        self.assertTrue(outcome['success'])
        bulletin.refresh_from_db()
        self.assertEqual(bulletin.document, outcome['document'])

    def test_student_enrolled_elsewhere(self):
        other_class = SchoolClass.objects.create(name='Premiere D')
        Enrollment.objects.create(student=self.student, academic_year=YEAR, class_assigned=other_class)
        with self.assertRaises(ValidationError) as ctx:
            create_bulletin(self.data(), self.director)
        self.assertEqual(ctx.exception.code, 'enrolled_elsewhere')


class RenderingTest(GradebookTestMixin, TestCase):
    """Tests for document layout helpers."""

    def test_technical_class_rows_are_grouped_by_section(self):
        workshop_class = SchoolClass.objects.create(name='1ere F3', track=SchoolClass.Track.TECHNICAL)
        bulletin = Bulletin(school_class=workshop_class, term='T3', subjects=[
            {'subject': 'Electrotechnics', 'section': 'professional'},
            {'subject': 'French', 'section': 'general'},
            {'subject': 'Sport', 'section': 'other'},
        ])
        groups = group_rows(bulletin)
        self.assertEqual([section for section, _ in groups], ['general', 'professional', 'other'])
        self.assertEqual(template_for(bulletin), ANNUAL_TEMPLATE)

    def test_general_class_has_one_group(self):
        bulletin = Bulletin(school_class=self.school_class, term='T1', subjects=[
            {'subject': 'Electrotechnics', 'section': 'professional'},
            {'subject': 'French', 'section': 'general'},
        ])
        groups = group_rows(bulletin)
        self.assertEqual(len(groups), 1)
        self.assertEqual(len(groups[0][1]), 2)

    def test_render_html_uses_requested_language(self):
        from .rendering import WeasyPrintRenderer

        student = self.make_student(1)
        self.grade(student, exam='14')
        bulletin = compose_draft(student, self.school_class, YEAR, 'T1', self.director)

        html = WeasyPrintRenderer().render_html(bulletin, language='en')
        self.assertIn('Mathematics', html)
        self.assertIn(student.full_name, html)

    def test_render_html_prints_birth_details(self):
        from .rendering import WeasyPrintRenderer

        student = self.make_student(1)
        student.date_of_birth = datetime.date(2008, 3, 14)
        student.place_of_birth = 'Douala'
        student.save()
        self.grade(student, exam='14')
        bulletin = compose_draft(student, self.school_class, YEAR, 'T1', self.director)

        html = WeasyPrintRenderer().render_html(bulletin, language='fr')
        self.assertIn('Né(e) le 14/03/2008 à Douala', html)


class ReadBulletinDataTest(GradebookTestMixin, TestCase):
    """Tests for the read side."""

    def test_no_data_is_reported_not_invented(self):
        student = self.make_student(1)
        data = read_bulletin_data(student, self.school_class, YEAR, 'T1')
        self.assertFalse(data.has_data)
        self.assertIsNone(data.term_average)
        self.assertIsNone(data.class_rank)
        self.assertEqual(data.subjects, [])

    def test_live_figures_and_bulletin_state(self):
        student = self.make_student(1)
        self.grade(student, exam='14')
        compose_draft(student, self.school_class, YEAR, 'T1', self.director)

        data = read_bulletin_data(student, self.school_class, YEAR, 'T1').as_dict()
        self.assertTrue(data['has_data'])
        self.assertEqual(data['term_average'], Decimal('14.00'))
        self.assertEqual(data['class_rank'], 1)
        self.assertEqual(data['bulletin_status'], Bulletin.Status.DRAFT)
        self.assertIsNone(data['annual'])


# ============ BULK ============

@override_settings(**FAKES)
class BulkSignTest(GradebookTestMixin, TestCase):
    """Tests for bulk signing."""

    def setUp(self):
        super().setUp()
        self.students = [self.make_student(n) for n in range(1, 6)]
        for student in self.students:
            self.grade(student, exam='12')
        self.bulletins = []
        for index, student in enumerate(self.students):
            bulletin = compose_draft(student, self.school_class, YEAR, 'T1', self.director)
            submit(bulletin, self.director)
            if index < 3:
                approve(bulletin, self.director)
            self.bulletins.append(bulletin)

    def test_failures_are_isolated(self):
        ids = [str(b.pk) for b in self.bulletins]
        result = run_bulk_action(ids, 'sign', self.director, signer_name='Awa Ngono', signer_role='Principal')

        self.assertEqual(result['state'], BulkOperation.State.COMPLETED)
        self.assertEqual((result['succeeded'], result['failed'], result['skipped']), (3, 2, 0))
        self.assertEqual([d['id'] for d in result['details']], ids)
        self.assertEqual(
            [d['status'] for d in result['details']],
            ['succeeded', 'succeeded', 'succeeded', 'failed', 'failed'],
        )
        self.assertEqual(result['details'][3]['error'], 'invalid_transition')

        for bulletin in self.bulletins[:3]:
            bulletin.refresh_from_db()
            self.assertTrue(bulletin.is_signed)
        for bulletin in self.bulletins[3:]:
            bulletin.refresh_from_db()
            self.assertFalse(bulletin.is_signed)
            self.assertEqual(bulletin.status, Bulletin.Status.SUBMITTED)

        batch = BulkOperation.objects.get(pk=result['batch_id'])
        self.assertEqual(batch.total, 5)
        self.assertIsNotNone(batch.finished_at)

    def test_unknown_and_repeated_ids(self):
        first = str(self.bulletins[0].pk)
        result = run_bulk_action(
            [first, first, 'not-a-uuid', '00000000-0000-0000-0000-000000000000'],
            'sign', self.director, signer_name='Awa Ngono', signer_role='Principal',
        )
        self.assertEqual(len(result['details']), 3)
        self.assertEqual(result['succeeded'], 1)
        self.assertEqual([d.get('error') for d in result['details'][1:]], ['not_found', 'not_found'])

    def test_resigning_is_a_no_op_success(self):
        ids = [str(self.bulletins[0].pk)]
        run_bulk_action(ids, 'sign', self.director, signer_name='Awa Ngono', signer_role='Principal')
        result = run_bulk_action(ids, 'sign', self.director, signer_name='Other', signer_role='Deputy')
        self.assertEqual(result['succeeded'], 1)
        self.bulletins[0].refresh_from_db()
        self.assertEqual(self.bulletins[0].signer_name, 'Awa Ngono')

    def test_teacher_cannot_run_bulk(self):
        with self.assertRaises(PermissionDenied):
            run_bulk_action([str(self.bulletins[0].pk)], 'sign', self.teacher,
                            signer_name='X', signer_role='Y')
        self.assertFalse(BulkOperation.objects.exists())

    def test_unknown_action(self):
        with self.assertRaises(ValidationError):
            run_bulk_action([str(self.bulletins[0].pk)], 'delete', self.director)

    @override_settings(GRADEBOOK_BULK_MAX_ITEMS=2)
    def test_batch_too_large(self):
        with self.assertRaises(ValidationError) as ctx:
            run_bulk_action([str(b.pk) for b in self.bulletins], 'sign', self.director,
                            signer_name='Awa Ngono', signer_role='Principal')
        self.assertEqual(ctx.exception.code, 'batch_too_large')

    def test_deadline_leaves_rest_untouched(self):
        ids = [str(b.pk) for b in self.bulletins[:3]]
        with mock.patch('gradebook.bulk.time') as fake_time:
            # deadline = 0 + 1; first item at 0.5, the rest after the deadline
            fake_time.monotonic.side_effect = itertools.chain([0, 0.5], itertools.repeat(5))
            result = run_bulk_action(ids, 'sign', self.director, timeout=1,
                                     signer_name='Awa Ngono', signer_role='Principal')

        self.assertEqual(result['succeeded'], 1)
        self.assertEqual([d.get('error') for d in result['details'][1:]], ['not_processed', 'not_processed'])
        self.bulletins[1].refresh_from_db()
        self.assertFalse(self.bulletins[1].is_signed)

    def test_time_limit_interrupts_batch(self):
        ids = [str(b.pk) for b in self.bulletins[:3]]

        def sign_until_time_limit(bulletin, *args, **kwargs):
            if str(bulletin.pk) == ids[1]:
                raise SoftTimeLimitExceeded()
            return sign(bulletin, *args, **kwargs)

        with mock.patch('gradebook.lifecycle.sign', side_effect=sign_until_time_limit) as patched:
            result = run_bulk_action(ids, 'sign', self.director,
                                     signer_name='Awa Ngono', signer_role='Principal')

        # Nothing runs after the limit is hit
        self.assertEqual(patched.call_count, 2)
        self.assertEqual(result['state'], BulkOperation.State.INTERRUPTED)
        self.assertEqual(result['succeeded'], 1)
        self.assertEqual(result['failed'], 2)
        self.assertEqual([d.get('error') for d in result['details'][1:]], ['not_processed', 'not_processed'])
        self.bulletins[0].refresh_from_db()
        self.assertTrue(self.bulletins[0].is_signed)
        self.bulletins[2].refresh_from_db()
        self.assertFalse(self.bulletins[2].is_signed)

        batch = BulkOperation.objects.get(pk=result['batch_id'])
        self.assertEqual(batch.state, BulkOperation.State.INTERRUPTED)
        self.assertIsNotNone(batch.finished_at)


@override_settings(**FAKES)
class BulkSendTest(GradebookTestMixin, TestCase):
    """Tests for bulk sending."""

    def setUp(self):
        super().setUp()
        self.first = self.approved_bulletin(self.make_student(1))
        self.second = self.approved_bulletin(self.make_student(2))

    def test_send_signs_renders_dispatches_and_marks_sent(self):
        result = run_bulk_action(
            [str(self.first.pk)], 'send', self.director,
            signer_name='Awa Ngono', signer_role='Principal', channels=['email'],
        )
        self.assertEqual(result['succeeded'], 1)

        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Bulletin.Status.SENT)
        self.assertTrue(self.first.is_signed)
        self.assertTrue(self.first.document)
        self.assertEqual(FakeDispatcher.calls, [(self.first.pk, ['email'])])

        log = BulletinDistributionLog.objects.get(bulletin=self.first)
        self.assertEqual(log.status, BulletinDistributionLog.Status.DELIVERED)

    def test_already_sent_is_skipped(self):
        ids = [str(self.first.pk)]
        options = dict(signer_name='Awa Ngono', signer_role='Principal')
        run_bulk_action(ids, 'send', self.director, **options)
        result = run_bulk_action(ids, 'send', self.director, **options)

        self.assertEqual(result['skipped'], 1)
        self.assertEqual(result['details'][0]['error'], 'already_sent')
        self.assertEqual(len(FakeDispatcher.calls), 1)

    def test_unsigned_without_signer(self):
        result = run_bulk_action([str(self.first.pk)], 'send', self.director)
        self.assertEqual(result['details'][0]['error'], 'missing_signature')
        self.assertEqual(FakeDispatcher.calls, [])

    def test_dispatch_failure_leaves_bulletin_approved(self):
        FakeDispatcher.failing = {self.first.student.admission_number}
        result = run_bulk_action(
            [str(self.first.pk), str(self.second.pk)], 'send', self.director,
            signer_name='Awa Ngono', signer_role='Principal',
        )
        self.assertEqual((result['succeeded'], result['failed']), (1, 1))
        self.assertEqual(result['details'][0]['error'], 'downstream_unavailable')

        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Bulletin.Status.APPROVED)
        self.assertTrue(self.first.is_signed)
        log = BulletinDistributionLog.objects.get(bulletin=self.first)
        self.assertEqual(log.status, BulletinDistributionLog.Status.FAILED)

        self.second.refresh_from_db()
        self.assertEqual(self.second.status, Bulletin.Status.SENT)

        # A later batch can retry the failed one
        FakeDispatcher.failing = set()
        result = run_bulk_action([str(self.first.pk)], 'send', self.director)
        self.assertEqual(result['succeeded'], 1)

    def test_submitted_bulletin_cannot_be_sent(self):
        student = self.make_student(3)
        self.grade(student, exam='11')
        bulletin = compose_draft(student, self.school_class, YEAR, 'T1', self.director)
        submit(bulletin, self.director)

        result = run_bulk_action([str(bulletin.pk)], 'send', self.director,
                                 signer_name='Awa Ngono', signer_role='Principal')
        self.assertEqual(result['details'][0]['error'], 'invalid_transition')


@override_settings(**FAKES)
class BulletinProtectionTest(GradebookTestMixin, TestCase):
    """Tests for keeping issued bulletins and their history."""

    def setUp(self):
        super().setUp()
        self.admin_user = User.objects.create_superuser(email='root@school.cm', password='pass')

    def test_frozen_bulletin_cannot_be_deleted(self):
        bulletin = self.approved_bulletin(self.make_student(1))

        with self.assertRaises(InvalidTransition):
            bulletin.delete()
        with self.assertRaises(InvalidTransition), transaction.atomic():
            Bulletin.objects.filter(pk=bulletin.pk).delete()
        self.assertTrue(Bulletin.objects.filter(pk=bulletin.pk).exists())

    def test_draft_can_be_deleted(self):
        student = self.make_student(1)
        self.grade(student, exam='12')
        bulletin = compose_draft(student, self.school_class, YEAR, 'T1', self.director)

        bulletin.delete()
        self.assertFalse(Bulletin.objects.exists())

    def test_sent_bulletin_keeps_distribution_log(self):
        bulletin = self.approved_bulletin(self.make_student(1))
        run_bulk_action([str(bulletin.pk)], 'send', self.director,
                        signer_name='Awa Ngono', signer_role='Principal')
        bulletin.refresh_from_db()

        with self.assertRaises(InvalidTransition):
            bulletin.delete()
        with self.assertRaises(ProtectedError):
            Bulletin.objects.filter(pk=bulletin.pk).delete()
        self.assertTrue(BulletinDistributionLog.objects.filter(bulletin=bulletin).exists())

    def test_admin_offers_delete_for_drafts_only(self):
        student = self.make_student(1)
        self.grade(student, exam='12')
        draft = compose_draft(student, self.school_class, YEAR, 'T1', self.director)
        approved = self.approved_bulletin(self.make_student(2))
        self.client.force_login(self.admin_user)

        response = self.client.get(reverse('admin:gradebook_bulletin_delete', args=[approved.pk]))
        self.assertEqual(response.status_code, 403)
        response = self.client.get(reverse('admin:gradebook_bulletin_delete', args=[draft.pk]))
        self.assertEqual(response.status_code, 200)

    def test_admin_cannot_edit_grade_scores(self):
        component = self.grade(self.make_student(1), cc='12', exam='14')
        self.client.force_login(self.admin_user)

        response = self.client.post(
            reverse('admin:gradebook_gradecomponent_change', args=[component.pk]),
            {'continuous_score': '20', 'exam_score': '20', 'coefficient': '9', '_save': 'Save'},
        )
        self.assertEqual(response.status_code, 302)
        component.refresh_from_db()
        self.assertEqual(component.continuous_score, Decimal('12.00'))
        self.assertEqual(component.exam_score, Decimal('14.00'))
        self.assertEqual(component.coefficient, Decimal('4.00'))

        response = self.client.get(reverse('admin:gradebook_gradecomponent_add'))
        self.assertEqual(response.status_code, 403)


@override_settings(**FAKES)
class VerificationTest(GradebookTestMixin, TestCase):
    """Tests for verification codes on sent bulletins."""

    def send(self, bulletin):
        run_bulk_action([str(bulletin.pk)], 'send', self.director,
                        signer_name='Awa Ngono', signer_role='Principal')
        bulletin.refresh_from_db()
        return bulletin

    def test_codes_are_issued_when_sent(self):
        bulletin = self.send(self.approved_bulletin(self.make_student(1)))

        self.assertEqual(bulletin.status, Bulletin.Status.SENT)
        self.assertEqual(len(bulletin.verification_code), 32)
        self.assertEqual(len(bulletin.short_code), 8)
        self.assertTrue(set(bulletin.short_code) <= set(SHORT_CODE_ALPHABET))
        self.assertEqual(len(FakeRenderer.rendered), 1)

        # Codes never change once issued
        self.assertFalse(issue_verification_code(bulletin))

    def test_stored_document_is_rendered_again_with_the_code(self):
        bulletin = self.approved_bulletin(self.make_student(1))
        Bulletin.objects.filter(pk=bulletin.pk).update(document='bulletins/old.pdf')

        bulletin = self.send(bulletin)
        self.assertEqual(len(FakeRenderer.rendered), 1)
        self.assertNotEqual(bulletin.document, 'bulletins/old.pdf')

    def test_mark_sent_issues_codes(self):
        bulletin = self.approved_bulletin(self.make_student(1))
        sign(bulletin, self.director, 'Awa Ngono', 'Principal')
        mark_sent(bulletin)

        self.assertEqual(bulletin.status, Bulletin.Status.SENT)
        self.assertTrue(bulletin.short_code)

    def test_verify_by_long_and_short_code(self):
        student = self.make_student(1)
        bulletin = self.send(self.approved_bulletin(student))

        summary = verify_bulletin(bulletin.verification_code, ip_address='10.0.0.1', user_agent='Scanner')
        self.assertEqual(summary['student']['name'], student.full_name)
        self.assertEqual(summary['academic']['term_average'], bulletin.term_average)
        self.assertEqual(summary['verification']['verification_count'], 1)
        self.assertFalse(summary['verification']['superseded'])

        summary = verify_bulletin(bulletin.short_code.lower(), ip_address='10.0.0.1')
        self.assertEqual(summary['verification']['verification_count'], 2)

        logs = BulletinVerificationLog.objects.order_by('created_at', 'pk')
        self.assertEqual(
            [(log.method, log.result) for log in logs],
            [('qr_code', 'success'), ('manual_entry', 'success')],
        )
        self.assertEqual(logs[0].user_agent, 'Scanner')
        bulletin.refresh_from_db()
        self.assertIsNotNone(bulletin.last_verified_at)

    def test_unknown_code_is_logged(self):
        with self.assertRaises(InvalidVerificationCode):
            verify_bulletin('NOPE2345', ip_address='10.0.0.1')
        log = BulletinVerificationLog.objects.get()
        self.assertEqual(log.result, BulletinVerificationLog.Result.INVALID_CODE)
        self.assertIsNone(log.bulletin)

    def test_code_of_unsent_bulletin_does_not_verify(self):
        FakeDispatcher.failing = {'ADM001'}
        bulletin = self.send(self.approved_bulletin(self.make_student(1)))
        self.assertEqual(bulletin.status, Bulletin.Status.APPROVED)
        self.assertTrue(bulletin.short_code)

        with self.assertRaises(InvalidVerificationCode):
            verify_bulletin(bulletin.short_code)

    def test_school_can_turn_verification_off(self):
        bulletin = self.send(self.approved_bulletin(self.make_student(1)))
        school = SchoolSettings.load()
        school.public_verification_enabled = False
        school.save()

        with self.assertRaises(VerificationDisabled):
            verify_bulletin(bulletin.short_code, ip_address='10.0.0.1')
        log = BulletinVerificationLog.objects.get()
        self.assertEqual(log.result, BulletinVerificationLog.Result.ACCESS_DENIED)
        self.assertEqual(log.bulletin, bulletin)
        bulletin.refresh_from_db()
        self.assertEqual(bulletin.verification_count, 0)

    @override_settings(GRADEBOOK_VERIFY_MAX_ATTEMPTS=2)
    def test_attempts_are_limited_per_address(self):
        for _ in range(2):
            with self.assertRaises(InvalidVerificationCode):
                verify_bulletin('NOPE2345', ip_address='10.0.0.1')
        with self.assertRaises(TooManyAttempts):
            verify_bulletin('NOPE2345', ip_address='10.0.0.1')
        with self.assertRaises(InvalidVerificationCode):
            verify_bulletin('NOPE2345', ip_address='10.0.0.2')
        self.assertEqual(BulletinVerificationLog.objects.count(), 3)

    def test_superseded_bulletin_says_so(self):
        bulletin = self.send(self.approved_bulletin(self.make_student(1)))
        supersede(bulletin, self.director, 'Wrong exam score')

        summary = verify_bulletin(bulletin.short_code)
        self.assertTrue(summary['verification']['superseded'])

    def test_document_prints_qr_and_short_code(self):
        from .rendering import WeasyPrintRenderer

        bulletin = self.send(self.approved_bulletin(self.make_student(1)))
        html = WeasyPrintRenderer().render_html(bulletin, language='en')
        self.assertIn(bulletin.short_code, html)
        self.assertIn('data:image/png;base64,', html)


# ============ VIEWS ============

@override_settings(**FAKES)
class GradebookViewsTest(GradebookTestMixin, TestCase):
    """Tests for the JSON endpoints."""

    def setUp(self):
        super().setUp()
        self.student = self.make_student(1)
        self.client.force_login(self.director)

    def post(self, name, payload, **kwargs):
        return self.client.post(
            reverse(name, kwargs=kwargs or None),
            data=json.dumps(payload),
            content_type='application/json',
        )

    def grade_payload(self, **overrides):
        payload = {
            'student_id': self.student.pk,
            'class_id': self.school_class.pk,
            'academic_year': YEAR,
            'term': 'T1',
            'subject_id': self.maths.pk,
            'continuous_score': 12,
            'exam_score': 14,
        }
        payload.update(overrides)
        return payload

    def test_login_required(self):
        self.client.logout()
        response = self.post('gradebook:grade_entry', self.grade_payload())
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['error'], 'not_authenticated')

    def test_method_not_allowed(self):
        response = self.client.get(reverse('gradebook:grade_entry'))
        self.assertEqual(response.status_code, 405)

    def test_grade_entry(self):
        response = self.post('gradebook:grade_entry', self.grade_payload())
        self.assertEqual(response.status_code, 201)
        component = GradeComponent.objects.get()
        self.assertEqual(component.exam_score, Decimal('14.00'))
        self.assertEqual(response.json()['grade']['revision'], 1)

    def test_grade_shorthand(self):
        response = self.post('gradebook:grade_entry', self.grade_payload(
            continuous_score=None, exam_score=None, grade=15.5,
        ))
        self.assertEqual(response.status_code, 201)
        self.assertEqual(GradeComponent.objects.get().exam_score, Decimal('15.50'))

    def test_grade_entry_clear(self):
        self.post('gradebook:grade_entry', self.grade_payload())
        response = self.post('gradebook:grade_entry', self.grade_payload(
            continuous_score=None, exam_score=None, clear=['continuous_score'],
        ))
        self.assertEqual(response.status_code, 201)
        component = GradeComponent.objects.get()
        self.assertIsNone(component.continuous_score)
        self.assertEqual(component.exam_score, Decimal('14.00'))

    def test_grade_entry_unknown_clear(self):
        response = self.post('gradebook:grade_entry', self.grade_payload(clear=['coefficient']))
        self.assertEqual(response.status_code, 400)
        self.assertIn('clear', response.json()['fields'])

    def test_grade_entry_out_of_range(self):
        response = self.post('gradebook:grade_entry', self.grade_payload(exam_score=21))
        self.assertEqual(response.status_code, 400)
        self.assertIn('exam_score', response.json()['fields'])
        self.assertFalse(GradeComponent.objects.exists())

    def test_grade_entry_malformed_body(self):
        response = self.client.post(
            reverse('gradebook:grade_entry'), data='{not json', content_type='application/json'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'malformed_request')

    def test_grade_entry_permission_denied(self):
        self.client.force_login(self.other_teacher)
        response = self.post('gradebook:grade_entry', self.grade_payload())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['error'], 'permission_denied')

    def test_bulletin_data(self):
        url = reverse('gradebook:bulletin_data')
        query = {'student_id': self.student.pk, 'class_id': self.school_class.pk,
                 'academic_year': YEAR, 'term': 'T1'}

        response = self.client.get(url, query)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['has_data'])

        self.grade(self.student, exam='14')
        data = self.client.get(url, query).json()
        self.assertTrue(data['has_data'])
        self.assertEqual(data['term_average'], '14.00')
        self.assertEqual(data['class_rank'], 1)

    def test_bulletin_data_bad_query(self):
        response = self.client.get(reverse('gradebook:bulletin_data'), {'term': 'T9'})
        self.assertEqual(response.status_code, 400)

    def test_bulletin_create(self):
        newcomer = Student.objects.create(first_name='New', last_name='Comer', admission_number='NEW001')
        response = self.post('gradebook:bulletin_create', {
            'student': {'admission_number': 'NEW001'},
            'academic': {'class_id': self.school_class.pk, 'academic_year': YEAR, 'term': 'T1'},
            'grades': {
                'general': [{'subject_id': self.french.pk, 'grade': 11}],
                'professional': [{'subject_id': self.maths.pk, 'continuous_score': 12, 'exam_score': 14}],
            },
        })
        self.assertEqual(response.status_code, 201)
        bulletin = Bulletin.objects.get(pk=response.json()['bulletin_id'])
        self.assertEqual(bulletin.student, newcomer)
        self.assertEqual(bulletin.status, Bulletin.Status.SUBMITTED)

    def test_bulletin_create_rejects_foreign_subject(self):
        other_class = SchoolClass.objects.create(name='Premiere D')
        biology = Subject.objects.create(school_class=other_class, name='Biology')
        response = self.post('gradebook:bulletin_create', {
            'student': {'id': self.student.pk},
            'academic': {'class_id': self.school_class.pk, 'academic_year': YEAR, 'term': 'T1'},
            'grades': [{'subject_id': biology.pk, 'exam_score': 12}],
        })
        self.assertEqual(response.status_code, 400)
        self.assertFalse(Bulletin.objects.exists())

    def test_bulletin_create_is_director_only(self):
        self.client.force_login(self.teacher)
        response = self.post('gradebook:bulletin_create', {})
        self.assertEqual(response.status_code, 403)

    def test_bulletin_actions(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)

        response = self.post('gradebook:bulletin_action', {}, pk=bulletin.pk, action='approve')
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'invalid_transition')
        self.assertEqual(response.json()['current_status'], 'draft')

        response = self.post('gradebook:bulletin_action', {}, pk=bulletin.pk, action='submit')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['bulletin']['status'], 'submitted')

        self.post('gradebook:bulletin_action', {}, pk=bulletin.pk, action='approve')
        response = self.post('gradebook:bulletin_action', {'signer_role': 'Principal'},
                             pk=bulletin.pk, action='sign')
        self.assertEqual(response.status_code, 400)

        response = self.post('gradebook:bulletin_action',
                             {'signer_name': 'Awa Ngono', 'signer_role': 'Principal'},
                             pk=bulletin.pk, action='sign')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['bulletin']['signature']['name'], 'Awa Ngono')

        response = self.post('gradebook:bulletin_action', {'reason': 'Typo'}, pk=bulletin.pk, action='supersede')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['bulletin']['version'], 2)

    def test_unknown_bulletin_action(self):
        self.grade(self.student, exam='14')
        bulletin = compose_draft(self.student, self.school_class, YEAR, 'T1', self.director)
        response = self.post('gradebook:bulletin_action', {}, pk=bulletin.pk, action='publish')
        self.assertEqual(response.status_code, 404)

    def test_bulk_sign(self):
        bulletin = self.approved_bulletin(self.student)
        response = self.post('gradebook:bulk_action', {
            'bulletin_ids': [str(bulletin.pk)],
            'action': 'sign',
            'signer_name': 'Awa Ngono',
            'signer_role': 'Principal',
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['succeeded'], 1)

        batch_url = reverse('gradebook:batch_status', kwargs={'pk': response.json()['batch_id']})
        self.assertEqual(self.client.get(batch_url).json()['state'], 'completed')

    def test_bulk_sign_needs_signer(self):
        response = self.post('gradebook:bulk_action', {'bulletin_ids': ['x'], 'action': 'sign'})
        self.assertEqual(response.status_code, 400)

    def test_bulk_async(self):
        bulletin = self.approved_bulletin(self.student)
        with mock.patch('gradebook.tasks.run_bulk_action_task.delay') as delay:
            response = self.post('gradebook:bulk_action', {
                'bulletin_ids': [str(bulletin.pk)],
                'action': 'send',
                'run_async': True,
            })
        self.assertEqual(response.status_code, 202)
        batch = BulkOperation.objects.get(pk=response.json()['batch_id'])
        self.assertEqual(batch.state, BulkOperation.State.RUNNING)
        self.assertEqual(batch.total, 1)
        delay.assert_called_once()

    def sent_bulletin(self):
        bulletin = self.approved_bulletin(self.student)
        run_bulk_action([str(bulletin.pk)], 'send', self.director,
                        signer_name='Awa Ngono', signer_role='Principal')
        bulletin.refresh_from_db()
        return bulletin

    def test_bulletin_verify_needs_no_login(self):
        bulletin = self.sent_bulletin()
        self.client.logout()

        response = self.client.get(reverse('gradebook:bulletin_verify'), {'code': bulletin.short_code})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['verified'])
        self.assertEqual(body['bulletin']['verification']['short_code'], bulletin.short_code)
        self.assertEqual(body['bulletin']['student']['admission_number'], 'ADM001')

        response = self.post('gradebook:bulletin_verify', {'code': bulletin.verification_code})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['bulletin']['verification']['verification_count'], 2)

    def test_bulletin_verify_errors(self):
        self.client.logout()
        url = reverse('gradebook:bulletin_verify')

        response = self.client.get(url)
        self.assertEqual(response.status_code, 400)
        self.assertIn('code', response.json()['fields'])

        response = self.client.get(url, {'code': 'NOPE2345'})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error'], 'invalid_code')

    @override_settings(GRADEBOOK_VERIFY_MAX_ATTEMPTS=1)
    def test_bulletin_verify_rate_limit(self):
        url = reverse('gradebook:bulletin_verify')
        self.assertEqual(self.client.get(url, {'code': 'NOPE2345'}).status_code, 404)
        response = self.client.get(url, {'code': 'NOPE2345'})
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()['error'], 'rate_limited')


@override_settings(**FAKES)
class GradebookTasksTest(GradebookTestMixin, TestCase):
    """Tests for the Celery tasks and the management command, run in-process."""

    def test_run_bulk_action_task_fills_in_the_batch(self):
        from .tasks import run_bulk_action_task

        student = self.make_student(1)
        bulletin = self.approved_bulletin(student)
        batch = BulkOperation.objects.create(action='sign', requested_by=self.director, total=1)

        result = run_bulk_action_task.apply(
            args=[str(batch.pk), [str(bulletin.pk)], 'sign', self.director.pk],
            kwargs={'signer_name': 'Awa Ngono', 'signer_role': 'Principal'},
        ).get()

        self.assertEqual(result['succeeded'], 1)
        batch.refresh_from_db()
        self.assertEqual(batch.state, BulkOperation.State.COMPLETED)
        bulletin.refresh_from_db()
        self.assertTrue(bulletin.is_signed)

    def test_run_bulk_action_task_missing_batch(self):
        from .tasks import run_bulk_action_task

        result = run_bulk_action_task.apply(
            args=['00000000-0000-0000-0000-000000000000', [], 'sign', self.director.pk]
        ).get()
        self.assertFalse(result['success'])

    def test_render_bulletin_task_stores_document(self):
        from .tasks import render_bulletin_task

        student = self.make_student(1)
        bulletin = self.approved_bulletin(student)

        result = render_bulletin_task.apply(args=[str(bulletin.pk)], kwargs={'language': 'en'}).get()

        self.assertTrue(result['success'])
        bulletin.refresh_from_db()
        self.assertEqual(bulletin.document, f'bulletins/test/{bulletin.pk}.pdf')
        self.assertEqual(FakeRenderer.rendered, [(bulletin.pk, 'en', TERM_TEMPLATE)])

    def test_compose_class_bulletins_task(self):
        from .tasks import compose_class_bulletins_task

        first, second = self.make_student(1), self.make_student(2)
        self.grade(first, exam='12')
        self.grade(second, exam='15')
        frozen = compose_draft(second, self.school_class, YEAR, 'T1', self.director)
        submit(frozen, self.director)

        result = compose_class_bulletins_task.apply(
            args=[self.school_class.pk, YEAR, 'T1', self.director.pk]
        ).get()

        self.assertTrue(result['success'])
        self.assertEqual(len(result['composed']), 1)
        self.assertEqual([s['student_id'] for s in result['skipped']], [second.pk])

    def test_compose_bulletins_command(self):
        from io import StringIO
        from django.core.management import call_command, CommandError

        student = self.make_student(1)
        self.grade(student, exam='13')
        out = StringIO()
        call_command(
            'compose_bulletins',
            '--class', str(self.school_class.pk),
            '--year', YEAR,
            '--term', 'T1',
            '--actor', self.director.email,
            stdout=out,
        )
        self.assertIn('Composed 1 bulletins', out.getvalue())
        self.assertEqual(Bulletin.objects.filter(student=student, status='draft').count(), 1)

        with self.assertRaises(CommandError):
            call_command(
                'compose_bulletins', '--class', str(self.school_class.pk), '--year', YEAR,
                '--term', 'T1', '--actor', 'nobody@school.cm',
            )
