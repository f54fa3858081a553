from django.db import IntegrityError
from django.test import TestCase

from academics.models import SchoolClass
from .models import Student, Enrollment


class StudentModelTests(TestCase):
    """Tests for Student model."""

    def setUp(self):
        self.student = Student.objects.create(
            first_name='Marie',
            other_names='Claire',
            last_name='Ekane',
            admission_number='ADM001',
            guardian_phone='677000001',
        )

    def test_full_name(self):
        self.assertEqual(self.student.full_name, 'Marie Claire Ekane')

    def test_str(self):
        self.assertEqual(str(self.student), 'Marie Claire Ekane (ADM001)')

    def test_chat_number_falls_back_to_phone(self):
        self.assertEqual(self.student.chat_number, '677000001')
        self.student.guardian_chat_number = '699000002'
        self.assertEqual(self.student.chat_number, '699000002')

    def test_admission_number_unique(self):
        with self.assertRaises(IntegrityError):
            Student.objects.create(first_name='Paul', last_name='Biya', admission_number='ADM001')


class EnrollmentModelTests(TestCase):
    """Tests for Enrollment and the class roster."""

    def setUp(self):
        self.class_a = SchoolClass.objects.create(name='Seconde A')
        self.class_b = SchoolClass.objects.create(name='Premiere A')
        self.student = Student.objects.create(first_name='Marie', last_name='Ekane', admission_number='ADM001')

    def test_enrollment_sets_current_class(self):
        Enrollment.objects.create(student=self.student, academic_year='2024-2025', class_assigned=self.class_a)
        self.student.refresh_from_db()
        self.assertEqual(self.student.current_class, self.class_a)

        Enrollment.objects.create(student=self.student, academic_year='2025-2026', class_assigned=self.class_b)
        self.student.refresh_from_db()
        self.assertEqual(self.student.current_class, self.class_b)

    def test_one_enrollment_per_year(self):
        Enrollment.objects.create(student=self.student, academic_year='2024-2025', class_assigned=self.class_a)
        with self.assertRaises(IntegrityError):
            Enrollment.objects.create(student=self.student, academic_year='2024-2025', class_assigned=self.class_b)

    def test_roster_is_active_enrollments_of_the_year(self):
        other = Student.objects.create(first_name='Paul', last_name='Nana', admission_number='ADM002')
        gone = Student.objects.create(first_name='Luc', last_name='Tchana', admission_number='ADM003')
        Enrollment.objects.create(student=self.student, academic_year='2024-2025', class_assigned=self.class_a)
        Enrollment.objects.create(student=other, academic_year='2023-2024', class_assigned=self.class_a)
        Enrollment.objects.create(
            student=gone, academic_year='2024-2025', class_assigned=self.class_a,
            status=Enrollment.Status.WITHDRAWN,
        )

        roster = Enrollment.roster(self.class_a, '2024-2025')
        self.assertEqual([e.student for e in roster], [self.student])

    def test_get_enrollment(self):
        enrollment = Enrollment.objects.create(
            student=self.student, academic_year='2024-2025', class_assigned=self.class_a
        )
        self.assertEqual(self.student.get_enrollment('2024-2025'), enrollment)
        self.assertIsNone(self.student.get_enrollment('2025-2026'))
