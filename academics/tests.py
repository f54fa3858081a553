from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import IntegrityError
from django.test import TestCase

from core.choices import SubjectCategory, BulletinSection
from .models import SchoolClass, Subject, SubjectCategoryRule

User = get_user_model()


class AcademicsTestCase(TestCase):
    """Base test case with a general and a technical class."""

    def setUp(self):
        self.general_class = SchoolClass.objects.create(name='Terminale C', level='Terminale')
        self.technical_class = SchoolClass.objects.create(
            name='1ere F3',
            level='Premiere',
            track=SchoolClass.Track.TECHNICAL,
        )
        SubjectCategoryRule.objects.create(
            code='ELEC',
            category=SubjectCategory.PROFESSIONAL,
            bulletin_section=BulletinSection.PROFESSIONAL,
        )
        SubjectCategoryRule.objects.create(code='PHY', category=SubjectCategory.SCIENTIFIC)


class SchoolClassModelTests(AcademicsTestCase):

    def test_track(self):
        self.assertFalse(self.general_class.is_technical)
        self.assertTrue(self.technical_class.is_technical)

    def test_str(self):
        self.assertEqual(str(self.general_class), 'Terminale C')


class SubjectCategoryTests(AcademicsTestCase):
    """Tests for category lookup on save."""

    def test_category_from_rule(self):
        subject = Subject.objects.create(school_class=self.technical_class, name='Electrotechnics', code='elec')
        self.assertEqual(subject.category, SubjectCategory.PROFESSIONAL)
        self.assertEqual(subject.section, BulletinSection.PROFESSIONAL)

    def test_category_without_section_falls_back(self):
        subject = Subject.objects.create(school_class=self.general_class, name='Physics', code='PHY')
        self.assertEqual(subject.category, SubjectCategory.SCIENTIFIC)
        self.assertEqual(subject.bulletin_section, '')
        self.assertEqual(subject.section, BulletinSection.GENERAL)

    def test_unknown_code_defaults_to_general(self):
        subject = Subject.objects.create(school_class=self.general_class, name='Philosophy', code='PHILO')
        self.assertEqual(subject.category, SubjectCategory.GENERAL)

    def test_explicit_category_is_kept(self):
        subject = Subject.objects.create(
            school_class=self.general_class,
            name='Sport',
            code='ELEC',
            category=SubjectCategory.OTHER,
        )
        self.assertEqual(subject.category, SubjectCategory.OTHER)
        self.assertEqual(subject.section, BulletinSection.PROFESSIONAL)

    def test_other_category_section(self):
        subject = Subject(school_class=self.general_class, name='Sport', category=SubjectCategory.OTHER)
        self.assertEqual(subject.section, BulletinSection.OTHER)


class SubjectConstraintTests(AcademicsTestCase):

    def test_default_coefficient(self):
        subject = Subject.objects.create(school_class=self.general_class, name='History')
        self.assertEqual(subject.coefficient, Decimal('1.00'))

    def test_name_unique_per_class(self):
        Subject.objects.create(school_class=self.general_class, name='History')
        Subject.objects.create(school_class=self.technical_class, name='History')
        with self.assertRaises(IntegrityError):
            Subject.objects.create(school_class=self.general_class, name='History')

    def test_coefficient_must_be_positive(self):
        with self.assertRaises(IntegrityError):
            Subject.objects.create(school_class=self.general_class, name='Music', coefficient=Decimal('0'))
