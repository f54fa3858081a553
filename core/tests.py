from decimal import Decimal

from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.test import TestCase

from .choices import Term, FINAL_TERM, TERM_ORDER
from .models import SchoolSettings


class TermChoicesTests(TestCase):
    """Tests for the term constants."""

    def test_order_and_final_term(self):
        self.assertEqual([t.value for t in TERM_ORDER], ['T1', 'T2', 'T3'])
        self.assertEqual(FINAL_TERM, Term.THIRD)


class SchoolSettingsModelTests(TestCase):
    """Tests for the SchoolSettings singleton."""

    def setUp(self):
        cache.clear()

    def test_load_creates_if_not_exists(self):
        """Test load() creates settings if none exist."""
        self.assertEqual(SchoolSettings.objects.count(), 0)
        settings = SchoolSettings.load()
        self.assertEqual(settings.pk, 1)
        self.assertEqual(SchoolSettings.objects.count(), 1)

    def test_load_returns_existing(self):
        """Test load() returns existing settings."""
        SchoolSettings.objects.create(pk=1, display_name='Lycee de Bonaberi')
        cache.clear()
        settings = SchoolSettings.load()
        self.assertEqual(settings.display_name, 'Lycee de Bonaberi')

    def test_singleton_pk_is_always_1(self):
        """Test that pk is always forced to 1."""
        settings = SchoolSettings(display_name='Test')
        settings.save()
        self.assertEqual(settings.pk, 1)

    def test_save_invalidates_cache(self):
        settings = SchoolSettings.load()
        settings.motto = 'Travail - Discipline'
        settings.save()
        self.assertEqual(SchoolSettings.load().motto, 'Travail - Discipline')

    def test_default_values(self):
        """Test default values for grading and distribution."""
        settings = SchoolSettings.load()
        self.assertIsNone(settings.promotion_threshold)
        self.assertIsNone(settings.cc_weight)
        self.assertEqual(settings.bulletin_language, 'fr')
        self.assertEqual(settings.channel_list, ['email', 'sms'])
        self.assertFalse(settings.sms_enabled)

    def test_channel_list_ignores_blanks(self):
        settings = SchoolSettings(default_channels=' email, ,chat ')
        self.assertEqual(settings.channel_list, ['email', 'chat'])

    def test_threshold_range_is_validated(self):
        settings = SchoolSettings(promotion_threshold=Decimal('21'))
        with self.assertRaises(ValidationError):
            settings.full_clean()
