from django.db import models
from django.utils.translation import gettext_lazy as _


class Term(models.TextChoices):
    FIRST = 'T1', _('First Term')
    SECOND = 'T2', _('Second Term')
    THIRD = 'T3', _('Third Term')


# Annual decisions are only taken on the last term of the year
FINAL_TERM = Term.THIRD
TERM_ORDER = [Term.FIRST, Term.SECOND, Term.THIRD]


class SubjectCategory(models.TextChoices):
    GENERAL = 'general', _('General')
    SCIENTIFIC = 'scientific', _('Scientific')
    LITERARY = 'literary', _('Literary')
    PROFESSIONAL = 'professional', _('Professional')
    OTHER = 'other', _('Other')


class BulletinSection(models.TextChoices):
    """Sections of a technical-track bulletin layout."""
    GENERAL = 'general', _('General Education')
    PROFESSIONAL = 'professional', _('Professional Education')
    OTHER = 'other', _('Other Subjects')


class Language(models.TextChoices):
    ENGLISH = 'en', _('English')
    FRENCH = 'fr', _('French')


class Channel(models.TextChoices):
    EMAIL = 'email', _('Email')
    SMS = 'sms', _('SMS')
    CHAT = 'chat', _('Chat (WhatsApp)')
