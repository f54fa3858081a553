"""
Document renderer: turns a bulletin snapshot into a stored PDF.

The renderer class is looked up from GRADEBOOK_DOCUMENT_RENDERER so a
different layout engine (or a fake in tests) can be plugged in.
"""
import logging

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.template.loader import render_to_string
from django.utils.module_loading import import_string

from core.choices import FINAL_TERM, Language, Term
from core.models import SchoolSettings
from . import config
from .exceptions import DownstreamUnavailable
from .verification import verification_qr


logger = logging.getLogger(__name__)

TERM_TEMPLATE = 'gradebook/bulletins/bulletin_term.html'
ANNUAL_TEMPLATE = 'gradebook/bulletins/bulletin_annual.html'

LABELS = {
    Language.ENGLISH: {
        'title': 'Report Card',
        'annual_title': 'Annual Report Card',
        'student': 'Student',
        'born': 'Born on',
        'born_at': 'at',
        'class': 'Class',
        'year': 'Academic year',
        'term': 'Term',
        'subject': 'Subject',
        'cc': 'CC',
        'exam': 'Exam',
        'score': 'Score',
        'coefficient': 'Coef.',
        'weighted': 'Total',
        'remark': 'Remark',
        'teacher': 'Teacher',
        'term_average': 'Term average',
        'rank': 'Rank',
        'out_of': 'out of',
        'class_min': 'Lowest average',
        'class_max': 'Highest average',
        'class_mean': 'Class average',
        'previous_average': 'Previous term average',
        'annual_average': 'Annual average',
        'annual_rank': 'Annual rank',
        'decision': 'Council decision',
        'justification': 'Justification',
        'observations': 'Council observations',
        'conduct': 'Conduct',
        'withheld': 'Decision withheld',
        'signature': 'Signature',
        'verification': 'Verification code',
        'sections': {'general': 'General Education', 'professional': 'Professional Education', 'other': 'Other Subjects'},
        'remarks': {'excellent': 'Excellent', 'good': 'Good', 'fairly-good': 'Fairly good', 'needs-improvement': 'Needs improvement'},
        'decisions': {'promoted': 'Promoted', 'repeat': 'Repeat', 'promoted-with-reservations': 'Promoted with reservations'},
        'terms': {'T1': 'First Term', 'T2': 'Second Term', 'T3': 'Third Term'},
    },
    Language.FRENCH: {
        'title': 'Bulletin de notes',
        'annual_title': 'Bulletin annuel',
        'student': 'Élève',
        'born': 'Né(e) le',
        'born_at': 'à',
        'class': 'Classe',
        'year': 'Année scolaire',
        'term': 'Trimestre',
        'subject': 'Matière',
        'cc': 'CC',
        'exam': 'Examen',
        'score': 'Note',
        'coefficient': 'Coef.',
        'weighted': 'Total',
        'remark': 'Appréciation',
        'teacher': 'Enseignant',
        'term_average': 'Moyenne trimestrielle',
        'rank': 'Rang',
        'out_of': 'sur',
        'class_min': 'Moyenne la plus faible',
        'class_max': 'Moyenne la plus forte',
        'class_mean': 'Moyenne de la classe',
        'previous_average': 'Moyenne du trimestre précédent',
        'annual_average': 'Moyenne annuelle',
        'annual_rank': 'Rang annuel',
        'decision': 'Décision du conseil',
        'justification': 'Justification',
        'observations': 'Observations du conseil',
        'conduct': 'Conduite',
        'withheld': 'Décision suspendue',
        'signature': 'Signature',
        'verification': 'Code de vérification',
        'sections': {'general': 'Enseignement général', 'professional': 'Enseignement professionnel', 'other': 'Autres matières'},
        'remarks': {'excellent': 'Excellent', 'good': 'Bien', 'fairly-good': 'Assez bien', 'needs-improvement': 'À améliorer'},
        'decisions': {'promoted': 'Admis', 'repeat': 'Redouble', 'promoted-with-reservations': 'Admis avec réserves'},
        'terms': {'T1': 'Premier trimestre', 'T2': 'Deuxième trimestre', 'T3': 'Troisième trimestre'},
    },
}


def template_for(bulletin):
    """Annual layout for the final term, term layout otherwise."""
    return ANNUAL_TEMPLATE if bulletin.term == FINAL_TERM else TERM_TEMPLATE


def resolve_language(bulletin, language=None):
    language = language or bulletin.language or SchoolSettings.load().bulletin_language
    if language not in LABELS:
        language = Language.FRENCH
    return language


def group_rows(bulletin):
    """
    Subject rows grouped by bulletin section for technical-track classes,
    or a single group for everyone else.
    """
    rows = list(bulletin.subjects or [])
    if not bulletin.school_class.is_technical:
        return [('', rows)]
    groups = {}
    for row in rows:
        groups.setdefault(row.get('section') or 'general', []).append(row)
    return [(section, groups[section]) for section in ('general', 'professional', 'other') if section in groups]


def build_context(bulletin, language):
    labels = LABELS[language]
    return {
        'bulletin': bulletin,
        'student': bulletin.student,
        'school_class': bulletin.school_class,
        'school': SchoolSettings.load(),
        'labels': labels,
        'language': language,
        'term_label': labels['terms'].get(bulletin.term, Term(bulletin.term).label),
        'groups': group_rows(bulletin),
        'decision_label': labels['decisions'].get(bulletin.decision, ''),
        'verification_qr': verification_qr(bulletin),
    }


class BaseRenderer:
    """Renders a bulletin and returns a retrievable document reference."""

    def render(self, bulletin, language=None, template=None):
        raise NotImplementedError


class WeasyPrintRenderer(BaseRenderer):
    """HTML template rendered to PDF with WeasyPrint, saved to default storage."""

    def render_html(self, bulletin, language=None, template=None):
        language = resolve_language(bulletin, language)
        return render_to_string(template or template_for(bulletin), build_context(bulletin, language))

    def render(self, bulletin, language=None, template=None):
        try:
            from weasyprint import HTML
        except ImportError:
            logger.error("WeasyPrint not installed. Install with: pip install weasyprint")
            raise

        html_string = self.render_html(bulletin, language, template)
        try:
            pdf = HTML(string=html_string, base_url=str(settings.BASE_DIR)).write_pdf()
        except (OSError, ValueError) as e:
            logger.error(f"Rendering bulletin {bulletin.pk} failed: {e}")
            raise DownstreamUnavailable(f"Document renderer failed: {e}") from e

        name = (
            f"{config.DOCUMENT_STORAGE_PREFIX}/{bulletin.academic_year}/{bulletin.term}/"
            f"{bulletin.student.admission_number}_v{bulletin.version}_{bulletin.pk.hex[:8]}.pdf"
        )
        try:
            path = default_storage.save(name, ContentFile(pdf))
        except OSError as e:
            logger.error(f"Storing bulletin {bulletin.pk} failed: {e}")
            raise DownstreamUnavailable(f"Document storage failed: {e}") from e

        logger.info(f"Rendered bulletin {bulletin.pk} to {path}")
        return path


def get_renderer():
    return import_string(config.DOCUMENT_RENDERER)()
