"""
Configuration settings for the gradebook app.

These values can be overridden in Django settings by prefixing with GRADEBOOK_.
For example, to change the promotion threshold:
    GRADEBOOK_PROMOTION_THRESHOLD = Decimal('12.00')

Institution-level values stored on core.SchoolSettings take precedence over
both (see grading_policy()).

All configuration values are lazily loaded to avoid Django setup issues.
"""
from collections import namedtuple
from decimal import Decimal


def _get_setting(name, default):
    """Get a gradebook setting from Django settings or use default."""
    from django.conf import settings
    return getattr(settings, f'GRADEBOOK_{name}', default)


# Define defaults as constants for direct use when Django settings are not needed
_DEFAULTS = {
    # Scores are marked out of 20
    'MAX_SCORE': Decimal('20'),

    # Subject score = CC x CC_WEIGHT + exam x EXAM_WEIGHT
    'CC_WEIGHT': Decimal('0.40'),
    'EXAM_WEIGHT': Decimal('0.60'),

    # Annual average needed for promotion (inclusive)
    'PROMOTION_THRESHOLD': Decimal('10.00'),

    # Remark bands, highest first: (minimum score, remark key)
    'REMARK_BANDS': (
        (Decimal('16'), 'excellent'),
        (Decimal('14'), 'good'),
        (Decimal('12'), 'fairly-good'),
        (Decimal('0'), 'needs-improvement'),
    ),

    # Bulk operation settings
    'BULK_MAX_WORKERS': 4,
    'BULK_MAX_ITEMS': 500,

    # Collaborators (dotted paths)
    'DOCUMENT_RENDERER': 'gradebook.rendering.WeasyPrintRenderer',
    'NOTIFICATION_DISPATCHER': 'communications.dispatch.NotificationDispatcher',
    'DOCUMENT_STORAGE_PREFIX': 'bulletins',

    # SMS settings
    'SMS_MAX_LENGTH': 160,

    # Public verification: attempts allowed per client address per window
    'VERIFY_MAX_ATTEMPTS': 20,
    'VERIFY_WINDOW': 60 * 60,  # seconds
    # Prefix for the URL printed in the QR code, e.g. 'https://school.example.cm'
    'VERIFICATION_BASE_URL': '',

    # Celery task settings
    'TASK_MAX_RETRIES': 3,
    'TASK_RETRY_DELAY': 60,  # seconds
    'TASK_SOFT_TIME_LIMIT': 5 * 60,
    'TASK_TIME_LIMIT': 6 * 60,
    'BULK_TASK_SOFT_TIME_LIMIT': 25 * 60,
    'BULK_TASK_TIME_LIMIT': 30 * 60,
}


class _ConfigProxy:
    """
    Lazy configuration proxy that loads settings only when accessed.
    This avoids Django setup issues during module import.
    """

    def __getattr__(self, name):
        if name in _DEFAULTS:
            return _get_setting(name, _DEFAULTS[name])
        raise AttributeError(f"Unknown config setting: {name}")


# Module-level proxy object for attribute access
_config = _ConfigProxy()


GradingPolicy = namedtuple('GradingPolicy', ['cc_weight', 'exam_weight', 'promotion_threshold'])


def grading_policy():
    """
    Resolve the grading policy for the institution.

    A weight or threshold set on SchoolSettings wins over the GRADEBOOK_*
    setting, which wins over the built-in default. The exam weight is always
    the complement of the CC weight when the institution sets one.
    """
    from core.models import SchoolSettings

    school = SchoolSettings.load()
    cc_weight = _config.CC_WEIGHT
    exam_weight = _config.EXAM_WEIGHT
    if school.cc_weight is not None:
        cc_weight = Decimal(school.cc_weight)
        exam_weight = Decimal('1') - cc_weight

    threshold = _config.PROMOTION_THRESHOLD
    if school.promotion_threshold is not None:
        threshold = Decimal(school.promotion_threshold)

    return GradingPolicy(Decimal(cc_weight), Decimal(exam_weight), Decimal(threshold))


def __getattr__(name):
    """Enable module-level attribute access via the config proxy."""
    return getattr(_config, name)
