"""
Signals keeping bulletins honest about the ledger.

When a GradeComponent is saved or deleted, draft bulletins that depend on
it are flagged stale (they are recomputed on submit). Frozen bulletins are
never changed; a warning is logged so the correction can go through
supersede. Frozen bulletins cannot be deleted either.
"""
import logging
import threading

from django.db.models.signals import post_save, post_delete, pre_delete
from django.dispatch import receiver

from core.choices import FINAL_TERM
from .models import GradeComponent, Bulletin

logger = logging.getLogger(__name__)

# Thread-local storage for signal disabling (thread-safe)
_thread_locals = threading.local()


def _is_signals_disabled():
    """Check if signals are disabled for the current thread."""
    return getattr(_thread_locals, 'signals_disabled', False)


def disable_signals():
    """Disable stale-marking signals for the current thread (for bulk writes)."""
    _thread_locals.signals_disabled = True


def enable_signals():
    """Re-enable stale-marking signals for the current thread."""
    _thread_locals.signals_disabled = False


class signals_disabled:
    """Context manager to temporarily disable signals (thread-safe)."""

    def __enter__(self):
        self._previous_state = _is_signals_disabled()
        disable_signals()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._previous_state:
            enable_signals()
        return False


def mark_bulletins_stale(school_class_id, academic_year, term, student_id=None):
    """
    Flag draft bulletins whose snapshot may no longer match the ledger.

    A grade change moves ranks and class statistics, so every draft of the
    class for that term is affected, plus the final-term drafts whose
    annual block includes the term. Returns the number of drafts flagged.
    """
    terms = {term, FINAL_TERM}
    drafts = Bulletin.objects.filter(
        school_class_id=school_class_id,
        academic_year=academic_year,
        term__in=terms,
        status=Bulletin.Status.DRAFT,
        is_stale=False,
    )
    flagged = drafts.update(is_stale=True)

    if student_id is not None:
        frozen = Bulletin.objects.filter(
            student_id=student_id,
            school_class_id=school_class_id,
            academic_year=academic_year,
            term__in=terms,
        ).exclude(status=Bulletin.Status.DRAFT).filter(superseded_by__isnull=True)
        for bulletin in frozen.only('pk', 'status', 'version'):
            logger.warning(
                f"Grades changed under {bulletin.status} bulletin {bulletin.pk} "
                f"v{bulletin.version}; supersede it to publish the correction"
            )

    if flagged:
        logger.debug(f"{flagged} draft bulletin(s) marked stale for class {school_class_id} {academic_year} {term}")
    return flagged


@receiver(post_save, sender=GradeComponent)
def grade_component_saved(sender, instance, **kwargs):
    """Flag dependent drafts when a grade is written."""
    if _is_signals_disabled():
        return
    mark_bulletins_stale(instance.school_class_id, instance.academic_year, instance.term, instance.student_id)


@receiver(post_delete, sender=GradeComponent)
def grade_component_deleted(sender, instance, **kwargs):
    """Flag dependent drafts when a grade is removed."""
    if _is_signals_disabled():
        return
    mark_bulletins_stale(instance.school_class_id, instance.academic_year, instance.term, instance.student_id)


@receiver(pre_delete, sender=Bulletin)
def bulletin_deleting(sender, instance, **kwargs):
    """Queryset deletes skip Bulletin.delete(); stop them for frozen rows here."""
    instance.check_deletable()
