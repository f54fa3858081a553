"""
Celery tasks for gradebook app.
Handles async bulk sign/send, class-wide bulletin composition and rendering.
"""
import logging

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.contrib.auth import get_user_model
from django.utils import timezone

from . import config
from .exceptions import DownstreamUnavailable


logger = logging.getLogger(__name__)


def enqueue_bulk_action(bulletin_ids, action, actor, **options):
    """
    Record a batch and hand it to a worker.

    Returns the BulkOperation row; its state and details are filled in as
    the worker runs, so callers can poll it.
    """
    from .bulk import BulkCoordinator, unique_ids
    from .models import BulkOperation

    # Validates the action and the actor before anything is queued
    BulkCoordinator(action, actor, **options)
    ids = unique_ids(bulletin_ids)
    batch = BulkOperation.objects.create(action=action, requested_by=actor, total=len(ids))
    run_bulk_action_task.delay(str(batch.pk), ids, action, actor.pk, **options)
    return batch


@shared_task(
    bind=True,
    max_retries=0,
    soft_time_limit=config.BULK_TASK_SOFT_TIME_LIMIT,
    time_limit=config.BULK_TASK_TIME_LIMIT,
)
def run_bulk_action_task(self, batch_id, bulletin_ids, action, actor_id, **options):
    """
    Run a recorded bulk batch.

    Args:
        batch_id: BulkOperation id created by enqueue_bulk_action
        bulletin_ids: list of bulletin ids
        action: 'sign' or 'send'
        actor_id: ID of the director who requested the batch
        options: signer_name, signer_role, channels, timeout
    """
    from .bulk import BulkCoordinator
    from .models import BulkOperation

    User = get_user_model()
    try:
        batch = BulkOperation.objects.get(pk=batch_id)
        actor = User.objects.get(pk=actor_id)
    except (BulkOperation.DoesNotExist, User.DoesNotExist):
        logger.error(f"Bulk batch {batch_id} or user {actor_id} not found")
        return {'success': False, 'error': 'Batch or user not found'}

    try:
        return BulkCoordinator(action, actor, batch=batch, **options).run(bulletin_ids)
    except SoftTimeLimitExceeded:
        # Hit outside the item loop; whatever was recorded stays
        BulkOperation.objects.filter(pk=batch_id, state=BulkOperation.State.RUNNING).update(
            state=BulkOperation.State.INTERRUPTED,
            finished_at=timezone.now(),
        )
        logger.warning(f"Bulk batch {batch_id} interrupted by time limit")
        batch.refresh_from_db()
        return batch.as_result()


@shared_task(
    bind=True,
    max_retries=config.TASK_MAX_RETRIES,
    default_retry_delay=config.TASK_RETRY_DELAY,
    soft_time_limit=config.TASK_SOFT_TIME_LIMIT,
    time_limit=config.TASK_TIME_LIMIT,
)
def render_bulletin_task(self, bulletin_id, language=None):
    """
    Render (or re-render) the document of one bulletin.

    Renderer outages are retried with exponential backoff.
    """
    from .models import Bulletin
    from .rendering import get_renderer, template_for

    try:
        bulletin = Bulletin.objects.select_related('student', 'school_class').get(pk=bulletin_id)
    except Bulletin.DoesNotExist:
        logger.error(f"Bulletin {bulletin_id} not found")
        return {'success': False, 'error': 'Bulletin not found'}

    try:
        document = get_renderer().render(bulletin, language=language, template=template_for(bulletin))
    except DownstreamUnavailable as e:
        logger.warning(f"Retryable error rendering bulletin {bulletin_id}: {e.message}")
        raise self.retry(exc=e, countdown=config.TASK_RETRY_DELAY * (2 ** self.request.retries))

    Bulletin.objects.filter(pk=bulletin.pk).update(document=document)
    return {'success': True, 'bulletin_id': str(bulletin.pk), 'document': document}


@shared_task(
    bind=True,
    max_retries=0,
    soft_time_limit=config.BULK_TASK_SOFT_TIME_LIMIT,
    time_limit=config.BULK_TASK_TIME_LIMIT,
)
def compose_class_bulletins_task(self, class_id, academic_year, term, actor_id):
    """Compose draft bulletins for a whole class from the ledger."""
    from academics.models import SchoolClass
    from .lifecycle import compose_class_bulletins

    User = get_user_model()
    try:
        school_class = SchoolClass.objects.get(pk=class_id)
        actor = User.objects.get(pk=actor_id)
    except (SchoolClass.DoesNotExist, User.DoesNotExist):
        logger.error(f"Class {class_id} or user {actor_id} not found")
        return {'success': False, 'error': 'Class or user not found'}

    composed, skipped = compose_class_bulletins(school_class, academic_year, term, actor)
    return {
        'success': True,
        'composed': [str(b.pk) for b in composed],
        'skipped': [{'student_id': s.pk, 'reason': reason} for s, reason in skipped],
    }
