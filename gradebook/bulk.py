"""
Bulk sign/send over a list of bulletins.

Each bulletin is handled on its own: a failure is recorded against that id
and the rest carry on. Items fan out over a bounded thread pool (one worker
means a plain loop) and fan back in to a single result:

    {'batch_id', 'state', 'succeeded', 'failed', 'skipped', 'details'}

where details holds one {'id', 'status', 'error'?, 'message'?} per
distinct id, in request order.
"""
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

from celery.exceptions import SoftTimeLimitExceeded
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import close_old_connections, IntegrityError
from django.utils import timezone

from . import config
from . import lifecycle
from .exceptions import GradebookError, ValidationError, MissingSignature, InvalidTransition
from .models import Bulletin, BulkOperation, BulletinDistributionLog
from .permissions import require_director
from .rendering import get_renderer, template_for
from .verification import issue_verification_code


logger = logging.getLogger(__name__)

SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'


def _outcome(bulletin_id, status, error=None, message=''):
    detail = {'id': str(bulletin_id), 'status': status}
    if error:
        detail['error'] = error
        detail['message'] = message
    return detail


def unique_ids(bulletin_ids):
    """Drop repeated ids, keeping the first occurrence."""
    return list(dict.fromkeys(str(i).strip() for i in bulletin_ids))


class BulkCoordinator:
    """
    Runs one bulk action as one BulkOperation batch.

    Args:
        action: 'sign' or 'send'
        actor: the director running the batch
        signer_name, signer_role: signature metadata; required for 'sign',
            and for 'send' when a bulletin is not signed yet
        channels: notification channels for 'send' (default: school setting)
        timeout: seconds; items not started before it are reported failed
            with 'not_processed' and left untouched
        max_workers: pool size (default GRADEBOOK_BULK_MAX_WORKERS)
    """

    def __init__(self, action, actor, signer_name='', signer_role='', channels=None,
                 timeout=None, max_workers=None, batch=None):
        if action not in BulkOperation.Action.values:
            raise ValidationError(f"Unknown bulk action: {action!r}", code='invalid_action')
        require_director(actor, f'{action} bulletins in bulk')

        self.action = action
        self.actor = actor
        self.signer_name = signer_name or ''
        self.signer_role = signer_role or ''
        self.channels = channels or None
        self.deadline = time.monotonic() + timeout if timeout else None
        self.max_workers = max(1, int(max_workers or config.BULK_MAX_WORKERS))
        self.batch = batch

    def run(self, bulletin_ids):
        ids = unique_ids(bulletin_ids)
        if len(ids) > config.BULK_MAX_ITEMS:
            raise ValidationError(
                f"At most {config.BULK_MAX_ITEMS} bulletins per batch, got {len(ids)}",
                code='batch_too_large',
            )

        if self.batch is None:
            self.batch = BulkOperation.objects.create(
                action=self.action,
                requested_by=self.actor,
                total=len(ids),
            )
        else:
            BulkOperation.objects.filter(pk=self.batch.pk).update(total=len(ids))

        logger.info(f"Bulk {self.action} batch {self.batch.pk}: {len(ids)} bulletins by {self.actor.pk}")

        results = [None] * len(ids)
        state = BulkOperation.State.COMPLETED
        try:
            if self.max_workers == 1 or len(ids) < 2:
                for index, bulletin_id in enumerate(ids):
                    results[index] = self._process(bulletin_id)
            else:
                self._fan_out(ids, results)
        except SoftTimeLimitExceeded:
            state = BulkOperation.State.INTERRUPTED
            logger.warning(f"Bulk batch {self.batch.pk} interrupted by time limit")

        details = [
            outcome or _outcome(bulletin_id, FAILED, 'not_processed', 'Batch stopped before this item')
            for bulletin_id, outcome in zip(ids, results)
        ]
        return self._finish(details, state)

    def _finish(self, details, state):
        counts = {SUCCEEDED: 0, FAILED: 0, SKIPPED: 0}
        for detail in details:
            counts[detail['status']] += 1

        BulkOperation.objects.filter(pk=self.batch.pk).update(
            state=state,
            succeeded=counts[SUCCEEDED],
            failed=counts[FAILED],
            skipped=counts[SKIPPED],
            details=details,
            finished_at=timezone.now(),
        )
        self.batch.refresh_from_db()
        logger.info(
            f"Bulk {self.action} batch {self.batch.pk} {state}: "
            f"{counts[SUCCEEDED]} succeeded, {counts[FAILED]} failed, {counts[SKIPPED]} skipped"
        )
        return self.batch.as_result()

    def _fan_out(self, ids, results):
        pool = ThreadPoolExecutor(max_workers=self.max_workers)
        futures = [pool.submit(self._process_in_worker, bulletin_id) for bulletin_id in ids]
        try:
            for index, future in enumerate(futures):
                results[index] = future.result()
        finally:
            # Items not started yet are cancelled; finished ones still count
            pool.shutdown(wait=True, cancel_futures=True)
            for index, future in enumerate(futures):
                if results[index] is None and future.done() and not future.cancelled():
                    if future.exception() is None:
                        results[index] = future.result()

    def _process_in_worker(self, bulletin_id):
        try:
            return self._process(bulletin_id)
        finally:
            close_old_connections()

    def _process(self, bulletin_id):
        if self.deadline is not None and time.monotonic() > self.deadline:
            return _outcome(bulletin_id, FAILED, 'not_processed', 'Deadline passed before this item started')

        try:
            bulletin = Bulletin.objects.select_related('student', 'school_class').get(pk=uuid.UUID(bulletin_id))
        except (ValueError, Bulletin.DoesNotExist):
            return _outcome(bulletin_id, FAILED, 'not_found', 'No such bulletin')

        if bulletin.status == Bulletin.Status.SENT:
            return _outcome(bulletin_id, SKIPPED, 'already_sent', 'Bulletin was already sent')

        try:
            if self.action == BulkOperation.Action.SIGN:
                lifecycle.sign(bulletin, self.actor, self.signer_name, self.signer_role)
            else:
                self._send(bulletin)
        except GradebookError as e:
            return _outcome(bulletin_id, FAILED, e.code, e.message)
        except DjangoValidationError as e:
            return _outcome(bulletin_id, FAILED, getattr(e, 'code', None) or 'validation_error', ' '.join(e.messages))
        except SoftTimeLimitExceeded:
            # Stops the whole batch; run() records it as interrupted
            raise
        except Exception as e:
            logger.exception(f"Unexpected error on bulletin {bulletin_id} in batch {self.batch.pk}")
            return _outcome(bulletin_id, FAILED, 'internal_error', str(e))

        return _outcome(bulletin_id, SUCCEEDED)

    def _send(self, bulletin):
        """
        Sign if needed, issue the verification code, render if needed,
        dispatch once, then mark sent.

        A dispatch failure leaves the bulletin approved and signed so the
        send can be retried in a later batch.
        """
        from communications.dispatch import get_dispatcher

        if bulletin.status != Bulletin.Status.APPROVED:
            raise InvalidTransition(
                f"Only an approved bulletin can be sent; this one is {bulletin.status}",
                current_status=bulletin.status,
            )

        if not bulletin.is_signed:
            if not (self.signer_name and self.signer_role):
                raise MissingSignature(f"Bulletin {bulletin.pk} is not signed and no signer was given")
            lifecycle.sign(bulletin, self.actor, self.signer_name, self.signer_role)

        # A newly issued code means the stored document lacks its QR code
        issued = issue_verification_code(bulletin)
        if issued or not bulletin.document:
            document = get_renderer().render(bulletin, language=bulletin.language, template=template_for(bulletin))
            Bulletin.objects.filter(pk=bulletin.pk).update(document=document)
            bulletin.document = document

        try:
            log, created = BulletinDistributionLog.objects.get_or_create(bulletin=bulletin, batch=self.batch)
        except IntegrityError:
            log, created = BulletinDistributionLog.objects.get(bulletin=bulletin, batch=self.batch), False

        if created:
            try:
                channels = get_dispatcher(sent_by=self.actor).dispatch(bulletin, self.channels)
            except GradebookError as e:
                log.status = BulletinDistributionLog.Status.FAILED
                log.error = e.message
                log.channels = e.details.get('channels', {})
                log.save()
                raise
            except DjangoValidationError as e:
                log.status = BulletinDistributionLog.Status.FAILED
                log.error = ' '.join(e.messages)
                log.save()
                raise
            log.status = BulletinDistributionLog.Status.DELIVERED
            log.channels = channels
            log.save()
        elif log.status != BulletinDistributionLog.Status.DELIVERED:
            raise ValidationError(
                f"Bulletin {bulletin.pk} already failed to dispatch in this batch",
                code='already_dispatched',
            )

        lifecycle.mark_sent(bulletin)


def run_bulk_action(bulletin_ids, action, actor, **options):
    """Run a bulk action synchronously and return the aggregate result."""
    return BulkCoordinator(action, actor, **options).run(bulletin_ids)
