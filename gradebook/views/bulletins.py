import logging

from django.http import JsonResponse
from django.shortcuts import get_object_or_404

from .. import lifecycle
from ..bulk import run_bulk_action
from ..forms import (
    BulletinQueryForm, BulletinCreateForm, BulkActionForm,
    SignatureForm, CouncilDecisionForm, SupersedeForm, VerificationForm,
)
from ..models import Bulletin, BulkOperation
from ..permissions import is_director, require_director
from ..selectors import read_bulletin_data
from ..tasks import enqueue_bulk_action
from ..verification import verify_bulletin
from .base import api_view, error_response, form_error_response


logger = logging.getLogger(__name__)


def serialize_bulletin(bulletin):
    data = {
        'id': str(bulletin.pk),
        'student_id': bulletin.student_id,
        'class_id': bulletin.school_class_id,
        'academic_year': bulletin.academic_year,
        'term': bulletin.term,
        'version': bulletin.version,
        'supersedes': str(bulletin.supersedes_id) if bulletin.supersedes_id else None,
        'status': bulletin.status,
        'language': bulletin.language,
        'is_stale': bulletin.is_stale,
        'subjects': bulletin.subjects,
        'term_average': bulletin.term_average,
        'class_rank': bulletin.class_rank,
        'total_students_in_class': bulletin.total_students_in_class,
        'class_statistics': {
            'min': bulletin.class_min_average,
            'max': bulletin.class_max_average,
            'mean': bulletin.class_mean_average,
        },
        'previous_term_average': bulletin.previous_term_average,
        'signature': {
            'name': bulletin.signer_name,
            'role': bulletin.signer_role,
            'signed_at': bulletin.signed_at,
        } if bulletin.is_signed else None,
        'document': bulletin.document or None,
        'short_code': bulletin.short_code,
        'verification_count': bulletin.verification_count,
    }
    if bulletin.is_final_term:
        data['annual'] = {
            'term_averages': bulletin.term_averages,
            'annual_average': bulletin.annual_average,
            'annual_rank': bulletin.annual_rank,
            'decision': bulletin.decision or None,
            'decision_justification': bulletin.decision_justification,
            'withheld_reason': bulletin.annual_withheld_reason or None,
            'council_observations': bulletin.council_observations,
            'conduct_summary': bulletin.conduct_summary,
        }
    return data


@api_view(['GET'])
def bulletin_data(request):
    """Live bulletin figures for ?student_id=&class_id=&academic_year=&term=."""
    form = BulletinQueryForm(request.GET)
    if not form.is_valid():
        return form_error_response(form)

    data = read_bulletin_data(
        form.cleaned_data['student'],
        form.cleaned_data['school_class'],
        form.cleaned_data['academic_year'],
        form.cleaned_data['term'],
    )
    return JsonResponse(data.as_dict())


@api_view(['POST'])
def bulletin_create(request):
    """Director direct creation: grades in, submitted bulletin and document out."""
    require_director(request.user, 'create bulletins directly')
    form = BulletinCreateForm(request.json)
    if not form.is_valid():
        return form_error_response(form)

    result = lifecycle.create_bulletin(form.cleaned_data, actor=request.user)
    return JsonResponse(result, status=201)


def _submit(request, bulletin):
    return lifecycle.submit(bulletin, request.user)


def _approve(request, bulletin):
    return lifecycle.approve(bulletin, request.user)


def _sign(request, bulletin):
    form = SignatureForm(request.json)
    if not form.is_valid():
        return form
    return lifecycle.sign(
        bulletin, request.user,
        form.cleaned_data['signer_name'],
        form.cleaned_data['signer_role'],
    )


def _supersede(request, bulletin):
    form = SupersedeForm(request.json)
    if not form.is_valid():
        return form
    return lifecycle.supersede(bulletin, request.user, form.cleaned_data['reason'])


def _council(request, bulletin):
    form = CouncilDecisionForm(request.json)
    if not form.is_valid():
        return form
    return lifecycle.record_council_decision(bulletin, request.user, **form.cleaned_data)


BULLETIN_ACTIONS = {
    'submit': _submit,
    'approve': _approve,
    'sign': _sign,
    'supersede': _supersede,
    'council': _council,
}


@api_view(['POST'])
def bulletin_action(request, pk, action):
    """POST bulletins/<id>/<action>/ for submit, approve, sign, supersede, council."""
    handler = BULLETIN_ACTIONS.get(action)
    if handler is None:
        return error_response('unknown_action', f'Unknown bulletin action: {action}', 404)

    bulletin = get_object_or_404(Bulletin.objects.select_related('student', 'school_class'), pk=pk)
    result = handler(request, bulletin)
    if not isinstance(result, Bulletin):
        return form_error_response(result)

    status = 201 if action == 'supersede' else 200
    return JsonResponse({'bulletin': serialize_bulletin(result)}, status=status)


@api_view(['POST'])
def bulk_action(request):
    """
    Sign or send many bulletins.

    Runs inline and answers 200 with the aggregate result, or with
    ``run_async`` queues a batch and answers 202 with its id.
    """
    require_director(request.user, 'run bulk actions')
    form = BulkActionForm(request.json)
    if not form.is_valid():
        return form_error_response(form)

    ids = form.cleaned_data['bulletin_ids']
    action = form.cleaned_data['action']
    if form.cleaned_data['run_async']:
        batch = enqueue_bulk_action(ids, action, request.user, **form.options())
        return JsonResponse({'batch_id': str(batch.pk), 'state': batch.state}, status=202)

    result = run_bulk_action(ids, action, request.user, **form.options())
    return JsonResponse(result)


@api_view(['GET'])
def batch_status(request, pk):
    batch = get_object_or_404(BulkOperation, pk=pk)
    if not is_director(request.user) and batch.requested_by_id != request.user.pk:
        return error_response('permission_denied', 'This batch is not yours.', 403)
    return JsonResponse(batch.as_result())


@api_view(['GET', 'POST'], public=True)
def bulletin_verify(request):
    """Public lookup of a sent bulletin by the code printed on it."""
    form = VerificationForm(request.json if request.method == 'POST' else request.GET)
    if not form.is_valid():
        return form_error_response(form)

    summary = verify_bulletin(
        form.cleaned_data['code'],
        ip_address=request.META.get('REMOTE_ADDR'),
        user_agent=request.META.get('HTTP_USER_AGENT', ''),
    )
    return JsonResponse({'verified': True, 'bulletin': summary})
