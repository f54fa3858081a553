import logging

from django.http import JsonResponse

from ..forms import GradeEntryForm
from .base import api_view, form_error_response


logger = logging.getLogger(__name__)


def serialize_grade(grade):
    return {
        'id': str(grade.pk),
        'student_id': grade.student_id,
        'subject_id': grade.subject_id,
        'class_id': grade.school_class_id,
        'academic_year': grade.academic_year,
        'term': grade.term,
        'continuous_score': grade.continuous_score,
        'exam_score': grade.exam_score,
        'coefficient': grade.coefficient,
        'comment': grade.comment,
        'revision': grade.revision,
        'updated_at': grade.updated_at,
    }


@api_view(['POST'])
def grade_entry(request):
    """Write one grade component (last write wins)."""
    form = GradeEntryForm(request.json)
    if not form.is_valid():
        return form_error_response(form)

    grade = form.save(actor=request.user)
    return JsonResponse({'grade': serialize_grade(grade)}, status=201)
