"""
Input validation for the gradebook JSON endpoints.

Forms only check shape and resolve ids to objects; the business rules
(ranges, ownership, lifecycle) are enforced again by the services they feed.
"""
from decimal import Decimal

from django import forms

from academics.models import SchoolClass, Subject
from core.choices import Term, Language, Channel
from students.models import Student
from .ledger import ACADEMIC_YEAR_PATTERN, CLEARABLE, write_grade
from .models import BulkOperation


def _score_field():
    return forms.DecimalField(
        required=False,
        max_digits=4,
        decimal_places=2,
        min_value=Decimal('0'),
        max_value=Decimal('20'),
    )


def _coefficient_field():
    return forms.DecimalField(
        required=False,
        max_digits=5,
        decimal_places=2,
        min_value=Decimal('0.01'),
    )


class ResolveMixin:
    """Turns *_id fields into model instances on cleaned_data."""

    def resolve(self, field, model, target):
        pk = self.cleaned_data.get(field)
        if pk is None:
            return None
        try:
            obj = model.objects.get(pk=pk)
        except model.DoesNotExist:
            self.add_error(field, f'No {model._meta.verbose_name} with id {pk}.')
            return None
        self.cleaned_data[target] = obj
        return obj


class GradeScoresMixin:
    """
    ``grade`` is shorthand for the exam score.

    Giving both with different values is an error; at least one score,
    or a component to clear, is required.
    """

    def clean_scores(self, cleaned_data):
        grade = cleaned_data.get('grade')
        exam = cleaned_data.get('exam_score')
        if grade is not None:
            if exam is not None and exam != grade:
                raise forms.ValidationError('Give either grade or exam_score, not two different values.')
            cleaned_data['exam_score'] = grade
        if (cleaned_data.get('continuous_score') is None and cleaned_data.get('exam_score') is None
                and not cleaned_data.get('clear')):
            if not self.errors:
                raise forms.ValidationError('At least one of continuous_score, exam_score or grade is required.')
        return cleaned_data


class GradeEntryForm(ResolveMixin, GradeScoresMixin, forms.Form):
    """One grade write: {student_id, class_id, academic_year, term, subject_id, scores...}."""
    student_id = forms.IntegerField()
    class_id = forms.IntegerField()
    academic_year = forms.RegexField(regex=ACADEMIC_YEAR_PATTERN)
    term = forms.ChoiceField(choices=Term.choices)
    subject_id = forms.IntegerField()
    continuous_score = _score_field()
    exam_score = _score_field()
    grade = _score_field()
    coefficient = _coefficient_field()
    comment = forms.CharField(required=False, max_length=1000)
    clear = forms.MultipleChoiceField(
        required=False,
        choices=[(name, name) for name in CLEARABLE],
        help_text='Stored components to erase. A missing score is left as it was.',
    )

    def clean(self):
        cleaned_data = super().clean()
        self.resolve('student_id', Student, 'student')
        self.resolve('class_id', SchoolClass, 'school_class')
        self.resolve('subject_id', Subject, 'subject')
        if 'comment' not in self.data:
            cleaned_data['comment'] = None
        return self.clean_scores(cleaned_data)

    def save(self, actor):
        data = self.cleaned_data
        return write_grade(
            student=data['student'],
            subject=data['subject'],
            school_class=data['school_class'],
            academic_year=data['academic_year'],
            term=data['term'],
            actor=actor,
            continuous_score=data.get('continuous_score'),
            exam_score=data.get('exam_score'),
            coefficient=data.get('coefficient'),
            comment=data.get('comment'),
            clear=data.get('clear') or (),
        )


class GradeLineForm(GradeScoresMixin, forms.Form):
    """One subject line of the grades block of a direct bulletin creation."""
    subject_id = forms.IntegerField()
    continuous_score = _score_field()
    exam_score = _score_field()
    grade = _score_field()
    coefficient = _coefficient_field()
    comment = forms.CharField(required=False, max_length=1000)

    def clean(self):
        cleaned_data = super().clean()
        if 'comment' not in self.data:
            cleaned_data['comment'] = None
        return self.clean_scores(cleaned_data)


class BulletinCreateForm(ResolveMixin, forms.Form):
    """
    Director direct creation payload:

        {"student": {"id": ...} or {"admission_number": ...},
         "academic": {"class_id", "academic_year", "term", "language"?},
         "grades": {"general": [...], "professional": [...], "other": [...]}}

    A flat list under "grades" is read as the general block.
    """
    GRADE_SECTIONS = ('general', 'professional', 'other')

    student_id = forms.IntegerField(required=False)
    admission_number = forms.CharField(required=False, max_length=50)
    class_id = forms.IntegerField()
    academic_year = forms.RegexField(regex=ACADEMIC_YEAR_PATTERN)
    term = forms.ChoiceField(choices=Term.choices)
    language = forms.ChoiceField(choices=Language.choices, required=False)

    def __init__(self, payload=None, *args, **kwargs):
        payload = payload or {}
        identity = payload.get('student') or {}
        academic = payload.get('academic') or {}
        data = {
            'student_id': identity.get('id'),
            'admission_number': identity.get('admission_number'),
            'class_id': academic.get('class_id'),
            'academic_year': academic.get('academic_year'),
            'term': academic.get('term'),
            'language': academic.get('language'),
        }
        super().__init__({k: v for k, v in data.items() if v is not None}, *args, **kwargs)

        grades = payload.get('grades') or {}
        if isinstance(grades, list):
            grades = {'general': grades}
        self.line_forms = [
            (section, index, GradeLineForm(item if isinstance(item, dict) else {}))
            for section in self.GRADE_SECTIONS
            for index, item in enumerate(grades.get(section) or [])
        ]

    def clean(self):
        cleaned_data = super().clean()
        school_class = self.resolve('class_id', SchoolClass, 'school_class')
        self._resolve_student(cleaned_data)

        if not self.line_forms:
            raise forms.ValidationError('The grades block is empty.')

        lines, seen = [], set()
        for section, index, line in self.line_forms:
            label = f'grades.{section}[{index}]'
            if not line.is_valid():
                for field, errors in line.errors.items():
                    name = '' if field == '__all__' else f'.{field}'
                    self.add_error(None, f'{label}{name}: {" ".join(errors)}')
                continue
            subject_id = line.cleaned_data['subject_id']
            if subject_id in seen:
                self.add_error(None, f'{label}: subject {subject_id} appears twice.')
                continue
            seen.add(subject_id)
            subject = Subject.objects.filter(pk=subject_id).first()
            if subject is None or (school_class and subject.school_class_id != school_class.pk):
                self.add_error(None, f'{label}: subject {subject_id} is not taught in this class.')
                continue
            lines.append(dict(line.cleaned_data, subject=subject, section=section))

        cleaned_data['grades'] = lines
        return cleaned_data

    def _resolve_student(self, cleaned_data):
        if cleaned_data.get('student_id') is not None:
            self.resolve('student_id', Student, 'student')
            return
        number = (cleaned_data.get('admission_number') or '').strip()
        if not number:
            self.add_error('student_id', 'Give the student id or admission number.')
            return
        student = Student.objects.filter(admission_number=number).first()
        if student is None:
            self.add_error('admission_number', f'No student with admission number {number}.')
            return
        cleaned_data['student'] = student


class BulletinQueryForm(ResolveMixin, forms.Form):
    """Query string of the bulletin read endpoint."""
    student_id = forms.IntegerField()
    class_id = forms.IntegerField()
    academic_year = forms.RegexField(regex=ACADEMIC_YEAR_PATTERN)
    term = forms.ChoiceField(choices=Term.choices)

    def clean(self):
        cleaned_data = super().clean()
        self.resolve('student_id', Student, 'student')
        self.resolve('class_id', SchoolClass, 'school_class')
        return cleaned_data


class BulletinIdListField(forms.Field):
    """A list of ids, or a comma-separated string of them."""

    def to_python(self, value):
        if value in self.empty_values:
            return []
        if isinstance(value, str):
            value = value.split(',')
        if not isinstance(value, (list, tuple)):
            raise forms.ValidationError('Expected a list of bulletin ids.')
        return [str(v).strip() for v in value if str(v).strip()]

    def validate(self, value):
        super().validate(value)
        if self.required and not value:
            raise forms.ValidationError('Give at least one bulletin id.')


class BulkActionForm(forms.Form):
    """{bulletin_ids, action, signer_name?, signer_role?, channels?, run_async?, timeout?}"""
    bulletin_ids = BulletinIdListField()
    action = forms.ChoiceField(choices=BulkOperation.Action.choices)
    signer_name = forms.CharField(required=False, max_length=150)
    signer_role = forms.CharField(required=False, max_length=100)
    channels = forms.MultipleChoiceField(choices=Channel.choices, required=False)
    run_async = forms.BooleanField(required=False)
    timeout = forms.IntegerField(required=False, min_value=1)

    def clean(self):
        cleaned_data = super().clean()
        if cleaned_data.get('action') == BulkOperation.Action.SIGN:
            if not cleaned_data.get('signer_name') or not cleaned_data.get('signer_role'):
                raise forms.ValidationError('Signing needs signer_name and signer_role.')
        return cleaned_data

    def options(self):
        data = self.cleaned_data
        options = {
            'signer_name': data.get('signer_name') or '',
            'signer_role': data.get('signer_role') or '',
            'channels': data.get('channels') or None,
        }
        if data.get('timeout'):
            options['timeout'] = data['timeout']
        return options


class SignatureForm(forms.Form):
    signer_name = forms.CharField(max_length=150)
    signer_role = forms.CharField(max_length=100)


class CouncilDecisionForm(forms.Form):
    council_observations = forms.CharField(required=False)
    conduct_summary = forms.CharField(required=False)
    override = forms.BooleanField(required=False)
    justification = forms.CharField(required=False)

    def clean(self):
        cleaned_data = super().clean()
        if cleaned_data.get('override') and not (cleaned_data.get('justification') or '').strip():
            self.add_error('justification', 'An override needs a justification.')
        for field in ('council_observations', 'conduct_summary'):
            if field not in self.data:
                cleaned_data[field] = None
        return cleaned_data


class SupersedeForm(forms.Form):
    reason = forms.CharField(required=False, max_length=500)


class VerificationForm(forms.Form):
    """A verification code: the long one from the QR code or the printed short code."""
    code = forms.CharField(max_length=64)
