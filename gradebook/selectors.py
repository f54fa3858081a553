"""
Read side of the gradebook: what a bulletin for a student/term would show.

Nothing is invented: with no scored subject the result says so
(``has_data=False``) instead of returning zeros.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from .aggregation import build_snapshot
from .models import Bulletin


@dataclass
class BulletinData:
    student_id: int
    class_id: int
    academic_year: str
    term: str
    has_data: bool
    subjects: list = field(default_factory=list)
    term_average: Optional[Decimal] = None
    class_rank: Optional[int] = None
    total_students_in_class: Optional[int] = None
    class_statistics: Optional[dict] = None
    previous_term_average: Optional[Decimal] = None
    annual: Optional[dict] = None
    bulletin_id: Optional[str] = None
    bulletin_status: Optional[str] = None
    bulletin_is_stale: bool = False

    def as_dict(self):
        return {
            'student_id': self.student_id,
            'class_id': self.class_id,
            'academic_year': self.academic_year,
            'term': self.term,
            'has_data': self.has_data,
            'subjects': self.subjects,
            'term_average': self.term_average,
            'class_rank': self.class_rank,
            'total_students_in_class': self.total_students_in_class,
            'class_statistics': self.class_statistics,
            'previous_term_average': self.previous_term_average,
            'annual': self.annual,
            'bulletin_id': self.bulletin_id,
            'bulletin_status': self.bulletin_status,
            'bulletin_is_stale': self.bulletin_is_stale,
        }


def read_bulletin_data(student, school_class, academic_year, term):
    """Live figures from the ledger plus the state of the latest bulletin, if any."""
    snapshot = build_snapshot(student, school_class, academic_year, term)
    bulletin = Bulletin.current_for(student, school_class, academic_year, term)

    data = BulletinData(
        student_id=student.pk,
        class_id=school_class.pk,
        academic_year=academic_year,
        term=term,
        has_data=bool(snapshot['subjects']),
        total_students_in_class=snapshot['total_students_in_class'],
        bulletin_id=str(bulletin.pk) if bulletin else None,
        bulletin_status=bulletin.status if bulletin else None,
        bulletin_is_stale=bulletin.is_stale if bulletin else False,
    )
    if not data.has_data:
        return data

    data.subjects = snapshot['subjects']
    data.term_average = snapshot['term_average']
    data.class_rank = snapshot['class_rank']
    data.previous_term_average = snapshot['previous_term_average']
    if snapshot['class_mean_average'] is not None:
        data.class_statistics = {
            'min': snapshot['class_min_average'],
            'max': snapshot['class_max_average'],
            'mean': snapshot['class_mean_average'],
        }
    if 'annual_average' in snapshot:
        data.annual = {
            'term_averages': snapshot['term_averages'],
            'annual_average': snapshot['annual_average'],
            'annual_rank': snapshot['annual_rank'],
            'decision': snapshot['decision'],
            'withheld_reason': snapshot['annual_withheld_reason'],
        }
    return data
