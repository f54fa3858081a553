"""
Pure grade arithmetic: subject scores, term and annual averages, ranking
and the promotion rule.

Nothing in here touches the database. All values are Decimals on a 0-20
scale rounded half-up to two places.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from core.choices import TERM_ORDER
from . import config
from .exceptions import ValidationError, IncompleteGrades


TWO_PLACES = Decimal('0.01')


def round2(value):
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_decimal(value, field='score'):
    if value is None or value == '':
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a number: {value!r}", code='invalid_number')
    if not result.is_finite():
        raise ValidationError(f"{field} is not a number: {value!r}", code='invalid_number')
    return result


def validate_score(value, field='score'):
    """
    Convert a raw score to Decimal and check it is within 0..20.

    Out-of-range values are rejected, never clamped.
    """
    score = to_decimal(value, field)
    if score is None:
        return None
    if score < 0 or score > config.MAX_SCORE:
        raise ValidationError(
            f"{field} must be between 0 and {config.MAX_SCORE}, got {score}",
            code='score_out_of_range',
        )
    return score


def validate_coefficient(value):
    coefficient = to_decimal(value, 'coefficient')
    if coefficient is None:
        return None
    if coefficient <= 0:
        raise ValidationError(
            f"coefficient must be greater than 0, got {coefficient}",
            code='invalid_coefficient',
        )
    return coefficient


def subject_score(continuous_score, exam_score, cc_weight=None, exam_weight=None):
    """
    Combine the CC and exam components into one subject score.

    With both present the weighted sum is returned; with one present that
    component is the score; with neither the subject is not scored (None).
    """
    if continuous_score is None and exam_score is None:
        return None
    if exam_score is None:
        return round2(continuous_score)
    if continuous_score is None:
        return round2(exam_score)

    cc_weight = config.CC_WEIGHT if cc_weight is None else cc_weight
    exam_weight = config.EXAM_WEIGHT if exam_weight is None else exam_weight
    return round2(
        Decimal(continuous_score) * Decimal(cc_weight) + Decimal(exam_score) * Decimal(exam_weight)
    )


def remark_for(score):
    """Qualitative remark bucket for a subject score."""
    if score is None:
        return ''
    for minimum, remark in config.REMARK_BANDS:
        if score >= minimum:
            return remark
    return config.REMARK_BANDS[-1][1]


def term_average(entries):
    """
    Coefficient-weighted mean of (score, coefficient) pairs.

    Unscored entries (score None) are ignored. Raises IncompleteGrades when
    nothing is left to average.
    """
    total = Decimal('0')
    coefficients = Decimal('0')
    for score, coefficient in entries:
        if score is None:
            continue
        coefficient = Decimal(coefficient)
        if coefficient <= 0:
            raise ValidationError(
                f"coefficient must be greater than 0, got {coefficient}",
                code='invalid_coefficient',
            )
        total += Decimal(score) * coefficient
        coefficients += coefficient

    if coefficients == 0:
        raise IncompleteGrades("No scored subjects for this term")
    return round2(total / coefficients)


def annual_average(t1, t2, t3):
    """
    Simple mean of the three term averages.

    Coefficients are already folded into each term average, so terms are not
    weighted. Any missing term raises IncompleteGrades listing what is missing.
    """
    averages = dict(zip(TERM_ORDER, (t1, t2, t3)))
    missing = [str(term) for term, value in averages.items() if value is None]
    if missing:
        raise IncompleteGrades(
            f"Annual average needs all three terms; missing {', '.join(missing)}",
            missing_terms=missing,
        )
    return round2(sum(Decimal(v) for v in averages.values()) / 3)


def promotion_decision(average, threshold=None):
    """'promoted' at or above the threshold, 'repeat' below it."""
    from .models import Bulletin

    threshold = config.PROMOTION_THRESHOLD if threshold is None else threshold
    if Decimal(average) >= Decimal(threshold):
        return Bulletin.Decision.PROMOTED
    return Bulletin.Decision.REPEAT


def rank_entries(entries):
    """
    Rank (key, average) pairs, best first.

    Equal averages share a rank and the next rank skips accordingly
    (1, 2, 2, 4). Among equals the list is ordered by key, so the output is
    the same however the input is ordered. Entries without an average are
    left out.

    Returns a list of (key, average, rank) tuples.
    """
    scored = [(key, Decimal(avg)) for key, avg in entries if avg is not None]
    scored.sort(key=lambda item: (-item[1], item[0]))

    ranked = []
    previous = None
    rank = 0
    for position, (key, average) in enumerate(scored, start=1):
        if average != previous:
            rank = position
            previous = average
        ranked.append((key, average, rank))
    return ranked


def class_statistics(averages):
    """Min, max and mean of the averages that exist, or None when there are none."""
    values = [Decimal(a) for a in averages if a is not None]
    if not values:
        return None
    return {
        'min': min(values),
        'max': max(values),
        'mean': round2(sum(values) / len(values)),
        'count': len(values),
    }
