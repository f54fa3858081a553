from decimal import Decimal, InvalidOperation

from django import template

register = template.Library()


@register.filter
def lookup(mapping, key):
    """{{ labels.remarks|lookup:row.remark }}"""
    if not mapping:
        return ''
    return mapping.get(key, key)


@register.filter
def score(value):
    """Two-decimal score, or a dash when there is none."""
    if value is None or value == '':
        return '-'
    try:
        return f"{Decimal(str(value)):.2f}"
    except InvalidOperation:
        return value
