"""
Who may do what in the gradebook.

Directors (superusers and school admins) may do everything. Teachers may
write grades for the subjects they teach or for the class they are class
teacher of, and may submit bulletins of such a class.
"""
from academics.models import Subject
from .exceptions import PermissionDenied


def is_director(user):
    """Check if user is a school admin or superuser."""
    return bool(user and user.is_authenticated and (
        user.is_superuser or getattr(user, 'is_school_admin', False)
    ))


def can_edit_scores(user, school_class, subject):
    """
    Check if a user can write grades for a class/subject.

    Returns True if:
    - User is superuser or school admin
    - User teaches this subject
    - User is the class teacher of the class
    """
    if is_director(user):
        return True
    if not user or not user.is_authenticated:
        return False
    if subject.teacher_id == user.pk:
        return True
    return school_class.class_teacher_id == user.pk


def can_submit_bulletin(user, bulletin):
    """Class teacher, any subject teacher of the class, or a director."""
    if is_director(user):
        return True
    if not user or not user.is_authenticated:
        return False
    school_class = bulletin.school_class
    if school_class.class_teacher_id == user.pk:
        return True
    return Subject.objects.filter(school_class=school_class, teacher=user).exists()


def require_director(user, action):
    if not is_director(user):
        raise PermissionDenied(f"Only a director can {action}")
