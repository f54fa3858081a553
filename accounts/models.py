from django.contrib.auth.models import AbstractUser, BaseUserManager
from django.db import models
from django.utils.translation import gettext_lazy as _


class UserManager(BaseUserManager):
    """
    Users log in with their email. Directors and teachers are plain users
    carrying a role flag.
    """

    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError(_('An email address is required'))
        user = self.model(email=self.normalize_email(email), **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        for flag in ('is_staff', 'is_superuser', 'is_active'):
            extra_fields.setdefault(flag, True)
            if extra_fields[flag] is not True:
                raise ValueError(_('Superuser must have %(flag)s=True.') % {'flag': flag})
        return self.create_user(email, password, **extra_fields)

    def _create_with_role(self, role_flag, email, password, extra_fields):
        extra_fields.setdefault(role_flag, True)
        return self.create_user(email, password, **extra_fields)

    def create_school_admin(self, email, password=None, **extra_fields):
        """Director or principal: approves, signs and distributes bulletins."""
        extra_fields.setdefault('is_staff', False)
        return self._create_with_role('is_school_admin', email, password, extra_fields)

    def create_teacher(self, email, password=None, **extra_fields):
        return self._create_with_role('is_teacher', email, password, extra_fields)


class User(AbstractUser):
    ROLE_LABELS = (
        ('is_superuser', 'Super Admin'),
        ('is_school_admin', 'Director'),
        ('is_teacher', 'Teacher'),
    )

    username = None
    email = models.EmailField(_('email address'), unique=True)

    is_school_admin = models.BooleanField(
        default=False,
        help_text='Directors approve, sign and distribute bulletins'
    )
    is_teacher = models.BooleanField(
        default=False,
        help_text='Teachers enter grades for the subjects they teach'
    )

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = UserManager()

    def __str__(self):
        return self.email

    @property
    def is_director(self):
        return self.is_superuser or self.is_school_admin

    @property
    def display_name(self):
        """Name printed on bulletins next to a subject."""
        return self.get_full_name() or self.email

    @property
    def role_label(self):
        return next((label for flag, label in self.ROLE_LABELS if getattr(self, flag)), 'User')
