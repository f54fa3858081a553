from django.test import TestCase
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser

from gradebook.permissions import is_director

User = get_user_model()


class UserManagerTests(TestCase):
    """Tests for the custom UserManager."""

    def test_create_user(self):
        user = User.objects.create_user(email='secretariat@school.cm', password='pass1234')
        self.assertEqual(user.email, 'secretariat@school.cm')
        self.assertTrue(user.check_password('pass1234'))
        self.assertFalse(user.is_staff)
        self.assertFalse(user.is_director)
        self.assertEqual(user.role_label, 'User')
        self.assertEqual(user.display_name, 'secretariat@school.cm')

    def test_email_required(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email='', password='pass1234')

    def test_email_domain_is_normalized(self):
        user = User.objects.create_user(email='censeur@LYCEE.CM', password='pass1234')
        self.assertEqual(user.email, 'censeur@lycee.cm')

    def test_create_superuser(self):
        user = User.objects.create_superuser(email='root@school.cm', password='pass1234')
        self.assertTrue(user.is_staff)
        self.assertTrue(user.is_superuser)
        self.assertTrue(user.is_director)
        self.assertEqual(user.role_label, 'Super Admin')

    def test_superuser_flags_cannot_be_turned_off(self):
        for flag in ('is_staff', 'is_superuser'):
            with self.subTest(flag=flag), self.assertRaises(ValueError):
                User.objects.create_superuser(email='root@school.cm', password='pass1234', **{flag: False})

    def test_create_school_admin(self):
        user = User.objects.create_school_admin(email='principal@school.cm', password='pass1234')
        self.assertTrue(user.is_school_admin)
        self.assertTrue(user.is_director)
        self.assertFalse(user.is_staff)
        self.assertFalse(user.is_teacher)
        self.assertEqual(user.role_label, 'Director')

    def test_create_teacher(self):
        user = User.objects.create_teacher(
            email='maths@school.cm',
            password='pass1234',
            first_name='Jean',
            last_name='Mballa'
        )
        self.assertTrue(user.is_teacher)
        self.assertFalse(user.is_director)
        self.assertEqual(user.role_label, 'Teacher')
        self.assertEqual(user.display_name, 'Jean Mballa')


class DirectorPermissionTests(TestCase):
    """Tests for who counts as a director in the gradebook."""

    def test_roles(self):
        director = User.objects.create_school_admin(email='d@school.cm', password='x')
        teacher = User.objects.create_teacher(email='t@school.cm', password='x')
        superuser = User.objects.create_superuser(email='s@school.cm', password='x')

        self.assertTrue(is_director(director))
        self.assertTrue(is_director(superuser))
        self.assertFalse(is_director(teacher))
        self.assertFalse(is_director(None))
        self.assertFalse(is_director(AnonymousUser()))
