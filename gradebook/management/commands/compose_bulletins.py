"""
Management command to compose draft bulletins for a whole class.
Usage: python manage.py compose_bulletins --class 3 --year 2024-2025 --term T1 --actor director@school.cm
"""
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError

from academics.models import SchoolClass
from core.choices import Term
from gradebook.exceptions import GradebookError
from gradebook.lifecycle import compose_class_bulletins


class Command(BaseCommand):
    help = 'Compose (or refresh) draft bulletins for every enrolled student of a class'

    def add_arguments(self, parser):
        parser.add_argument('--class', dest='class_id', type=int, required=True, help='SchoolClass id')
        parser.add_argument('--year', required=True, help='Academic year, e.g. 2024-2025')
        parser.add_argument('--term', required=True, choices=Term.values)
        parser.add_argument('--actor', required=True, help='Email of the user composing the bulletins')

    def handle(self, *args, **options):
        User = get_user_model()
        try:
            school_class = SchoolClass.objects.get(pk=options['class_id'])
        except SchoolClass.DoesNotExist:
            raise CommandError(f"Class {options['class_id']} not found.")
        try:
            actor = User.objects.get(email=options['actor'])
        except User.DoesNotExist:
            raise CommandError(f"User '{options['actor']}' not found.")

        try:
            composed, skipped = compose_class_bulletins(
                school_class, options['year'], options['term'], actor
            )
        except GradebookError as e:
            raise CommandError(e.message)
        except ValidationError as e:
            raise CommandError(" ".join(e.messages))

        for student, reason in skipped:
            self.stdout.write(f"  Skipped {student}: {reason}")
        self.stdout.write(
            self.style.SUCCESS(
                f"[{school_class}] Composed {len(composed)} bulletins, skipped {len(skipped)}"
            )
        )
