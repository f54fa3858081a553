import uuid
from decimal import Decimal

import django.core.serializers.json
import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


SCORE_VALIDATORS = [
    django.core.validators.MinValueValidator(Decimal('0')),
    django.core.validators.MaxValueValidator(Decimal('20')),
]
TERM_CHOICES = [('T1', 'First Term'), ('T2', 'Second Term'), ('T3', 'Third Term')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('academics', '0002_subjectenrollment'),
        ('students', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='GradeComponent',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('academic_year', models.CharField(max_length=9)),
                ('term', models.CharField(choices=TERM_CHOICES, max_length=2)),
                ('continuous_score', models.DecimalField(blank=True, decimal_places=2, help_text='Continuous assessment score out of 20', max_digits=4, null=True, validators=SCORE_VALIDATORS)),
                ('exam_score', models.DecimalField(blank=True, decimal_places=2, help_text='Examination score out of 20', max_digits=4, null=True, validators=SCORE_VALIDATORS)),
                ('coefficient', models.DecimalField(decimal_places=2, max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0.01'))])),
                ('comment', models.TextField(blank=True)),
                ('revision', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('entered_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='grade_components', to=settings.AUTH_USER_MODEL)),
                ('school_class', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='grade_components', to='academics.schoolclass')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='grade_components', to='students.student')),
                ('subject', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='grade_components', to='academics.subject')),
            ],
            options={
                'verbose_name': 'Grade Component',
                'verbose_name_plural': 'Grade Components',
                'db_table': 'grade_component',
                'ordering': ['student', 'subject'],
                'unique_together': {('student', 'subject', 'school_class', 'academic_year', 'term')},
                'indexes': [
                    models.Index(fields=['school_class', 'academic_year', 'term'], name='grade_comp_class_term_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('continuous_score__isnull', True), models.Q(('continuous_score__gte', 0), ('continuous_score__lte', 20)), _connector='OR'), name='grade_component_cc_range'),
                    models.CheckConstraint(condition=models.Q(('exam_score__isnull', True), models.Q(('exam_score__gte', 0), ('exam_score__lte', 20)), _connector='OR'), name='grade_component_exam_range'),
                    models.CheckConstraint(condition=models.Q(('coefficient__gt', 0)), name='grade_component_coefficient_positive'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Bulletin',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('academic_year', models.CharField(max_length=9)),
                ('term', models.CharField(choices=TERM_CHOICES, max_length=2)),
                ('version', models.PositiveSmallIntegerField(default=1)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('submitted', 'Submitted'), ('approved', 'Approved'), ('sent', 'Sent')], default='draft', max_length=10)),
                ('language', models.CharField(blank=True, choices=[('en', 'English'), ('fr', 'French')], max_length=2)),
                ('subjects', models.JSONField(blank=True, default=list, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('term_average', models.DecimalField(blank=True, decimal_places=2, max_digits=4, null=True)),
                ('class_rank', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('total_students_in_class', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('class_min_average', models.DecimalField(blank=True, decimal_places=2, max_digits=4, null=True)),
                ('class_max_average', models.DecimalField(blank=True, decimal_places=2, max_digits=4, null=True)),
                ('class_mean_average', models.DecimalField(blank=True, decimal_places=2, max_digits=4, null=True)),
                ('previous_term_average', models.DecimalField(blank=True, decimal_places=2, help_text='Only set when the previous term has real grades', max_digits=4, null=True)),
                ('source_fingerprint', models.CharField(blank=True, max_length=64)),
                ('is_stale', models.BooleanField(default=False, help_text='Grades changed after the snapshot was taken')),
                ('term_averages', models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('annual_average', models.DecimalField(blank=True, decimal_places=2, max_digits=4, null=True)),
                ('annual_rank', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('decision', models.CharField(blank=True, choices=[('promoted', 'Promoted'), ('repeat', 'Repeat'), ('promoted-with-reservations', 'Promoted with reservations')], max_length=30)),
                ('decision_justification', models.TextField(blank=True)),
                ('annual_withheld_reason', models.CharField(blank=True, max_length=255)),
                ('council_observations', models.TextField(blank=True)),
                ('conduct_summary', models.TextField(blank=True)),
                ('signer_name', models.CharField(blank=True, max_length=150)),
                ('signer_role', models.CharField(blank=True, max_length=100)),
                ('signed_at', models.DateTimeField(blank=True, null=True)),
                ('submitted_at', models.DateTimeField(blank=True, null=True)),
                ('approved_at', models.DateTimeField(blank=True, null=True)),
                ('sent_at', models.DateTimeField(blank=True, null=True)),
                ('document', models.CharField(blank=True, help_text='Storage path of the rendered document', max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('approved_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='approved_bulletins', to=settings.AUTH_USER_MODEL)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_bulletins', to=settings.AUTH_USER_MODEL)),
                ('decision_overridden_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('school_class', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='bulletins', to='academics.schoolclass')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='bulletins', to='students.student')),
                ('submitted_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='submitted_bulletins', to=settings.AUTH_USER_MODEL)),
                ('supersedes', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='superseded_by', to='gradebook.bulletin')),
            ],
            options={
                'verbose_name': 'Bulletin',
                'verbose_name_plural': 'Bulletins',
                'db_table': 'bulletin',
                'ordering': ['school_class', 'term', 'class_rank'],
                'unique_together': {('student', 'school_class', 'academic_year', 'term', 'version')},
                'indexes': [
                    models.Index(fields=['school_class', 'academic_year', 'term'], name='bulletin_class_term_idx'),
                    models.Index(fields=['status'], name='bulletin_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BulkOperation',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('action', models.CharField(choices=[('sign', 'Sign'), ('send', 'Send')], max_length=10)),
                ('state', models.CharField(choices=[('running', 'Running'), ('completed', 'Completed'), ('interrupted', 'Interrupted')], default='running', max_length=12)),
                ('total', models.PositiveIntegerField(default=0)),
                ('succeeded', models.PositiveIntegerField(default=0)),
                ('failed', models.PositiveIntegerField(default=0)),
                ('skipped', models.PositiveIntegerField(default=0)),
                ('details', models.JSONField(blank=True, default=list, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('started_at', models.DateTimeField(auto_now_add=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('requested_by', models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='bulk_operations', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Bulk Operation',
                'verbose_name_plural': 'Bulk Operations',
                'db_table': 'bulletin_bulk_operation',
                'ordering': ['-started_at'],
            },
        ),
        migrations.CreateModel(
            name='BulletinDistributionLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('channels', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('delivered', 'Delivered'), ('failed', 'Failed')], default='pending', max_length=10)),
                ('error', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('batch', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='distribution_logs', to='gradebook.bulkoperation')),
                ('bulletin', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='distribution_logs', to='gradebook.bulletin')),
            ],
            options={
                'verbose_name': 'Distribution Log',
                'verbose_name_plural': 'Distribution Logs',
                'db_table': 'bulletin_distribution_log',
                'ordering': ['-created_at'],
                'unique_together': {('bulletin', 'batch')},
            },
        ),
    ]
