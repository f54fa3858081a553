from decimal import Decimal

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='SchoolClass',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(help_text='e.g., Form 1A, Terminale C, 1ere F3', max_length=50, unique=True)),
                ('level', models.CharField(blank=True, max_length=30)),
                ('track', models.CharField(choices=[('general', 'General Education'), ('technical', 'Technical Education')], default='general', max_length=10)),
                ('capacity', models.PositiveIntegerField(default=60, help_text='Maximum number of students')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('class_teacher', models.ForeignKey(blank=True, help_text='The form tutor or class teacher responsible for this class.', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='assigned_classes', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Class',
                'verbose_name_plural': 'Classes',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='SubjectCategoryRule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=20, unique=True)),
                ('category', models.CharField(choices=[('general', 'General'), ('scientific', 'Scientific'), ('literary', 'Literary'), ('professional', 'Professional'), ('other', 'Other')], default='general', max_length=15)),
                ('bulletin_section', models.CharField(blank=True, choices=[('general', 'General Education'), ('professional', 'Professional Education'), ('other', 'Other Subjects')], max_length=15)),
            ],
            options={
                'verbose_name': 'Subject Category Rule',
                'verbose_name_plural': 'Subject Category Rules',
                'ordering': ['code'],
            },
        ),
        migrations.CreateModel(
            name='Subject',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(help_text='e.g., Mathematics, English Language, Electrotechnics', max_length=100)),
                ('code', models.CharField(blank=True, help_text='Optional subject code, used for category lookup', max_length=20)),
                ('coefficient', models.DecimalField(decimal_places=2, default=Decimal('1.00'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0.01'))])),
                ('weekly_hours', models.PositiveSmallIntegerField(default=0)),
                ('category', models.CharField(blank=True, choices=[('general', 'General'), ('scientific', 'Scientific'), ('literary', 'Literary'), ('professional', 'Professional'), ('other', 'Other')], max_length=15)),
                ('bulletin_section', models.CharField(blank=True, choices=[('general', 'General Education'), ('professional', 'Professional Education'), ('other', 'Other Subjects')], help_text='Only used for technical-track bulletin layouts', max_length=15)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('school_class', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='subjects', to='academics.schoolclass')),
                ('teacher', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='subject_assignments', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Subject',
                'verbose_name_plural': 'Subjects',
                'ordering': ['school_class', 'name'],
                'unique_together': {('school_class', 'name')},
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('coefficient__gt', 0)), name='subject_coefficient_positive'),
                ],
            },
        ),
    ]
