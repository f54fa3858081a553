import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    """Per-student subject selection; needs the students app in place."""

    dependencies = [
        ('academics', '0001_initial'),
        ('students', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='SubjectEnrollment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='subject_enrollments', to='students.student')),
                ('subject', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='enrollments', to='academics.subject')),
            ],
            options={
                'verbose_name': 'Subject Enrollment',
                'verbose_name_plural': 'Subject Enrollments',
                'unique_together': {('student', 'subject')},
            },
        ),
    ]
