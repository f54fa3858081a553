import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('gradebook', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='bulletin',
            name='verification_code',
            field=models.CharField(blank=True, editable=False, max_length=32, null=True, unique=True),
        ),
        migrations.AddField(
            model_name='bulletin',
            name='short_code',
            field=models.CharField(blank=True, editable=False, help_text='Printed under the QR code for manual entry', max_length=8, null=True, unique=True),
        ),
        migrations.AddField(
            model_name='bulletin',
            name='verification_count',
            field=models.PositiveIntegerField(default=0),
        ),
        migrations.AddField(
            model_name='bulletin',
            name='last_verified_at',
            field=models.DateTimeField(blank=True, null=True),
        ),
        migrations.AlterField(
            model_name='bulletindistributionlog',
            name='bulletin',
            field=models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='distribution_logs', to='gradebook.bulletin'),
        ),
        migrations.CreateModel(
            name='BulletinVerificationLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code_prefix', models.CharField(blank=True, max_length=8)),
                ('method', models.CharField(choices=[('qr_code', 'QR code'), ('manual_entry', 'Manual entry')], max_length=15)),
                ('result', models.CharField(choices=[('success', 'Success'), ('invalid_code', 'Invalid code'), ('access_denied', 'Access denied')], max_length=15)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('user_agent', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('bulletin', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='verification_logs', to='gradebook.bulletin')),
            ],
            options={
                'verbose_name': 'Verification Log',
                'verbose_name_plural': 'Verification Logs',
                'db_table': 'bulletin_verification_log',
                'ordering': ['-created_at'],
            },
        ),
    ]
