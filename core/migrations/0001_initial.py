from decimal import Decimal

import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='SchoolSettings',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('display_name', models.CharField(blank=True, max_length=100)),
                ('motto', models.CharField(blank=True, max_length=200)),
                ('address', models.TextField(blank=True)),
                ('promotion_threshold', models.DecimalField(blank=True, decimal_places=2, help_text='Minimum annual average (out of 20) for promotion. Empty = default (10).', max_digits=4, null=True, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('20'))])),
                ('cc_weight', models.DecimalField(blank=True, decimal_places=2, help_text='Weight of the continuous-assessment score. Exam weight = 1 - this. Empty = default (0.40).', max_digits=3, null=True, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('1'))])),
                ('bulletin_language', models.CharField(choices=[('en', 'English'), ('fr', 'French')], default='fr', max_length=2)),
                ('email_from_address', models.EmailField(blank=True, max_length=254)),
                ('email_from_name', models.CharField(blank=True, max_length=100)),
                ('default_channels', models.CharField(default='email,sms', help_text='Comma-separated channels used when a send does not name any (email, sms, chat)', max_length=50)),
                ('sms_enabled', models.BooleanField(default=False)),
                ('sms_backend', models.CharField(choices=[('console', 'Console (log only)'), ('arkesel', 'Arkesel'), ('hubtel', 'Hubtel'), ('africastalking', "Africa's Talking")], default='console', max_length=20)),
                ('sms_api_key', models.CharField(blank=True, max_length=255)),
                ('sms_sender_id', models.CharField(blank=True, max_length=11)),
                ('chat_enabled', models.BooleanField(default=False)),
                ('chat_backend', models.CharField(choices=[('console', 'Console (log only)'), ('whatsapp', 'WhatsApp Cloud API')], default='console', max_length=20)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'School Settings',
                'verbose_name_plural': 'School Settings',
            },
        ),
    ]
