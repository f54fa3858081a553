from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('core', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='schoolsettings',
            name='public_verification_enabled',
            field=models.BooleanField(default=True, help_text='Let anyone holding a sent bulletin check it with its verification code'),
        ),
    ]
