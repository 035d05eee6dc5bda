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
            name='UserProfile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('free', 'Free'), ('pro', 'Pro'), ('max', 'Max')], default='free', max_length=8)),
                ('subscription_type', models.CharField(choices=[('free', 'Free'), ('pro_monthly', 'Pro (monthly)'), ('max_lifetime', 'Max (lifetime)')], default='free', max_length=16)),
                ('subscription_end_date', models.DateTimeField(blank=True, null=True)),
                ('subscription_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('subscription_status', models.CharField(default='inactive', max_length=16)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='profile', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
    ]
