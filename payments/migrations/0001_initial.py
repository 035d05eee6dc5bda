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
            name='PaymentOrder',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(db_index=True, max_length=64, unique=True)),
                ('plan', models.CharField(max_length=16)),
                ('amount', models.PositiveIntegerField()),
                ('currency', models.CharField(default='INR', max_length=8)),
                ('plans_version', models.PositiveIntegerField(default=1)),
                ('status', models.CharField(choices=[('created', 'Created'), ('paid', 'Paid')], default='created', max_length=12)),
                ('payment_id', models.CharField(blank=True, default='', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payment_orders', to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name='LedgerEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_id', models.CharField(db_index=True, max_length=64)),
                ('payment_id', models.CharField(max_length=64, unique=True)),
                ('amount', models.PositiveIntegerField()),
                ('currency', models.CharField(max_length=8)),
                ('gateway_status', models.CharField(max_length=16)),
                ('plan', models.CharField(max_length=16)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='ledger_entries', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name_plural': 'ledger entries',
                'ordering': ('-created_at',),
            },
        ),
        migrations.CreateModel(
            name='PendingCredit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('entitlement', 'Entitlement'), ('ledger', 'Ledger')], max_length=16)),
                ('order_id', models.CharField(max_length=64)),
                ('payment_id', models.CharField(db_index=True, max_length=64)),
                ('amount', models.PositiveIntegerField()),
                ('currency', models.CharField(max_length=8)),
                ('gateway_status', models.CharField(max_length=16)),
                ('plan', models.CharField(max_length=16)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True, default='')),
                ('resolved', models.BooleanField(db_index=True, default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='pending_credits', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ('created_at',),
                'constraints': [models.UniqueConstraint(fields=('kind', 'payment_id'), name='uq_pending_credit_kind_payment')],
            },
        ),
    ]
