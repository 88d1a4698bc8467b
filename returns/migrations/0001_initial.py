import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('orders', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='ReturnRequest',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('reason', models.TextField()),
                ('refund_amount', models.DecimalField(
                    decimal_places=2,
                    help_text='Snapshot of the order total when the return was requested',
                    max_digits=12,
                )),
                ('status', models.CharField(
                    choices=[
                        ('requested', 'Requested'),
                        ('approved', 'Approved'),
                        ('rejected', 'Rejected'),
                        ('pickup_scheduled', 'Pickup Scheduled'),
                        ('refund_initiated', 'Refund Initiated'),
                        ('refund_completed', 'Refund Completed'),
                    ],
                    db_index=True,
                    default='requested',
                    max_length=20,
                )),
                ('admin_notes', models.TextField(blank=True, default='')),
                ('refund_reference', models.CharField(blank=True, default='', max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='returns',
                    to='orders.order',
                )),
                ('user', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='returns',
                    to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                'verbose_name': 'Return Request',
                'verbose_name_plural': 'Return Requests',
                'ordering': ['-created_at'],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(('status__in', ['rejected', 'refund_completed']), _negated=True),
                        fields=('order',),
                        name='unique_active_return_per_order',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='ReturnItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('quantity', models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ('reason', models.CharField(blank=True, default='', max_length=255)),
                ('order_item', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='return_items',
                    to='orders.orderitem',
                )),
                ('return_request', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='items',
                    to='returns.returnrequest',
                )),
            ],
            options={
                'verbose_name': 'Return Item',
                'verbose_name_plural': 'Return Items',
                'ordering': ['id'],
            },
        ),
    ]
