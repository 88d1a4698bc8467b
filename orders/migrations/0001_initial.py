import uuid
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
            name='Order',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('status', models.CharField(
                    choices=[
                        ('PENDING_PAYMENT', 'Payment Pending'),
                        ('PLACED', 'Paid'),
                        ('SHIPPED', 'Shipped'),
                        ('DELIVERED', 'Delivered'),
                        ('CANCELLED', 'Cancelled'),
                        ('RETURN_REQUESTED', 'Return Requested'),
                        ('RETURN_APPROVED', 'Return Approved'),
                        ('RETURN_REJECTED', 'Return Rejected'),
                        ('REFUNDED', 'Refunded'),
                    ],
                    db_index=True,
                    default='PENDING_PAYMENT',
                    help_text='Payment/delivery lifecycle status',
                    max_length=20,
                )),
                ('production_status', models.CharField(
                    choices=[
                        ('New', 'New'),
                        ('In-Production', 'In Production'),
                        ('QC', 'Quality Check'),
                        ('Ready', 'Ready to Pack'),
                        ('Shipped', 'Shipped'),
                    ],
                    db_index=True,
                    default='New',
                    help_text='Seller production pipeline stage',
                    max_length=20,
                )),
                ('total_amount', models.DecimalField(
                    decimal_places=2,
                    help_text='Order total, fixed at creation',
                    max_digits=12,
                    validators=[django.core.validators.MinValueValidator(Decimal('0.01'))],
                )),
                ('currency', models.CharField(default='INR', max_length=3)),
                ('shipping_address', models.JSONField(default=dict)),
                ('billing_address', models.JSONField(default=dict)),
                ('tax_breakdown', models.JSONField(blank=True, null=True)),
                ('razorpay_order_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('razorpay_payment_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('last_payment_event_at', models.DateTimeField(
                    blank=True,
                    help_text='Gateway timestamp of the newest applied payment event',
                    null=True,
                )),
                ('shipping_info', models.JSONField(blank=True, default=dict)),
                ('last_carrier_event_at', models.DateTimeField(
                    blank=True,
                    help_text='Carrier timestamp of the newest applied tracking update',
                    null=True,
                )),
                ('start_date', models.DateTimeField(blank=True, null=True)),
                ('target_ship_date', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('materials_available', models.BooleanField(default=False)),
                ('production_notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(
                    help_text='Customer who placed the order',
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='orders',
                    to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                'verbose_name': 'Order',
                'verbose_name_plural': 'Orders',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['user', 'status'], name='order_user_status_idx'),
                    models.Index(fields=['production_status', 'target_ship_date'], name='order_pipeline_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='OrderItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('product_ref', models.CharField(db_index=True, help_text='Catalog product reference', max_length=64)),
                ('quantity', models.PositiveIntegerField(
                    help_text='Quantity ordered',
                    validators=[django.core.validators.MinValueValidator(1)],
                )),
                ('price_at_purchase', models.DecimalField(
                    decimal_places=2,
                    help_text='Price per unit at time of purchase',
                    max_digits=10,
                )),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(
                    help_text='Parent order',
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='items',
                    to='orders.order',
                )),
            ],
            options={
                'verbose_name': 'Order Item',
                'verbose_name_plural': 'Order Items',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='OrderStatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(
                    choices=[
                        ('PENDING_PAYMENT', 'Payment Pending'),
                        ('PLACED', 'Paid'),
                        ('SHIPPED', 'Shipped'),
                        ('DELIVERED', 'Delivered'),
                        ('CANCELLED', 'Cancelled'),
                        ('RETURN_REQUESTED', 'Return Requested'),
                        ('RETURN_APPROVED', 'Return Approved'),
                        ('RETURN_REJECTED', 'Return Rejected'),
                        ('REFUNDED', 'Refunded'),
                    ],
                    max_length=20,
                )),
                ('changed_by', models.CharField(max_length=100)),
                ('notes', models.TextField(blank=True, default='')),
                ('changed_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('order', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='status_history',
                    to='orders.order',
                )),
            ],
            options={
                'verbose_name': 'Order Status History',
                'verbose_name_plural': 'Order Status History',
                'ordering': ['changed_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='ProcessedWebhookEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('provider', models.CharField(choices=[('razorpay', 'Razorpay')], max_length=20)),
                ('event_id', models.CharField(max_length=100)),
                ('event_type', models.CharField(blank=True, default='', max_length=64)),
                ('outcome', models.CharField(max_length=20)),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='webhook_events',
                    to='orders.order',
                )),
            ],
            options={
                'verbose_name': 'Processed Webhook Event',
                'verbose_name_plural': 'Processed Webhook Events',
                'ordering': ['-received_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('provider', 'event_id'), name='unique_provider_event'),
                ],
            },
        ),
    ]
