"""
Tests for order intake, webhooks and the production pipeline.

Test Cases:
1. Order and items are created atomically
2. Replayed payment confirmations apply once
3. Out-of-order payment failures never regress a paid order
4. Carrier statuses map through the vocabulary table
5. SLA bands and pipeline queues
6. Bulk pipeline actions isolate failures
7. End-to-end: create -> paid -> delivered
"""
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.core import mail
from django.core.cache import cache
from django.db import DatabaseError, IntegrityError
from django.db.models.query import QuerySet
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from core.exceptions import (
    InvalidStateTransition,
    NotFound,
    OrderValidationError,
    PersistenceError,
    Unauthenticated,
)
from orders import pipeline
from orders.lifecycle import can_transition, transition_order
from orders.models import Order, OrderItem, OrderStatusHistory, ProcessedWebhookEvent
from orders.services import create_order, get_order_for_user, get_order_summary
from orders.shipments import CarrierStatus, map_carrier_status

User = get_user_model()

WEBHOOK_SECRET = 'whsec_test_secret'
RAZORPAY_URL = '/api/webhooks/razorpay/'
CARRIER_URL = '/api/webhooks/delivery-updates/'


def make_order(user, status=Order.Status.PLACED, total='11800.00', items=None, **fields):
    order = Order.objects.create(
        user=user,
        status=status,
        total_amount=Decimal(total),
        shipping_address={'line1': '12 MG Road', 'city': 'Bengaluru', 'pincode': '560001'},
        **fields
    )
    for product_ref, quantity, price in items or [('SKU-1', 2, '5900.00')]:
        OrderItem.objects.create(
            order=order,
            product_ref=product_ref,
            quantity=quantity,
            price_at_purchase=Decimal(price)
        )
    return order


def payment_event(order=None, event='payment.captured', created_at=1700000000,
                  payment_id='pay_TEST001', razorpay_order_id='order_RZP001', event_id=None):
    notes = {'order_id': str(order.pk)} if order is not None else []
    payment = {
        'id': payment_id,
        'entity': 'payment',
        'order_id': razorpay_order_id,
        'status': 'failed' if event == 'payment.failed' else 'captured',
        'notes': notes,
    }
    body = {
        'entity': 'event',
        'event': event,
        'created_at': created_at,
        'payload': {'payment': {'entity': payment}},
    }
    if event == 'order.paid':
        body['payload']['order'] = {'entity': {'id': razorpay_order_id, 'notes': notes}}
    if event_id:
        body['id'] = event_id
    return body


def sign(raw_body, secret=WEBHOOK_SECRET):
    return hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()


class WebhookClientMixin:

    def deliver_payment(self, event, event_id=None, signature=None):
        raw = json.dumps(event).encode('utf-8')
        headers = {'HTTP_X_RAZORPAY_SIGNATURE': signature if signature is not None else sign(raw)}
        if event_id:
            headers['HTTP_X_RAZORPAY_EVENT_ID'] = event_id
        return self.client.post(RAZORPAY_URL, raw, content_type='application/json', **headers)

    def deliver_tracking(self, order_ref, current_status, **extra):
        payload = {
            'awb': 'AWB7788990011',
            'courier_name': 'Delhivery',
            'current_status': current_status,
            'channel_order_id': order_ref,
            'shipment_id': 51001,
        }
        headers = {}
        if 'api_key' in extra:
            headers['HTTP_X_API_KEY'] = extra.pop('api_key')
        payload.update(extra)
        return self.client.post(
            CARRIER_URL,
            json.dumps(payload).encode('utf-8'),
            content_type='application/json',
            **headers
        )


class OrderIntakeTestCase(TestCase):
    """Order creation and read access."""

    def setUp(self):
        self.customer = User.objects.create_user('asha', email='asha@example.com', password='pw')
        self.other = User.objects.create_user('ravi', password='pw')
        self.staff = User.objects.create_user('ops', password='pw', is_staff=True)
        self.items = [{'product_id': 'SKU-1', 'quantity': 2, 'price': '5900.00'}]

    def test_create_order_pending_payment_with_items(self):
        order = create_order(
            self.customer,
            total_amount='11800.00',
            shipping_address={'city': 'Pune'},
            billing_address={'city': 'Pune'},
            items=self.items,
            razorpay_order_id='order_RZP001'
        )

        self.assertEqual(order.status, Order.Status.PENDING_PAYMENT)
        self.assertEqual(order.production_status, Order.ProductionStatus.NEW)
        self.assertEqual(order.total_amount, Decimal('11800.00'))
        self.assertEqual(order.items.count(), 1)

        item = order.items.get()
        self.assertEqual(item.product_ref, 'SKU-1')
        self.assertEqual(item.subtotal, Decimal('11800.00'))
        # No ledger entry at creation
        self.assertFalse(OrderStatusHistory.objects.filter(order=order).exists())

    def test_item_failure_rolls_back_order(self):
        """
        Test: No order row survives a failed item insert.

        Given: The line item insert fails
        When: Creating an order
        Then: PersistenceError is raised and nothing is persisted
        """
        with patch.object(OrderItem.objects, 'bulk_create', side_effect=IntegrityError('fk violation')):
            with self.assertRaises(PersistenceError) as context:
                create_order(self.customer, '11800.00', {}, {}, self.items)

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)
        self.assertNotIn('fk violation', context.exception.public_message)

    def test_validation_errors(self):
        invalid_items = [
            [],
            [{'product_id': 'SKU-1', 'quantity': 0, 'price': '10.00'}],
            [{'product_id': 'SKU-1', 'quantity': True, 'price': '10.00'}],
            [{'product_id': 'SKU-1', 'quantity': 1, 'price': '-1.00'}],
            [{'product_id': 'SKU-1', 'quantity': 1}],
            [{'quantity': 1, 'price': '10.00'}],
        ]
        for items in invalid_items:
            with self.subTest(items=items):
                with self.assertRaises(OrderValidationError):
                    create_order(self.customer, '10.00', {}, {}, items)

        with self.assertRaises(OrderValidationError):
            create_order(self.customer, '0', {}, {}, self.items)
        self.assertEqual(Order.objects.count(), 0)

    def test_anonymous_caller_rejected(self):
        with self.assertRaises(Unauthenticated):
            create_order(AnonymousUser(), '11800.00', {}, {}, self.items)

    def test_order_visible_to_owner_and_staff_only(self):
        order = make_order(self.customer)

        self.assertEqual(get_order_for_user(self.customer, order.pk), order)
        self.assertEqual(get_order_for_user(self.staff, order.pk), order)
        with self.assertRaises(NotFound):
            get_order_for_user(self.other, order.pk)
        with self.assertRaises(NotFound):
            get_order_for_user(self.customer, 'not-a-uuid')

    def test_create_order_api(self):
        client = APIClient()
        client.force_authenticate(self.customer)

        response = client.post('/api/orders/', {
            'total_amount': '11800.00',
            'shipping_address': {'line1': '12 MG Road', 'city': 'Bengaluru'},
            'items': self.items,
        }, format='json')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['status'], Order.Status.PENDING_PAYMENT)
        self.assertEqual(response.data['item_count'], 1)
        self.assertEqual(response.data['items'][0]['product_id'], 'SKU-1')

    def test_list_and_detail_api_scoped_to_caller(self):
        mine = make_order(self.customer)
        theirs = make_order(self.other)
        client = APIClient()
        client.force_authenticate(self.customer)

        response = client.get('/api/orders/')
        self.assertEqual(response.status_code, 200)
        ids = [row['id'] for row in response.data['results']]
        self.assertEqual(ids, [str(mine.pk)])

        self.assertEqual(client.get(f'/api/orders/{theirs.pk}/').status_code, 404)
        self.assertEqual(client.get(f'/api/orders/{mine.pk}/history/').status_code, 200)

    def test_summary_cache_invalidated_on_transition(self):
        cache.clear()
        order = make_order(self.customer, status=Order.Status.PENDING_PAYMENT)
        self.assertEqual(get_order_summary(order.pk)['status'], Order.Status.PENDING_PAYMENT)

        with self.captureOnCommitCallbacks(execute=True):
            transition_order(order.pk, Order.Status.PLACED, actor='test')

        self.assertEqual(get_order_summary(order.pk)['status'], Order.Status.PLACED)


class LifecycleTestCase(TestCase):

    def setUp(self):
        self.customer = User.objects.create_user('asha', password='pw')

    def test_transition_table(self):
        self.assertTrue(can_transition(Order.Status.PENDING_PAYMENT, Order.Status.PLACED))
        self.assertTrue(can_transition(Order.Status.DELIVERED, Order.Status.RETURN_REQUESTED))
        self.assertFalse(can_transition(Order.Status.DELIVERED, Order.Status.SHIPPED))
        self.assertFalse(can_transition(Order.Status.PENDING_PAYMENT, Order.Status.REFUNDED))
        self.assertFalse(can_transition(Order.Status.CANCELLED, Order.Status.SHIPPED))
        self.assertFalse(can_transition(Order.Status.REFUNDED, Order.Status.PLACED))

    def test_illegal_transition_is_noop(self):
        order = make_order(self.customer, status=Order.Status.PENDING_PAYMENT)

        applied = transition_order(order.pk, Order.Status.DELIVERED, actor='test')

        self.assertFalse(applied)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PENDING_PAYMENT)
        self.assertEqual(order.status_history.count(), 0)

    def test_second_identical_transition_writes_no_ledger_row(self):
        order = make_order(self.customer, status=Order.Status.PENDING_PAYMENT)

        self.assertTrue(transition_order(order.pk, Order.Status.PLACED, actor='test'))
        self.assertFalse(transition_order(order.pk, Order.Status.PLACED, actor='test'))
        self.assertEqual(order.status_history.count(), 1)


@override_settings(RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET)
class PaymentWebhookTestCase(WebhookClientMixin, TestCase):
    """Razorpay webhook: signature, dedupe, ordering and transitions."""

    def setUp(self):
        self.client = APIClient()
        self.customer = User.objects.create_user('asha', email='asha@example.com', password='pw')
        self.order = make_order(
            self.customer,
            status=Order.Status.PENDING_PAYMENT,
            razorpay_order_id='order_RZP001'
        )

    def test_capture_replay_applies_once(self):
        """
        Test: The same confirmation delivered three times.

        Given: A pending order
        When: payment.captured is delivered three times with one event id
        Then: Order is PLACED with exactly one ledger entry
        """
        event = payment_event(self.order)

        outcomes = [
            self.deliver_payment(event, event_id='evt_001').data['outcome']
            for _ in range(3)
        ]

        self.assertEqual(outcomes, ['applied', 'duplicate', 'duplicate'])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PLACED)
        self.assertEqual(self.order.razorpay_payment_id, 'pay_TEST001')
        self.assertEqual(self.order.status_history.filter(status=Order.Status.PLACED).count(), 1)
        self.assertEqual(ProcessedWebhookEvent.objects.count(), 1)

    def test_capture_replay_without_event_id(self):
        event = payment_event(self.order)

        first = self.deliver_payment(event)
        second = self.deliver_payment(event)

        self.assertEqual(first.data['outcome'], 'applied')
        self.assertEqual(second.data['outcome'], 'already_applied')
        self.assertEqual(self.order.status_history.count(), 1)

    def test_stale_failure_keeps_order_placed(self):
        """
        Test: payment.failed older than the applied capture changes nothing.
        """
        self.deliver_payment(payment_event(self.order, created_at=1700002000), event_id='evt_cap')
        response = self.deliver_payment(
            payment_event(self.order, event='payment.failed', created_at=1700001000),
            event_id='evt_fail'
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['outcome'], 'stale')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PLACED)
        self.assertEqual(self.order.status_history.count(), 1)

    def test_newer_failure_does_not_cancel_paid_order(self):
        self.deliver_payment(payment_event(self.order, created_at=1700001000))
        response = self.deliver_payment(
            payment_event(self.order, event='payment.failed', created_at=1700002000)
        )

        self.assertEqual(response.data['outcome'], 'ignored')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PLACED)

    def test_failure_cancels_pending_order(self):
        response = self.deliver_payment(payment_event(self.order, event='payment.failed'))

        self.assertEqual(response.data['outcome'], 'applied')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)

    def test_retried_payment_places_cancelled_order(self):
        """
        Test: The customer retries after a failed attempt and pays.

        Given: payment.failed for attempt A cancelled the pending order
        When: payment.captured for attempt B arrives with a newer timestamp
        Then: Order is PLACED with attempt B's payment id
        """
        self.deliver_payment(
            payment_event(self.order, event='payment.failed', created_at=1700000000, payment_id='pay_A'),
            event_id='evt_fail_a'
        )
        response = self.deliver_payment(
            payment_event(self.order, created_at=1700000300, payment_id='pay_B'),
            event_id='evt_cap_b'
        )

        self.assertEqual(response.data['outcome'], 'applied')
        self.assertEqual(response.data['status'], Order.Status.PLACED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PLACED)
        self.assertEqual(self.order.razorpay_payment_id, 'pay_B')
        self.assertEqual(
            list(self.order.status_history.values_list('status', flat=True)),
            [Order.Status.CANCELLED, Order.Status.PLACED]
        )

    def test_capture_older_than_failure_is_stale(self):
        self.deliver_payment(payment_event(self.order, event='payment.failed', created_at=1700002000))
        response = self.deliver_payment(payment_event(self.order, created_at=1700001000))

        self.assertEqual(response.data['outcome'], 'stale')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.status_history.count(), 1)

    def test_capture_never_revives_order_cancelled_after_payment(self):
        """
        Test: A paid order later cancelled by the carrier stays cancelled.

        Given: A captured order that a return-to-origin cancelled
        When: Another capture with a newer timestamp arrives
        Then: Outcome is ignored and the order stays CANCELLED
        """
        self.deliver_payment(payment_event(self.order, created_at=1700001000))
        self.deliver_tracking(str(self.order.pk), 'RTO Initiated')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)

        response = self.deliver_payment(
            payment_event(self.order, created_at=1700009000, payment_id='pay_AGAIN')
        )

        self.assertEqual(response.data['outcome'], 'ignored')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.razorpay_payment_id, 'pay_TEST001')

    def test_resolves_by_gateway_order_id(self):
        response = self.deliver_payment(payment_event(event='order.paid'))

        self.assertEqual(response.data['outcome'], 'applied')
        self.assertEqual(response.data['order_id'], str(self.order.pk))

    def test_unresolved_event_acknowledged(self):
        response = self.deliver_payment(payment_event(razorpay_order_id='order_UNKNOWN'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['outcome'], 'unresolved')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING_PAYMENT)

    def test_authorized_event_ignored(self):
        response = self.deliver_payment(payment_event(self.order, event='payment.authorized'))

        self.assertEqual(response.data['outcome'], 'ignored')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING_PAYMENT)

    def test_invalid_signature_rejected(self):
        response = self.deliver_payment(payment_event(self.order), signature='deadbeef')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'Invalid Signature')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING_PAYMENT)
        self.assertEqual(ProcessedWebhookEvent.objects.count(), 0)

    def test_missing_signature_rejected(self):
        raw = json.dumps(payment_event(self.order)).encode('utf-8')
        response = self.client.post(RAZORPAY_URL, raw, content_type='application/json')

        self.assertEqual(response.status_code, 400)

    def test_malformed_body_with_valid_signature(self):
        raw = b'not json'
        response = self.client.post(
            RAZORPAY_URL, raw, content_type='application/json',
            HTTP_X_RAZORPAY_SIGNATURE=sign(raw)
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'Malformed Payload')

    def test_signed_event_with_non_object_payload(self):
        bodies = [
            {'event': 'payment.captured', 'payload': ['payment']},
            {'event': 'payment.failed', 'payload': {'payment': 'pay_TEST001'}},
            {'event': 'refund.processed', 'payload': {'refund': {'entity': 42}}},
        ]
        for body in bodies:
            with self.subTest(body=body):
                response = self.deliver_payment(body)

                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.data['error'], 'Malformed Payload')

        self.assertEqual(ProcessedWebhookEvent.objects.count(), 0)

    @override_settings(RAZORPAY_WEBHOOK_SECRET='')
    def test_missing_secret_is_server_error(self):
        response = self.deliver_payment(payment_event(self.order), signature='anything')

        self.assertEqual(response.status_code, 500)

    def test_paid_notification_sent_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.deliver_payment(payment_event(self.order))

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['asha@example.com'])
        self.assertIn(self.order.short_id, mail.outbox[0].subject)


class CarrierWebhookTestCase(WebhookClientMixin, TestCase):
    """Carrier tracking updates."""

    def setUp(self):
        self.client = APIClient()
        self.customer = User.objects.create_user('asha', password='pw')
        self.order = make_order(self.customer, status=Order.Status.PLACED)

    def test_vocabulary_table(self):
        self.assertEqual(map_carrier_status('Delivered'), CarrierStatus.DELIVERED)
        self.assertEqual(map_carrier_status('OUT_FOR_DELIVERY'), CarrierStatus.SHIPPED)
        self.assertEqual(map_carrier_status('In-Transit'), CarrierStatus.SHIPPED)
        self.assertEqual(map_carrier_status('RTO Initiated'), CarrierStatus.CANCELLED)
        self.assertEqual(map_carrier_status('Undelivered'), CarrierStatus.UNRECOGNIZED)
        self.assertEqual(map_carrier_status(None), CarrierStatus.UNRECOGNIZED)

    def test_vocabulary_matches_inside_status_text(self):
        expected = {
            'RTO OFD': CarrierStatus.CANCELLED,
            'RTO NDR': CarrierStatus.CANCELLED,
            'RTO_LOCK': CarrierStatus.CANCELLED,
            'RTO Delivered': CarrierStatus.CANCELLED,
            'Shipment Cancelled': CarrierStatus.CANCELLED,
            'In Transit-EN-ROUTE': CarrierStatus.SHIPPED,
            'Shipped - In Transit': CarrierStatus.SHIPPED,
            'Pickup Exception': CarrierStatus.SHIPPED,
            'Delivered To Customer': CarrierStatus.DELIVERED,
            'Not Delivered': CarrierStatus.UNRECOGNIZED,
            'Lost': CarrierStatus.UNRECOGNIZED,
        }
        got = {text: map_carrier_status(text) for text in expected}

        self.assertEqual(got, expected)

    def test_return_to_origin_cancels_shipped_order(self):
        self.order.status = Order.Status.SHIPPED
        self.order.save(update_fields=['status'])

        response = self.deliver_tracking(str(self.order.pk), 'RTO OFD')

        self.assertEqual(response.data['outcome'], 'applied')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.shipping_info['carrier_status'], 'RTO OFD')

    def test_delivered_update_applied(self):
        response = self.deliver_tracking(str(self.order.pk), 'Delivered')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['outcome'], 'applied')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DELIVERED)
        self.assertEqual(self.order.shipping_info['awb_code'], 'AWB7788990011')
        self.assertEqual(self.order.shipping_info['courier_name'], 'Delhivery')
        history = self.order.status_history.get()
        self.assertEqual(history.changed_by, 'system (carrier webhook)')

    def test_unrecognized_status_merges_metadata_only(self):
        response = self.deliver_tracking(str(self.order.pk), 'Undelivered - Customer Unavailable')

        self.assertEqual(response.data['outcome'], 'metadata_only')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PLACED)
        self.assertEqual(self.order.shipping_info['carrier_status'], 'Undelivered - Customer Unavailable')
        self.assertEqual(self.order.shipping_info['awb_code'], 'AWB7788990011')
        self.assertEqual(self.order.status_history.count(), 0)

    def test_delivered_never_reverts_to_shipped(self):
        self.deliver_tracking(str(self.order.pk), 'Delivered')
        response = self.deliver_tracking(str(self.order.pk), 'In Transit')

        self.assertEqual(response.data['outcome'], 'metadata_only')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.DELIVERED)

    def test_prefixed_channel_order_id(self):
        response = self.deliver_tracking(f'10042_{self.order.pk}', 'Shipped')

        self.assertEqual(response.data['outcome'], 'applied')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SHIPPED)

    def test_unknown_order_acknowledged_without_success(self):
        for ref in (str(uuid.uuid4()), 'ORD-42', ''):
            with self.subTest(ref=ref):
                response = self.deliver_tracking(ref, 'Delivered')
                self.assertEqual(response.status_code, 200)
                self.assertFalse(response.data['success'])

    def test_repeated_ping_not_duplicated_in_history(self):
        for _ in range(2):
            self.deliver_tracking(
                str(self.order.pk), 'In Transit', current_timestamp='2024-05-01 10:00:00'
            )

        self.order.refresh_from_db()
        self.assertEqual(len(self.order.shipping_info['history']), 1)
        self.assertEqual(self.order.status_history.count(), 1)

    def test_stale_ping_ignored(self):
        Order.objects.filter(pk=self.order.pk).update(
            last_carrier_event_at=timezone.make_aware(datetime(2024, 6, 1, 12, 0))
        )

        response = self.deliver_tracking(
            str(self.order.pk), 'Delivered', current_timestamp='2024-05-01 10:00:00'
        )

        self.assertEqual(response.data['outcome'], 'stale')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PLACED)
        self.assertEqual(self.order.shipping_info, {})

    @override_settings(CARRIER_WEBHOOK_TOKEN='carrier-token')
    def test_token_required_when_configured(self):
        denied = self.deliver_tracking(str(self.order.pk), 'Delivered')
        allowed = self.deliver_tracking(str(self.order.pk), 'Delivered', api_key='carrier-token')

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(allowed.status_code, 200)

    def test_liveness_get(self):
        response = self.client.get(CARRIER_URL)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data['success'])


class SLATestCase(TestCase):

    def setUp(self):
        self.now = timezone.now()

    def test_urgent_band(self):
        """
        Test: 10 hours left of a 24 hour window.
        """
        info = pipeline.compute_sla(
            self.now + timedelta(hours=10),
            self.now - timedelta(hours=14),
            now=self.now
        )

        self.assertEqual(info.band, pipeline.SLABand.URGENT)
        self.assertEqual(info.hours_remaining, 10)
        self.assertEqual(info.percent_elapsed, 58.3)

    def test_breached_band(self):
        info = pipeline.compute_sla(
            self.now - timedelta(hours=1),
            self.now - timedelta(hours=30),
            now=self.now
        )

        self.assertEqual(info.band, pipeline.SLABand.BREACHED)
        self.assertEqual(info.hours_remaining, 1)
        self.assertEqual(info.percent_elapsed, 100.0)

    def test_hours_agree_with_band(self):
        """
        Test: Displayed hours never contradict the band threshold.

        Given: 23h36m left, and 12 minutes overdue
        When: Computing the SLA
        Then: URGENT shows 23 hours, BREACHED shows 1 hour overdue
        """
        urgent = pipeline.compute_sla(self.now + timedelta(hours=23.6), None, now=self.now)
        breached = pipeline.compute_sla(self.now - timedelta(hours=0.2), None, now=self.now)

        self.assertEqual(urgent.band, pipeline.SLABand.URGENT)
        self.assertEqual(urgent.hours_remaining, 23)
        self.assertEqual(breached.band, pipeline.SLABand.BREACHED)
        self.assertEqual(breached.hours_remaining, 1)

    def test_remaining_bands(self):
        warning = pipeline.compute_sla(self.now + timedelta(hours=30), None, now=self.now)
        on_track = pipeline.compute_sla(self.now + timedelta(hours=72), None, now=self.now)
        no_sla = pipeline.compute_sla(None, None, now=self.now)

        self.assertEqual(warning.band, pipeline.SLABand.WARNING)
        self.assertEqual(on_track.band, pipeline.SLABand.ON_TRACK)
        self.assertEqual(no_sla.band, pipeline.SLABand.NO_SLA)

    def test_percent_clamped(self):
        info = pipeline.compute_sla(
            self.now + timedelta(hours=72),
            self.now + timedelta(hours=5),
            now=self.now
        )

        self.assertEqual(info.percent_elapsed, 0.0)


class PipelineTestCase(TestCase):
    """Production stage transitions, queues and bulk actions."""

    def setUp(self):
        self.customer = User.objects.create_user('asha', password='pw')
        self.staff = User.objects.create_user('ops', password='pw', is_staff=True)

    def test_advance_into_production_stamps_start_date(self):
        order = make_order(self.customer)

        order = pipeline.advance_production(order.pk, Order.ProductionStatus.IN_PRODUCTION, actor='ops')

        self.assertEqual(order.production_status, Order.ProductionStatus.IN_PRODUCTION)
        self.assertIsNotNone(order.start_date)

    def test_advance_refuses_skips_and_backwards_moves(self):
        order = make_order(self.customer, production_status=Order.ProductionStatus.QC)

        for target in (Order.ProductionStatus.NEW, Order.ProductionStatus.QC):
            with self.subTest(target=target):
                with self.assertRaises(InvalidStateTransition):
                    pipeline.advance_production(order.pk, target)

        fresh = make_order(self.customer)
        with self.assertRaises(InvalidStateTransition):
            pipeline.advance_production(fresh.pk, Order.ProductionStatus.QC)

    def test_advance_refuses_unpaid_order(self):
        order = make_order(self.customer, status=Order.Status.PENDING_PAYMENT)

        with self.assertRaises(InvalidStateTransition):
            pipeline.advance_production(order.pk, Order.ProductionStatus.IN_PRODUCTION)

        order.refresh_from_db()
        self.assertEqual(order.production_status, Order.ProductionStatus.NEW)

    def test_shipped_only_through_ship_order(self):
        order = make_order(self.customer, production_status=Order.ProductionStatus.READY)

        with self.assertRaises(InvalidStateTransition):
            pipeline.advance_production(order.pk, Order.ProductionStatus.SHIPPED)

    def test_bulk_advance_isolates_failures(self):
        """
        Test: One bad order doesn't block the rest.

        Given: A valid order, a wrong-stage order, an unpaid order and an unknown id
        When: Bulk advancing all four to In-Production
        Then: Only the valid order moves and each id gets its own result
        """
        valid = make_order(self.customer)
        wrong_stage = make_order(self.customer, production_status=Order.ProductionStatus.QC)
        unpaid = make_order(self.customer, status=Order.Status.PENDING_PAYMENT)
        missing = uuid.uuid4()

        results = pipeline.bulk_advance(
            [valid.pk, wrong_stage.pk, unpaid.pk, missing],
            Order.ProductionStatus.IN_PRODUCTION,
            actor='ops'
        )

        self.assertEqual(
            [r['success'] for r in results],
            [True, False, False, False]
        )
        self.assertEqual(results[3]['order_id'], str(missing))
        self.assertIsNotNone(results[1]['error'])

        valid.refresh_from_db()
        wrong_stage.refresh_from_db()
        unpaid.refresh_from_db()
        self.assertEqual(valid.production_status, Order.ProductionStatus.IN_PRODUCTION)
        self.assertEqual(wrong_stage.production_status, Order.ProductionStatus.QC)
        self.assertEqual(unpaid.production_status, Order.ProductionStatus.NEW)

    def test_bulk_advance_survives_storage_error(self):
        """
        Test: A failed write on one order leaves its neighbours transitioned.

        Given: Three paid orders in New
        When: The stage update for the middle order raises DatabaseError
        Then: First and last move to In-Production, the middle reports failure
        """
        first, middle, last = (make_order(self.customer) for _ in range(3))
        original_update = QuerySet.update
        update_calls = []

        def flaky_update(queryset, **kwargs):
            update_calls.append(kwargs)
            if len(update_calls) == 2:
                raise DatabaseError('disk I/O error')
            return original_update(queryset, **kwargs)

        with patch.object(QuerySet, 'update', autospec=True, side_effect=flaky_update):
            results = pipeline.bulk_advance(
                [first.pk, middle.pk, last.pk],
                Order.ProductionStatus.IN_PRODUCTION,
                actor='ops'
            )

        self.assertEqual([r['success'] for r in results], [True, False, True])
        self.assertEqual(results[1]['order_id'], str(middle.pk))
        self.assertNotIn('disk I/O error', results[1]['error'])

        for order, expected in (
            (first, Order.ProductionStatus.IN_PRODUCTION),
            (middle, Order.ProductionStatus.NEW),
            (last, Order.ProductionStatus.IN_PRODUCTION),
        ):
            order.refresh_from_db()
            self.assertEqual(order.production_status, expected)

    def test_ship_order_moves_both_machines(self):
        order = make_order(self.customer, production_status=Order.ProductionStatus.READY)

        order = pipeline.ship_order(
            order.pk,
            {'courier_name': 'Blue Dart', 'awb_code': 'BD123456', 'provider': 'SHIPROCKET'},
            actor='ops'
        )

        self.assertEqual(order.production_status, Order.ProductionStatus.SHIPPED)
        self.assertEqual(order.status, Order.Status.SHIPPED)
        self.assertEqual(order.shipping_info['awb_code'], 'BD123456')
        self.assertIn('shipped_date', order.shipping_info)
        self.assertEqual(order.status_history.get().changed_by, 'ops')

    def test_ship_order_requires_ready(self):
        order = make_order(self.customer, production_status=Order.ProductionStatus.QC)

        with self.assertRaises(InvalidStateTransition):
            pipeline.ship_order(order.pk, {'courier_name': 'Blue Dart', 'awb_code': 'X'}, actor='ops')

    def test_queues_and_critical_window(self):
        now = timezone.now()
        due_soon = make_order(self.customer, target_ship_date=now + timedelta(hours=5))
        make_order(self.customer, target_ship_date=now + timedelta(hours=48))
        make_order(
            self.customer,
            status=Order.Status.PENDING_PAYMENT,
            target_ship_date=now + timedelta(hours=5)
        )
        make_order(
            self.customer,
            production_status=Order.ProductionStatus.QC,
            target_ship_date=now + timedelta(hours=5)
        )

        critical = list(pipeline.pipeline_queue('critical', now=now))
        self.assertEqual(critical, [due_soon])

        counts = pipeline.queue_counts(now=now)
        self.assertEqual(counts['new'], 2)
        self.assertEqual(counts['qc'], 1)
        self.assertEqual(counts['critical'], 1)

        with self.assertRaises(OrderValidationError):
            pipeline.pipeline_queue('backlog')

    def test_materials_and_schedule(self):
        order = make_order(self.customer)
        target = timezone.now() + timedelta(days=3)

        pipeline.toggle_materials_available(order.pk, True)
        pipeline.update_schedule(order.pk, target_ship_date=target, production_notes='Recut panel')

        order.refresh_from_db()
        self.assertTrue(order.materials_available)
        self.assertEqual(order.target_ship_date, target)
        self.assertEqual(order.production_notes, 'Recut panel')

    def test_pipeline_api_staff_only(self):
        make_order(self.customer)
        client = APIClient()

        client.force_authenticate(self.customer)
        self.assertEqual(client.get('/api/pipeline/?stage=new').status_code, 403)

        client.force_authenticate(self.staff)
        response = client.get('/api/pipeline/?stage=new')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['sla']['band'], pipeline.SLABand.NO_SLA)

    def test_bulk_advance_api(self):
        order = make_order(self.customer)
        client = APIClient()
        client.force_authenticate(self.staff)

        response = client.post('/api/pipeline/bulk-advance/', {
            'order_ids': [str(order.pk), str(uuid.uuid4())],
            'target_status': 'In-Production',
        }, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['succeeded'], 1)
        self.assertEqual(response.data['failed'], 1)


@override_settings(RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET)
class EndToEndTestCase(WebhookClientMixin, TestCase):

    def test_order_paid_then_delivered(self):
        """
        Test: Full happy path through intake and both webhooks.

        Given: A customer checking out one item (qty 2 @ 5900)
        When: The gateway reports order.paid and the carrier reports Delivered
        Then: Order ends DELIVERED with the AWB recorded and two ledger rows
        """
        customer = User.objects.create_user('asha', password='pw')
        self.client = APIClient()
        self.client.force_authenticate(customer)

        response = self.client.post('/api/orders/', {
            'total_amount': '11800.00',
            'shipping_address': {'line1': '12 MG Road', 'city': 'Bengaluru', 'pincode': '560001'},
            'items': [{'product_id': 'SKU-1', 'quantity': 2, 'price': '5900.00'}],
            'razorpay_order_id': 'order_RZP900',
        }, format='json')
        self.assertEqual(response.status_code, 201)
        order = Order.objects.get(pk=response.data['id'])
        self.assertEqual(order.total_amount, Decimal('11800.00'))

        self.client.force_authenticate(None)
        paid = self.deliver_payment(
            payment_event(order, event='order.paid', razorpay_order_id='order_RZP900'),
            event_id='evt_e2e_paid'
        )
        self.assertEqual(paid.data['outcome'], 'applied')
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PLACED)
        self.assertEqual(order.status_history.count(), 1)

        delivered = self.deliver_tracking(str(order.pk), 'Delivered')
        self.assertEqual(delivered.data['outcome'], 'applied')
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.DELIVERED)
        self.assertEqual(order.shipping_info['awb_code'], 'AWB7788990011')
        self.assertEqual(
            list(order.status_history.values_list('status', flat=True)),
            [Order.Status.PLACED, Order.Status.DELIVERED]
        )
