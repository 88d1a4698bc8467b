"""
Tests for the return/refund workflow.

Test Cases:
1. Only paid or delivered orders can be returned
2. Return items are validated against the order
3. Review steps project onto the order status
4. Refund completion only through the gateway refund event
"""
import hashlib
import hmac
import json
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from core.exceptions import (
    Forbidden,
    InvalidStateTransition,
    NotFound,
    OrderValidationError,
)
from orders.models import Order, OrderItem
from returns.models import ReturnRequest
from returns.services import (
    complete_refund,
    create_return,
    get_all_returns,
    get_user_returns,
    update_return_status,
)

User = get_user_model()

WEBHOOK_SECRET = 'whsec_returns_test'


class ReturnTestMixin:

    def setUp(self):
        self.customer = User.objects.create_user('asha', password='pw')
        self.other = User.objects.create_user('ravi', password='pw')
        self.staff = User.objects.create_user('support', password='pw', is_staff=True)

    def make_order(self, status=Order.Status.DELIVERED, user=None):
        order = Order.objects.create(
            user=user or self.customer,
            status=status,
            total_amount=Decimal('2500.00'),
            razorpay_payment_id=f'pay_{Order.objects.count() + 1:04d}'
        )
        OrderItem.objects.create(
            order=order, product_ref='MUG-01', quantity=2, price_at_purchase=Decimal('750.00')
        )
        OrderItem.objects.create(
            order=order, product_ref='PLATE-02', quantity=1, price_at_purchase=Decimal('1000.00')
        )
        return order


class ReturnEligibilityTestCase(ReturnTestMixin, TestCase):

    def test_paid_and_delivered_orders_accept_returns(self):
        for status in (Order.Status.PLACED, Order.Status.DELIVERED):
            with self.subTest(status=status):
                order = self.make_order(status=status)

                return_request = create_return(self.customer, order.pk, 'Arrived chipped')

                order.refresh_from_db()
                self.assertEqual(order.status, Order.Status.RETURN_REQUESTED)
                self.assertEqual(return_request.status, ReturnRequest.Status.REQUESTED)
                self.assertEqual(return_request.refund_amount, Decimal('2500.00'))
                self.assertEqual(return_request.items.count(), 2)

    def test_other_statuses_refused(self):
        """
        Test: Returns are refused outside PLACED/DELIVERED.

        Given: Orders that are unpaid, in transit, cancelled or already refunded
        When: The owner requests a return
        Then: InvalidStateTransition and no return row
        """
        refused = (
            Order.Status.PENDING_PAYMENT,
            Order.Status.SHIPPED,
            Order.Status.CANCELLED,
            Order.Status.REFUNDED,
        )
        for status in refused:
            with self.subTest(status=status):
                order = self.make_order(status=status)
                with self.assertRaises(InvalidStateTransition):
                    create_return(self.customer, order.pk, 'Changed my mind')
                order.refresh_from_db()
                self.assertEqual(order.status, status)

        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_only_owner_can_request(self):
        order = self.make_order()

        with self.assertRaises(NotFound):
            create_return(self.other, order.pk, 'Not mine')
        with self.assertRaises(NotFound):
            create_return(self.customer, 'bad-id', 'Typo')

    def test_second_return_refused_while_first_open(self):
        order = self.make_order()
        create_return(self.customer, order.pk, 'Wrong colour')

        with self.assertRaises(InvalidStateTransition):
            create_return(self.customer, order.pk, 'Asking again')
        self.assertEqual(ReturnRequest.objects.filter(order=order).count(), 1)

    def test_item_validation(self):
        order = self.make_order()
        mug = order.items.get(product_ref='MUG-01')
        foreign_item = self.make_order(user=self.other).items.first()

        invalid = [
            [{'order_item_id': mug.pk, 'quantity': 3}],
            [{'order_item_id': foreign_item.pk, 'quantity': 1}],
            [{'order_item_id': mug.pk, 'quantity': 1}, {'order_item_id': mug.pk, 'quantity': 1}],
        ]
        for items in invalid:
            with self.subTest(items=items):
                with self.assertRaises(OrderValidationError):
                    create_return(self.customer, order.pk, 'Broken', items)

        with self.assertRaises(OrderValidationError):
            create_return(self.customer, order.pk, '   ')

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.DELIVERED)

    def test_partial_return(self):
        order = self.make_order()
        mug = order.items.get(product_ref='MUG-01')

        return_request = create_return(
            self.customer, order.pk, 'One mug cracked',
            [{'order_item_id': mug.pk, 'quantity': 1, 'reason': 'Cracked handle'}]
        )

        item = return_request.items.get()
        self.assertEqual(item.order_item, mug)
        self.assertEqual(item.quantity, 1)


class ReturnReviewTestCase(ReturnTestMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.order = self.make_order()
        self.return_request = create_return(self.customer, self.order.pk, 'Wrong size')

    def test_customer_cannot_review(self):
        with self.assertRaises(Forbidden):
            update_return_status(self.customer, self.return_request.pk, 'approved')

    def test_approve_projects_onto_order(self):
        updated = update_return_status(
            self.staff, self.return_request.pk, 'approved', admin_notes='Photos confirm damage'
        )

        self.assertEqual(updated.status, ReturnRequest.Status.APPROVED)
        self.assertEqual(updated.admin_notes, 'Photos confirm damage')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.RETURN_APPROVED)
        self.assertEqual(self.order.status_history.last().changed_by, 'support')

    def test_reject_projects_onto_order(self):
        update_return_status(self.staff, self.return_request.pk, 'rejected')

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.RETURN_REJECTED)

    def test_illegal_edges_refused(self):
        with self.assertRaises(InvalidStateTransition):
            update_return_status(self.staff, self.return_request.pk, 'refund_initiated')
        with self.assertRaises(OrderValidationError):
            update_return_status(self.staff, self.return_request.pk, 'lost')

        self.return_request.refresh_from_db()
        self.assertEqual(self.return_request.status, ReturnRequest.Status.REQUESTED)

    def test_manual_refund_completion_refused(self):
        update_return_status(self.staff, self.return_request.pk, 'approved')
        update_return_status(self.staff, self.return_request.pk, 'refund_initiated')

        with self.assertRaises(InvalidStateTransition):
            update_return_status(self.staff, self.return_request.pk, 'refund_completed')

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.RETURN_APPROVED)

    def test_refund_initiated_does_not_refund_order(self):
        update_return_status(self.staff, self.return_request.pk, 'pickup_scheduled')
        update_return_status(self.staff, self.return_request.pk, 'refund_initiated')

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.RETURN_APPROVED)

    def test_reject_after_approval_refused(self):
        update_return_status(self.staff, self.return_request.pk, 'approved')
        update_return_status(self.staff, self.return_request.pk, 'pickup_scheduled')

        with self.assertRaises(InvalidStateTransition):
            update_return_status(self.staff, self.return_request.pk, 'rejected')

        self.return_request.refresh_from_db()
        self.assertEqual(self.return_request.status, ReturnRequest.Status.PICKUP_SCHEDULED)

    def test_complete_refund(self):
        update_return_status(self.staff, self.return_request.pk, 'approved')
        update_return_status(self.staff, self.return_request.pk, 'refund_initiated')

        self.assertTrue(complete_refund(self.order, refund_id='rfnd_001', actor='gateway'))
        self.assertFalse(complete_refund(self.order, refund_id='rfnd_001', actor='gateway'))

        self.order.refresh_from_db()
        self.return_request.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.REFUNDED)
        self.assertEqual(self.return_request.status, ReturnRequest.Status.REFUND_COMPLETED)
        self.assertEqual(self.return_request.refund_reference, 'rfnd_001')

    def test_complete_refund_requires_approval(self):
        self.assertFalse(complete_refund(self.order, refund_id='rfnd_002', actor='gateway'))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.RETURN_REQUESTED)

    def test_listing(self):
        self.assertEqual(list(get_user_returns(self.customer)), [self.return_request])
        self.assertEqual(list(get_user_returns(self.other)), [])
        self.assertEqual(get_all_returns(self.staff).count(), 1)
        with self.assertRaises(Forbidden):
            get_all_returns(self.customer)


@override_settings(RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET)
class RefundWebhookTestCase(ReturnTestMixin, TestCase):

    def deliver_refund(self, order, event_id):
        event = {
            'entity': 'event',
            'event': 'refund.processed',
            'created_at': 1700005000,
            'payload': {
                'refund': {'entity': {
                    'id': 'rfnd_GATEWAY1',
                    'payment_id': order.razorpay_payment_id,
                    'amount': 250000,
                    'notes': [],
                }},
            },
        }
        raw = json.dumps(event).encode('utf-8')
        signature = hmac.new(WEBHOOK_SECRET.encode('utf-8'), raw, hashlib.sha256).hexdigest()
        return APIClient().post(
            '/api/webhooks/razorpay/', raw, content_type='application/json',
            HTTP_X_RAZORPAY_SIGNATURE=signature, HTTP_X_RAZORPAY_EVENT_ID=event_id
        )

    def test_gateway_refund_completes_approved_return(self):
        order = self.make_order()
        return_request = create_return(self.customer, order.pk, 'Damaged')
        update_return_status(self.staff, return_request.pk, 'approved')

        response = self.deliver_refund(order, 'evt_refund_1')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['outcome'], 'applied')
        order.refresh_from_db()
        return_request.refresh_from_db()
        self.assertEqual(order.status, Order.Status.REFUNDED)
        self.assertEqual(return_request.status, ReturnRequest.Status.REFUND_COMPLETED)
        self.assertEqual(order.status_history.last().changed_by, 'system (payment webhook)')

    def test_gateway_refund_ignored_for_unapproved_return(self):
        order = self.make_order()
        create_return(self.customer, order.pk, 'Damaged')

        response = self.deliver_refund(order, 'evt_refund_2')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['outcome'], 'ignored')
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.RETURN_REQUESTED)


class ReturnAPITestCase(ReturnTestMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_create_and_review_via_api(self):
        order = self.make_order()

        self.client.force_authenticate(self.customer)
        created = self.client.post('/api/returns/', {
            'order_id': str(order.pk),
            'reason': 'Wrong size',
        }, format='json')
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.data['order_status'], Order.Status.RETURN_REQUESTED)

        url = f"/api/returns/{created.data['id']}/status/"
        self.assertEqual(self.client.patch(url, {'status': 'approved'}, format='json').status_code, 403)

        self.client.force_authenticate(self.staff)
        reviewed = self.client.patch(url, {'status': 'approved'}, format='json')
        self.assertEqual(reviewed.status_code, 200)
        self.assertEqual(reviewed.data['status'], 'approved')

    def test_ineligible_order_returns_conflict(self):
        order = self.make_order(status=Order.Status.SHIPPED)
        self.client.force_authenticate(self.customer)

        response = self.client.post('/api/returns/', {
            'order_id': str(order.pk),
            'reason': 'Too slow',
        }, format='json')

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'Invalid State Transition')
