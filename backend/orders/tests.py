from datetime import time, timedelta

from django.core.management import call_command
from django.db import DatabaseError, transaction
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate
from unittest.mock import patch

from accounts.models import User
from drivers.models import AvailabilityRule, DriverStatus, DriverStatusLog
from services.ledger import append_driver_status, assigned_in_progress_count
from services.order_management import advance_mission, propose
from services.tests import DispatchTestMixin
from .models import OfferAttempt, Order, OrderStatus, OrderStatusLog
from .views import (
	AdminAssignView,
	AdminCancelView,
	ClientOrdersView,
	EscalatedOrdersView,
	MissionAcceptView,
	MissionRefuseView,
	MissionStatusView,
)


class OrderApiTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.setUpEventLog()
		self.client_user = self.make_client()
		self.dispatcher = User.objects.create_user(
			username='dispatcher',
			password='admin1234',
			role='admin',
		)
		self.d1 = self.make_driver('d1', distance_km=1.2, rating='4.80')
		self.d2 = self.make_driver('d2', distance_km=2.0, rating='4.50', capacity_g=3000)
		self.order = self.make_order(self.client_user, weight_g=2000)

	def offer_to(self, driver, now=None):
		with self.captureOnCommitCallbacks(execute=True):
			result = propose(self.order.id, driver.id, now=now)
		self.assertTrue(result.success)
		return result

	def post(self, view, user, path, data=None, **kwargs):
		request = self.factory.post(path, data or {}, format='json')
		force_authenticate(request, user=user)
		with self.captureOnCommitCallbacks(execute=True):
			return view.as_view()(request, **kwargs)

	def test_client_creates_order(self):
		response = self.post(ClientOrdersView, self.client_user, '/api/orders/', {
			'pickup_latitude': '48.856600',
			'pickup_longitude': '2.352200',
			'delivery_latitude': '48.873800',
			'delivery_longitude': '2.295000',
			'packages': [
				{'weight_g': 1200, 'quantity': 2, 'description': 'books'},
				{'weight_g': 300},
			],
		})

		self.assertEqual(response.status_code, 201)
		order = Order.objects.get(id=response.data['order']['id'])
		self.assertEqual(order.current_status, OrderStatus.PENDING)
		self.assertEqual(order.total_weight_g(), 2700)
		self.assertEqual(order.status_logs.get().metadata['reason'], 'order_created')

		fields = self.stream.entries[-1][1]
		self.assertEqual(fields['type'], 'new_order_ready')
		self.assertEqual(fields['orderId'], str(order.id))
		self.assertIn('"totalWeightG":2700', fields['payload'])

	def test_drivers_cannot_place_orders(self):
		response = self.post(ClientOrdersView, self.d1.user, '/api/orders/', {})

		self.assertEqual(response.status_code, 403)

	def test_accept_assigns_driver(self):
		self.offer_to(self.d1)

		response = self.post(
			MissionAcceptView, self.d1.user, '/api/missions/%d/accept/' % self.order.id, order_id=self.order.id
		)

		self.assertEqual(response.status_code, 200)
		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.current_status, OrderStatus.ACCEPTED)
		self.assertEqual(self.order.assigned_driver_id, self.d1.id)
		self.assertIsNone(self.order.offered_driver_id)
		self.assertIsNone(self.order.offer_expires_at)
		self.assertEqual(self.d1.latest_status, DriverStatus.IN_WORK)
		self.assertEqual(self.d1.assignments_in_progress_count, 1)
		self.assertEqual(OfferAttempt.objects.get(order=self.order).status, OfferAttempt.STATUS_ACCEPTED)
		self.assertEqual(self.stream.types()[-1], 'offer_accepted')

	def test_accept_by_other_driver_changes_nothing(self):
		self.offer_to(self.d1)
		logs_before = OrderStatusLog.objects.count()

		response = self.post(
			MissionAcceptView, self.d2.user, '/api/missions/%d/accept/' % self.order.id, order_id=self.order.id
		)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['code'], 'offer_not_for_driver')
		self.order.refresh_from_db()
		self.assertEqual(self.order.offered_driver_id, self.d1.id)
		self.assertIsNone(self.order.assigned_driver_id)
		self.assertEqual(OrderStatusLog.objects.count(), logs_before)

	def test_accept_after_deadline_is_rejected(self):
		self.offer_to(self.d1, now=timezone.now() - timedelta(seconds=61))

		response = self.post(
			MissionAcceptView, self.d1.user, '/api/missions/%d/accept/' % self.order.id, order_id=self.order.id
		)

		self.assertEqual(response.status_code, 410)
		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.current_status, OrderStatus.PENDING)
		self.assertIsNone(self.order.assigned_driver_id)
		self.assertEqual(self.d1.latest_status, DriverStatus.OFFERING)

	def test_stale_refusal_is_a_noop(self):
		self.offer_to(self.d1)
		response = self.post(
			AdminAssignView, self.dispatcher, '/api/admin/orders/%d/assign/' % self.order.id,
			{'driver_id': self.d2.id}, order_id=self.order.id,
		)
		self.assertEqual(response.status_code, 200)
		self.order.refresh_from_db()
		snapshot = (self.order.offered_driver_id, self.order.offer_expires_at, self.order.assignment_attempt_count)

		response = self.post(
			MissionRefuseView, self.d1.user, '/api/missions/%d/refuse/' % self.order.id,
			{'reason': 'busy'}, order_id=self.order.id,
		)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['code'], 'offer_not_for_driver')
		self.order.refresh_from_db()
		self.assertEqual(
			(self.order.offered_driver_id, self.order.offer_expires_at, self.order.assignment_attempt_count),
			snapshot,
		)
		self.assertNotIn('offer_refused', self.stream.types())

	def test_manual_assignment_supersedes_open_offer(self):
		self.offer_to(self.d1)

		response = self.post(
			AdminAssignView, self.dispatcher, '/api/admin/orders/%d/assign/' % self.order.id,
			{'driver_id': self.d2.id}, order_id=self.order.id,
		)

		self.assertEqual(response.status_code, 200)
		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.offered_driver_id, self.d2.id)
		self.assertEqual(self.d1.latest_status, DriverStatus.ACTIVE)
		self.assertEqual(
			list(self.order.offer_attempts.values_list('driver_id', 'status', 'source')),
			[
				(self.d1.id, OfferAttempt.STATUS_SUPERSEDED, OfferAttempt.SOURCE_AUTO),
				(self.d2.id, OfferAttempt.STATUS_PENDING, OfferAttempt.SOURCE_MANUAL),
			],
		)
		self.assertEqual(self.stream.types()[-1], 'manually_assigned')

	def test_manual_assignment_needs_capable_vehicle(self):
		heavy = self.make_order(self.client_user, weight_g=4000)

		response = self.post(
			AdminAssignView, self.dispatcher, '/api/admin/orders/%d/assign/' % heavy.id,
			{'driver_id': self.d2.id}, order_id=heavy.id,
		)

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'no_capable_vehicle')
		heavy.refresh_from_db()
		self.assertIsNone(heavy.offered_driver_id)

	def test_manual_assignment_needs_available_driver(self):
		self.offer_to(self.d1)
		with transaction.atomic():
			append_driver_status(self.d2, DriverStatus.ON_BREAK, 0)

		response = self.post(
			AdminAssignView, self.dispatcher, '/api/admin/orders/%d/assign/' % self.order.id,
			{'driver_id': self.d2.id}, order_id=self.order.id,
		)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['code'], 'driver_not_available')
		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.offered_driver_id, self.d1.id)
		self.assertEqual(self.d1.latest_status, DriverStatus.OFFERING)
		self.assertEqual(
			list(self.order.offer_attempts.values_list('driver_id', 'status')),
			[(self.d1.id, OfferAttempt.STATUS_PENDING)],
		)

	def test_clients_cannot_assign(self):
		response = self.post(
			AdminAssignView, self.client_user, '/api/admin/orders/%d/assign/' % self.order.id,
			{'driver_id': self.d1.id}, order_id=self.order.id,
		)

		self.assertEqual(response.status_code, 403)

	def accept_as_d1(self):
		self.offer_to(self.d1)
		self.post(MissionAcceptView, self.d1.user, '/accept/', order_id=self.order.id)

	def test_mission_runs_to_delivery(self):
		self.accept_as_d1()

		for status in (OrderStatus.AT_PICKUP, OrderStatus.EN_ROUTE, OrderStatus.AT_DELIVERY, OrderStatus.SUCCESS):
			response = self.post(
				MissionStatusView, self.d1.user, '/status/', {'status': status}, order_id=self.order.id
			)
			self.assertEqual(response.status_code, 200)

		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.current_status, OrderStatus.SUCCESS)
		self.assertEqual(self.d1.latest_status, DriverStatus.ACTIVE)
		self.assertEqual(self.d1.assignments_in_progress_count, 0)
		self.assertEqual(self.stream.types()[-1], 'completed')
		self.assertEqual(
			list(self.order.status_logs.order_by('changed_at', 'id').values_list('status', flat=True))[-5:],
			['accepted', 'at_pickup', 'en_route', 'at_delivery', 'success'],
		)

	def test_mission_cannot_skip_steps(self):
		self.accept_as_d1()

		response = self.post(
			MissionStatusView, self.d1.user, '/status/', {'status': OrderStatus.SUCCESS}, order_id=self.order.id
		)

		self.assertEqual(response.status_code, 409)
		self.order.refresh_from_db()
		self.assertEqual(self.order.current_status, OrderStatus.ACCEPTED)

	def test_failed_mission_releases_driver(self):
		self.accept_as_d1()

		response = self.post(
			MissionStatusView, self.d1.user, '/status/',
			{'status': OrderStatus.FAILED, 'reason': 'recipient absent'}, order_id=self.order.id,
		)

		self.assertEqual(response.status_code, 200)
		self.d1.refresh_from_db()
		self.assertEqual(self.d1.latest_status, DriverStatus.ACTIVE)
		fields = self.stream.entries[-1][1]
		self.assertEqual(fields['type'], 'failed')
		self.assertIn('recipient absent', fields['payload'])

	def test_failed_schedule_lookup_rolls_back_completion(self):
		for day in range(7):
			AvailabilityRule.objects.create(
				driver=self.d1, day_of_week=day, start_time=time(0, 0), end_time=time(23, 59, 59)
			)
		self.accept_as_d1()
		for status in (OrderStatus.AT_PICKUP, OrderStatus.EN_ROUTE, OrderStatus.AT_DELIVERY):
			self.post(MissionStatusView, self.d1.user, '/status/', {'status': status}, order_id=self.order.id)
		order_logs = self.order.status_logs.count()
		driver_logs = self.d1.status_logs.count()

		with patch('services.order_management.missions.is_available_now', side_effect=DatabaseError('db down')):
			with self.captureOnCommitCallbacks(execute=True):
				with self.assertRaises(DatabaseError):
					advance_mission(self.order.id, self.d1, OrderStatus.SUCCESS)

		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.current_status, OrderStatus.AT_DELIVERY)
		self.assertEqual(self.order.status_logs.count(), order_logs)
		self.assertEqual(self.d1.latest_status, DriverStatus.IN_WORK)
		self.assertEqual(self.d1.assignments_in_progress_count, 1)
		self.assertEqual(self.d1.status_logs.count(), driver_logs)
		self.assertNotIn('completed', self.stream.types())

	def test_other_driver_cannot_report_progress(self):
		self.accept_as_d1()

		response = self.post(
			MissionStatusView, self.d2.user, '/status/', {'status': OrderStatus.AT_PICKUP}, order_id=self.order.id
		)

		self.assertEqual(response.status_code, 404)

	def test_in_progress_count_matches_open_missions(self):
		self.accept_as_d1()
		self.d1.refresh_from_db()
		self.assertEqual(self.d1.assignments_in_progress_count, assigned_in_progress_count(self.d1))
		self.assertEqual(assigned_in_progress_count(self.d1), 1)

		self.post(AdminCancelView, self.dispatcher, '/cancel/', {'reason': 'client called'}, order_id=self.order.id)

		self.d1.refresh_from_db()
		self.assertEqual(self.d1.assignments_in_progress_count, 0)
		self.assertEqual(assigned_in_progress_count(self.d1), 0)
		self.assertEqual(self.d1.latest_status, DriverStatus.ACTIVE)

	def test_admin_cancel_withdraws_offer(self):
		self.offer_to(self.d1)

		response = self.post(
			AdminCancelView, self.dispatcher, '/cancel/', {'reason': 'duplicate'}, order_id=self.order.id
		)

		self.assertEqual(response.status_code, 200)
		self.order.refresh_from_db()
		self.d1.refresh_from_db()
		self.assertEqual(self.order.current_status, OrderStatus.CANCELLED)
		self.assertEqual(self.order.cancellation_reason, 'duplicate')
		self.assertIsNone(self.order.offered_driver_id)
		self.assertEqual(self.d1.latest_status, DriverStatus.ACTIVE)
		self.assertEqual(self.stream.types()[-1], 'cancelled_by_admin')

		again = self.post(AdminCancelView, self.dispatcher, '/cancel/', {}, order_id=self.order.id)
		self.assertEqual(again.status_code, 409)

	def test_escalated_orders_are_listed(self):
		Order.objects.filter(id=self.order.id).update(escalated_at=timezone.now(), assignment_attempt_count=5)
		request = self.factory.get('/api/admin/orders/escalated/')
		force_authenticate(request, user=self.dispatcher)

		response = EscalatedOrdersView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual([o['id'] for o in response.data['orders']], [self.order.id])

	def test_driver_ledger_records_each_transition(self):
		self.accept_as_d1()

		statuses = list(
			DriverStatusLog.objects.filter(driver=self.d1).order_by('changed_at', 'id').values_list('status', flat=True)
		)
		self.assertEqual(statuses, [DriverStatus.OFFERING, DriverStatus.IN_WORK])


class ScanCommandTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.setUpEventLog()
		self.client_user = self.make_client()
		self.d1 = self.make_driver('d1')
		self.order = self.make_order(self.client_user)

	@patch('services.dispatch.reconciliation.close_old_connections')
	def test_scan_command_emits_offer_expired(self, mock_close):
		with self.captureOnCommitCallbacks(execute=True):
			propose(self.order.id, self.d1.id, now=timezone.now() - timedelta(seconds=90))

		call_command('scan_expired_offers')

		fields = self.stream.entries[-1][1]
		self.assertEqual(fields['type'], 'offer_expired')
		self.assertEqual(fields['driverId'], str(self.d1.id))
		# The scan only reports; the worker performs the transition.
		self.order.refresh_from_db()
		self.assertEqual(self.order.offered_driver_id, self.d1.id)

	@patch('services.dispatch.reconciliation.close_old_connections')
	def test_scan_command_leaves_live_offers_alone(self, mock_close):
		with self.captureOnCommitCallbacks(execute=True):
			propose(self.order.id, self.d1.id)
		published = len(self.stream.entries)

		call_command('scan_expired_offers')

		self.assertEqual(len(self.stream.entries), published)
		self.order.refresh_from_db()
		self.assertEqual(self.order.offered_driver_id, self.d1.id)
