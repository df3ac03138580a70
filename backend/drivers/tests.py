from datetime import datetime, time
from unittest.mock import patch

from django.db import DatabaseError, transaction
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIRequestFactory, force_authenticate

from services.ledger import append_driver_status
from services.dispatch.assignment import ACTION_NO_CANDIDATE, dispatch_order
from services.order_management import propose, release_driver_locked
from services.tests import DispatchTestMixin
from .availability import has_schedule, is_available_now
from .models import AvailabilityException, AvailabilityRule, DriverStatus
from .services import DriverBusyError, set_driver_availability, sync_all_driver_schedules, sync_driver_schedule
from .views import DriverLocationUpdateView, DriverScheduleView, DriverStatusView


def local(year, month, day, hour, minute=0):
	return timezone.make_aware(datetime(year, month, day, hour, minute))


# 2026-01-05 is a Monday
MONDAY_10AM = local(2026, 1, 5, 10)
MONDAY_6PM = local(2026, 1, 5, 18)
TUESDAY_10AM = local(2026, 1, 6, 10)


class AvailabilityScheduleTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.driver = self.make_driver('sched')
		AvailabilityRule.objects.create(
			driver=self.driver, day_of_week=0, start_time=time(9, 0), end_time=time(17, 0)
		)

	def test_inside_weekly_window(self):
		self.assertTrue(has_schedule(self.driver.id))
		self.assertTrue(is_available_now(self.driver.id, MONDAY_10AM))

	def test_window_end_is_exclusive(self):
		self.assertTrue(is_available_now(self.driver.id, local(2026, 1, 5, 9)))
		self.assertFalse(is_available_now(self.driver.id, local(2026, 1, 5, 17)))

	def test_other_day_is_unavailable(self):
		self.assertFalse(is_available_now(self.driver.id, TUESDAY_10AM))

	def test_inactive_rule_is_ignored(self):
		AvailabilityRule.objects.filter(driver=self.driver).update(is_active=False)

		self.assertFalse(has_schedule(self.driver.id))
		self.assertFalse(is_available_now(self.driver.id, MONDAY_10AM))

	def test_whole_day_exception_wins(self):
		AvailabilityException.objects.create(
			driver=self.driver, exception_date=MONDAY_10AM.date(), reason='dentist'
		)

		self.assertFalse(is_available_now(self.driver.id, MONDAY_10AM))

	def test_timed_exception_blocks_only_its_range(self):
		AvailabilityException.objects.create(
			driver=self.driver,
			exception_date=MONDAY_10AM.date(),
			is_unavailable_all_day=False,
			unavailable_start_time=time(9, 30),
			unavailable_end_time=time(11, 0),
		)

		self.assertFalse(is_available_now(self.driver.id, MONDAY_10AM))
		self.assertTrue(is_available_now(self.driver.id, local(2026, 1, 5, 11)))


class ScheduleSyncTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.driver = self.make_driver('shift')
		AvailabilityRule.objects.create(
			driver=self.driver, day_of_week=0, start_time=time(9, 0), end_time=time(17, 0)
		)

	def test_shift_end_moves_idle_driver_to_inactive(self):
		self.assertEqual(sync_driver_schedule(self.driver.id, now=MONDAY_6PM), DriverStatus.INACTIVE)

		self.driver.refresh_from_db()
		self.assertEqual(self.driver.latest_status, DriverStatus.INACTIVE)
		self.assertEqual(self.driver.status_logs.first().metadata['reason'], 'schedule_sync')

	def test_shift_start_moves_driver_back(self):
		sync_driver_schedule(self.driver.id, now=MONDAY_6PM)

		self.assertEqual(sync_driver_schedule(self.driver.id, now=local(2026, 1, 12, 9, 5)), DriverStatus.ACTIVE)

	def test_busy_drivers_are_left_alone(self):
		with transaction.atomic():
			append_driver_status(self.driver, DriverStatus.IN_WORK, 1)

		self.assertIsNone(sync_driver_schedule(self.driver.id, now=MONDAY_6PM))
		self.driver.refresh_from_db()
		self.assertEqual(self.driver.latest_status, DriverStatus.IN_WORK)

	def test_drivers_without_schedule_are_skipped(self):
		free = self.make_driver('free')

		self.assertIsNone(sync_driver_schedule(free.id, now=MONDAY_6PM))
		self.assertEqual(sync_all_driver_schedules(now=MONDAY_6PM), 1)

	def test_failed_lookup_skips_driver_and_continues(self):
		other = self.make_driver('other_shift')
		AvailabilityRule.objects.create(
			driver=other, day_of_week=0, start_time=time(9, 0), end_time=time(17, 0)
		)

		def lookup(driver_id, at=None):
			if driver_id == self.driver.id:
				raise DatabaseError('db down')
			return is_available_now(driver_id, at)

		with patch('drivers.services.is_available_now', side_effect=lookup):
			changed = sync_all_driver_schedules(now=MONDAY_6PM)

		self.assertEqual(changed, 1)
		self.driver.refresh_from_db()
		other.refresh_from_db()
		self.assertEqual(self.driver.latest_status, DriverStatus.ACTIVE)
		self.assertEqual(other.latest_status, DriverStatus.INACTIVE)

	def test_release_outside_shift_goes_inactive(self):
		with transaction.atomic():
			append_driver_status(self.driver, DriverStatus.IN_WORK, 1)
			status = release_driver_locked(self.driver, 'mission_success', order_id=1, now=MONDAY_6PM)

		self.assertEqual(status, DriverStatus.INACTIVE)
		self.driver.refresh_from_db()
		self.assertEqual(self.driver.assignments_in_progress_count, 0)

	def test_release_with_missions_left_stays_in_work(self):
		with transaction.atomic():
			append_driver_status(self.driver, DriverStatus.IN_WORK, 2)
			status = release_driver_locked(self.driver, 'mission_success', order_id=1, now=MONDAY_10AM)

		self.assertEqual(status, DriverStatus.IN_WORK)
		self.driver.refresh_from_db()
		self.assertEqual(self.driver.assignments_in_progress_count, 1)


class DriverAvailabilityApiTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.driver = self.make_driver('toggle')

	def put_status(self, status):
		request = self.factory.put('/api/driver/status/', {'status': status}, format='json')
		force_authenticate(request, user=self.driver.user)
		return DriverStatusView.as_view()(request)

	def test_driver_takes_a_break(self):
		response = self.put_status(DriverStatus.ON_BREAK)

		self.assertEqual(response.status_code, 200)
		self.driver.refresh_from_db()
		self.assertEqual(self.driver.latest_status, DriverStatus.ON_BREAK)
		self.assertEqual(self.driver.status_logs.first().metadata['reason'], 'driver_toggle')

	def test_in_work_driver_cannot_toggle(self):
		with transaction.atomic():
			append_driver_status(self.driver, DriverStatus.IN_WORK, 1)

		response = self.put_status(DriverStatus.INACTIVE)

		self.assertEqual(response.status_code, 409)
		self.driver.refresh_from_db()
		self.assertEqual(self.driver.latest_status, DriverStatus.IN_WORK)
		with self.assertRaises(DriverBusyError):
			set_driver_availability(self.driver, DriverStatus.ACTIVE)

	def test_driver_with_open_offer_cannot_toggle(self):
		self.setUpEventLog()
		client = self.make_client()
		first = self.make_order(client)
		second = self.make_order(client)
		with self.captureOnCommitCallbacks(execute=True):
			self.assertTrue(propose(first.id, self.driver.id).success)

		response = self.put_status(DriverStatus.ACTIVE)

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['status'], DriverStatus.OFFERING)
		self.driver.refresh_from_db()
		self.assertEqual(self.driver.latest_status, DriverStatus.OFFERING)
		with self.assertRaises(DriverBusyError):
			set_driver_availability(self.driver, DriverStatus.INACTIVE)

		with self.captureOnCommitCallbacks(execute=True):
			outcome = dispatch_order(second.id, trigger='test')

		self.assertEqual(outcome.action, ACTION_NO_CANDIDATE)
		second.refresh_from_db()
		self.assertIsNone(second.offered_driver_id)

	def test_engine_states_are_not_self_service(self):
		response = self.put_status(DriverStatus.OFFERING)

		self.assertEqual(response.status_code, 400)

	def test_clients_are_refused(self):
		client = self.make_client()
		request = self.factory.put('/api/driver/status/', {'status': 'active'}, format='json')
		force_authenticate(request, user=client)

		response = DriverStatusView.as_view()(request)

		self.assertEqual(response.status_code, 403)

	def test_location_update(self):
		request = self.factory.post(
			'/api/driver/location/', {'latitude': '48.850000', 'longitude': '2.350000'}, format='json'
		)
		force_authenticate(request, user=self.driver.user)

		response = DriverLocationUpdateView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.driver.refresh_from_db()
		self.assertEqual(str(self.driver.current_latitude), '48.850000')
		self.assertIsNotNone(self.driver.last_location_update)

	def test_schedule_rule_must_end_after_start(self):
		request = self.factory.post(
			'/api/driver/schedule/',
			{'day_of_week': 2, 'start_time': '18:00', 'end_time': '08:00'},
			format='json',
		)
		force_authenticate(request, user=self.driver.user)

		response = DriverScheduleView.as_view()(request)

		self.assertEqual(response.status_code, 400)
		self.assertFalse(AvailabilityRule.objects.filter(driver=self.driver).exists())

	def test_schedule_rule_created(self):
		request = self.factory.post(
			'/api/driver/schedule/',
			{'day_of_week': 2, 'start_time': '08:00', 'end_time': '18:00'},
			format='json',
		)
		force_authenticate(request, user=self.driver.user)

		response = DriverScheduleView.as_view()(request)

		self.assertEqual(response.status_code, 201)
		self.assertTrue(has_schedule(self.driver.id))
