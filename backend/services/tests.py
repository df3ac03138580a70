import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import redis
from django.conf import settings
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from redis.exceptions import LockNotOwnedError

from accounts.models import User
from common.utils.geo import bounding_box
from drivers.models import Driver, DriverStatus, DriverVehicle
from orders.models import ConsumerCheckpoint, OfferAttempt, Order, OrderStatus

from services.dispatch.assignment import (
	ACTION_ESCALATED,
	ACTION_NO_CANDIDATE,
	ACTION_PROPOSED,
	ACTION_SKIPPED,
	dispatch_order,
)
from services.dispatch.event_log import EventLog, set_event_log
from services.dispatch.events import (
	CancelledByAdmin,
	EventDecodeError,
	NewOrderReady,
	OfferRefused,
	decode_event,
	encode_event,
)
from services.dispatch.reconciliation import scan_expired_offers
from services.dispatch.worker import DispatchWorker
from services.matching import find_candidates
from services.order_management import create_order, propose, refuse
from services.order_management import offer_protocol


PICKUP_LAT = Decimal('48.856600')
PICKUP_LON = Decimal('2.352200')


class FakeLock:
	def __init__(self, client, name, timeout):
		self.client = client
		self.name = name
		self.timeout = timeout

	def acquire(self, blocking=True):
		if self.client.lock_owners.get(self.name) in (None, self):
			self.client.lock_owners[self.name] = self
			return True
		return False

	def reacquire(self):
		if self.client.lock_owners.get(self.name) is not self:
			raise LockNotOwnedError("lease expired")
		return True

	def release(self):
		if self.client.lock_owners.get(self.name) is not self:
			raise LockNotOwnedError("not owner")
		del self.client.lock_owners[self.name]


class FakeStreamClient:
	"""In-memory stand-in for the few Redis stream commands the event log uses."""

	def __init__(self):
		self.entries = []
		self.fail_next = 0
		self.lock_owners = {}
		self._seq = 0

	def xadd(self, name, fields, maxlen=None, approximate=True):
		if self.fail_next:
			self.fail_next -= 1
			raise redis.ConnectionError("connection refused")
		self._seq += 1
		entry_id = '%d-0' % self._seq
		self.entries.append((entry_id, dict(fields)))
		return entry_id

	def xread(self, streams, count=None, block=None):
		(name, after_id), = streams.items()
		after = int(after_id.split('-')[0])
		messages = [(entry_id, fields) for entry_id, fields in self.entries if int(entry_id.split('-')[0]) > after]
		if count:
			messages = messages[:count]
		return [[name, messages]] if messages else []

	def xrevrange(self, name, count=None):
		newest = list(reversed(self.entries))
		return newest[:count] if count else newest

	def lock(self, name, timeout=None):
		return FakeLock(self, name, timeout)

	def types(self):
		return [fields['type'] for _, fields in self.entries]


class DispatchTestMixin:
	"""Shared fixtures: a fake event log and helpers to build drivers and orders."""

	def setUpEventLog(self):
		self.stream = FakeStreamClient()
		self.event_log = EventLog(client=self.stream, stream_key='test:events')
		set_event_log(self.event_log)
		self.addCleanup(set_event_log, None)

	def make_client(self, username='client'):
		return User.objects.create_user(username=username, password='client1234', role='client')

	def make_driver(self, username, distance_km=1.0, rating='4.50', capacity_g=5000, status=DriverStatus.ACTIVE):
		user = User.objects.create_user(username=username, password='driver1234', role='driver')
		driver = Driver.objects.create(
			user=user,
			current_latitude=PICKUP_LAT + Decimal(str(round(distance_km / 111.195, 6))),
			current_longitude=PICKUP_LON,
			last_location_update=timezone.now(),
			rating=Decimal(rating),
			latest_status=status,
		)
		DriverVehicle.objects.create(driver=driver, plate_number='PL-%s' % username, max_payload_g=capacity_g)
		return driver

	def make_order(self, client, weight_g=2000):
		with self.captureOnCommitCallbacks(execute=True):
			result = create_order(
				client=client,
				pickup_latitude=PICKUP_LAT,
				pickup_longitude=PICKUP_LON,
				delivery_latitude=Decimal('48.873800'),
				delivery_longitude=Decimal('2.295000'),
				packages=[{'weight_g': weight_g, 'quantity': 1, 'description': 'box'}],
			)
		return result.order


class EventCodecTests(SimpleTestCase):
	def test_new_order_ready_wire_format(self):
		event = NewOrderReady(
			order_id=7,
			pickup_latitude=48.8566,
			pickup_longitude=2.3522,
			total_weight_g=2000,
			timestamp=timezone.now(),
		)
		fields = encode_event(event)

		self.assertEqual(fields['type'], 'new_order_ready')
		self.assertEqual(fields['orderId'], '7')
		self.assertNotIn('driverId', fields)
		self.assertEqual(
			json.loads(fields['payload']),
			{'pickup': {'latitude': 48.8566, 'longitude': 2.3522}, 'totalWeightG': 2000},
		)

		decoded = decode_event(fields)
		self.assertIsInstance(decoded, NewOrderReady)
		self.assertEqual(decoded.total_weight_g, 2000)
		self.assertEqual(round(decoded.timestamp.timestamp() * 1000), int(fields['timestamp']))

	def test_decode_accepts_bytes(self):
		raw = {b'type': b'offer_refused', b'orderId': b'3', b'driverId': b'9', b'timestamp': b'1700000000000', b'payload': b'{"reason":"too far"}'}
		event = decode_event(raw)

		self.assertIsInstance(event, OfferRefused)
		self.assertEqual(event.driver_id, 9)
		self.assertEqual(event.reason, 'too far')

	def test_decode_rejects_malformed_entries(self):
		with self.assertRaises(EventDecodeError):
			decode_event({'type': 'teleported', 'orderId': '1'})
		with self.assertRaises(EventDecodeError):
			decode_event({'type': 'completed'})
		with self.assertRaises(EventDecodeError):
			decode_event({'type': 'failed', 'orderId': '1', 'payload': '[1, 2]'})


class EventLogTests(SimpleTestCase):
	def setUp(self):
		self.stream = FakeStreamClient()
		self.event_log = EventLog(client=self.stream, stream_key='test:events')

	def test_publish_retries_transient_errors(self):
		self.stream.fail_next = 2
		entry_id = self.event_log.publish(CancelledByAdmin(order_id=1, actor_id=4, reason='duplicate'))

		self.assertEqual(entry_id, '1-0')
		self.assertEqual(self.stream.types(), ['cancelled_by_admin'])

	def test_publish_gives_up_after_retries(self):
		self.stream.fail_next = 10
		entry_id = self.event_log.publish(NewOrderReady(order_id=1), retries=2)

		self.assertIsNone(entry_id)
		self.assertEqual(self.stream.entries, [])

	def test_read_returns_entries_after_cursor(self):
		self.assertEqual(self.event_log.latest_id(), '0-0')
		first = self.event_log.publish(NewOrderReady(order_id=1))
		self.event_log.publish(NewOrderReady(order_id=2))

		entries = self.event_log.read(first, count=10, block_ms=0)

		self.assertEqual(len(entries), 1)
		self.assertEqual(entries[0][1]['orderId'], '2')
		self.assertEqual(self.event_log.latest_id(), '2-0')


class BoundingBoxTests(SimpleTestCase):
	def test_box_encloses_radius(self):
		min_lat, max_lat, min_lon, max_lon = bounding_box(48.8566, 2.3522, 10000)

		self.assertAlmostEqual(max_lat - 48.8566, 0.0899, places=3)
		self.assertLess(min_lon, 2.3522 - 0.0899)
		self.assertGreater(max_lon, 2.3522 + 0.0899)
		self.assertLess(max_lon - min_lon, 1.0)

	def test_box_crossing_antimeridian_spans_all_longitudes(self):
		self.assertEqual(bounding_box(-17.7134, 179.999, 10000)[2:], (-180.0, 180.0))
		self.assertEqual(bounding_box(-17.7134, -179.999, 10000)[2:], (-180.0, 180.0))

	def test_box_near_pole_spans_all_longitudes(self):
		self.assertEqual(bounding_box(89.95, 10.0, 10000)[2:], (-180.0, 180.0))


class CandidateSearchTests(DispatchTestMixin, TestCase):
	def test_ranks_by_rating_then_distance(self):
		far_star = self.make_driver('far_star', distance_km=3.0, rating='4.90')
		near = self.make_driver('near', distance_km=0.5, rating='4.50')
		nearer = self.make_driver('nearer', distance_km=0.2, rating='4.50')

		candidates = find_candidates(PICKUP_LAT, PICKUP_LON, 2000)

		self.assertEqual([c.driver_id for c in candidates], [far_star.id, nearer.id, near.id])
		self.assertAlmostEqual(candidates[1].distance_meters, 200, delta=5)

	def test_finds_driver_across_the_antimeridian(self):
		across = self.make_driver('across')
		Driver.objects.filter(id=across.id).update(
			current_latitude=Decimal('-17.713400'), current_longitude=Decimal('-179.995000')
		)

		candidates = find_candidates(Decimal('-17.713400'), Decimal('179.999000'), 2000)

		self.assertEqual([c.driver_id for c in candidates], [across.id])
		self.assertLess(candidates[0].distance_meters, 1000)

	def test_filters_ineligible_drivers(self):
		eligible = self.make_driver('eligible', distance_km=1.0)
		self.make_driver('on_break', status=DriverStatus.ON_BREAK)
		self.make_driver('offering', status=DriverStatus.OFFERING)
		self.make_driver('too_small', capacity_g=1500)
		self.make_driver('too_far', distance_km=12.0)
		stale = self.make_driver('stale')
		Driver.objects.filter(id=stale.id).update(last_location_update=timezone.now() - timedelta(minutes=10))
		parked = self.make_driver('parked')
		DriverVehicle.objects.filter(driver=parked).update(is_active=False)
		tried = self.make_driver('tried')

		candidates = find_candidates(PICKUP_LAT, PICKUP_LON, 2000, exclude_driver_ids=[tried.id])

		self.assertEqual([c.driver_id for c in candidates], [eligible.id])


class DispatchWorkerScenarioTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.setUpEventLog()
		self.client_user = self.make_client()
		self.worker = DispatchWorker(event_log=self.event_log, consumer_name='test-worker')
		self.worker.last_id = '0-0'

	def poll(self):
		with self.captureOnCommitCallbacks(execute=True):
			return self.worker.poll_once()

	def test_new_order_is_offered_to_best_driver(self):
		d1 = self.make_driver('d1', distance_km=1.2, rating='4.80', capacity_g=5000)
		order = self.make_order(self.client_user, weight_g=2000)

		self.assertEqual(self.poll(), 1)

		order.refresh_from_db()
		d1.refresh_from_db()
		attempt = OfferAttempt.objects.get(order=order)

		self.assertEqual(order.offered_driver_id, d1.id)
		self.assertEqual(order.assignment_attempt_count, 1)
		self.assertEqual(attempt.expires_at - attempt.sent_at, timedelta(seconds=60))
		self.assertEqual(order.offer_expires_at, attempt.expires_at)
		self.assertEqual(d1.latest_status, DriverStatus.OFFERING)
		self.assertEqual(ConsumerCheckpoint.objects.get(consumer_name='test-worker').last_event_id, '1-0')

	def test_expired_offer_moves_to_next_driver(self):
		d1 = self.make_driver('d1', distance_km=1.2, rating='4.80', capacity_g=5000)
		d2 = self.make_driver('d2', distance_km=2.0, rating='4.50', capacity_g=3000)
		order = self.make_order(self.client_user, weight_g=2000)

		past = timezone.now() - timedelta(seconds=61)
		with self.captureOnCommitCallbacks(execute=True):
			outcome = dispatch_order(order.id, trigger='test', now=past)
		self.assertEqual(outcome.driver_id, d1.id)
		self.worker.last_id = self.event_log.latest_id()

		with patch('services.dispatch.reconciliation.close_old_connections'):
			expired, cleaned, retried = scan_expired_offers()
		self.assertEqual((expired, cleaned, retried), (1, 0, 0))
		self.assertEqual(self.stream.types()[-1], 'offer_expired')

		self.poll()

		order.refresh_from_db()
		d1.refresh_from_db()
		self.assertEqual(order.offered_driver_id, d2.id)
		self.assertEqual(order.assignment_attempt_count, 2)
		self.assertEqual(d1.latest_status, DriverStatus.ACTIVE)
		self.assertEqual(
			list(order.offer_attempts.values_list('driver_id', 'status')),
			[(d1.id, OfferAttempt.STATUS_EXPIRED), (d2.id, OfferAttempt.STATUS_PENDING)],
		)

	def test_refusal_is_followed_up_once(self):
		d1 = self.make_driver('d1', rating='4.80')
		d2 = self.make_driver('d2', rating='4.50')
		order = self.make_order(self.client_user)
		self.poll()

		with self.captureOnCommitCallbacks(execute=True):
			result = refuse(order.id, d1.id, reason='too heavy')
		self.assertTrue(result.success)
		refused_id, refused_fields = self.stream.entries[-1]
		self.assertEqual(refused_fields['type'], 'offer_refused')

		self.poll()
		order.refresh_from_db()
		self.assertEqual(order.offered_driver_id, d2.id)
		self.assertEqual(order.assignment_attempt_count, 2)

		# Redelivery of the same refusal must not start another attempt.
		with self.captureOnCommitCallbacks(execute=True):
			self.worker.process_entry(refused_id, refused_fields)
		order.refresh_from_db()
		self.assertEqual(order.offered_driver_id, d2.id)
		self.assertEqual(order.assignment_attempt_count, 2)
		self.assertEqual(order.offer_attempts.count(), 2)

	@override_settings(DISPATCH={**settings.DISPATCH, 'MAX_ASSIGNMENT_ATTEMPTS': 2})
	def test_refusals_past_the_cap_escalate(self):
		d1 = self.make_driver('d1', rating='4.90')
		d2 = self.make_driver('d2', rating='4.80')
		d3 = self.make_driver('d3', rating='4.70')
		order = self.make_order(self.client_user)
		self.poll()

		for driver in (d1, d2):
			with self.captureOnCommitCallbacks(execute=True):
				self.assertTrue(refuse(order.id, driver.id).success)
			self.poll()

		order.refresh_from_db()
		self.assertIsNotNone(order.escalated_at)
		self.assertIsNone(order.offered_driver_id)
		self.assertEqual(order.current_status, OrderStatus.PENDING)
		self.assertEqual(order.assignment_attempt_count, 2)
		self.assertFalse(OfferAttempt.objects.filter(driver=d3).exists())
		self.assertIn('cancelled_by_system', self.stream.types())

	def test_no_driver_five_times_escalates(self):
		order = self.make_order(self.client_user)

		actions = []
		for _ in range(5):
			with self.captureOnCommitCallbacks(execute=True):
				actions.append(dispatch_order(order.id, trigger='test').action)

		self.assertEqual(actions, [ACTION_NO_CANDIDATE] * 4 + [ACTION_ESCALATED])
		self.assertEqual(self.stream.types().count('cancelled_by_system'), 1)

		# A driver showing up later does not restart automatic dispatch.
		self.make_driver('late')
		order.refresh_from_db()
		snapshot = (order.assignment_attempt_count, order.offered_driver_id, order.escalated_at)
		with self.captureOnCommitCallbacks(execute=True):
			outcome = dispatch_order(order.id, trigger='test')
		order.refresh_from_db()

		self.assertEqual(outcome.action, ACTION_SKIPPED)
		self.assertEqual((order.assignment_attempt_count, order.offered_driver_id, order.escalated_at), snapshot)
		self.assertEqual(order.assignment_attempt_count, 5)
		self.assertFalse(OfferAttempt.objects.filter(order=order).exists())

	def test_only_one_offer_can_be_open(self):
		d1 = self.make_driver('d1')
		d2 = self.make_driver('d2')
		order = self.make_order(self.client_user)

		with self.captureOnCommitCallbacks(execute=True):
			first = propose(order.id, d1.id)
			second = propose(order.id, d2.id)

		self.assertTrue(first.success)
		self.assertFalse(second.success)
		self.assertEqual(second.error_code, offer_protocol.OFFER_ALREADY_OPEN)
		order.refresh_from_db()
		d2.refresh_from_db()
		self.assertEqual(order.offered_driver_id, d1.id)
		self.assertEqual(d2.latest_status, DriverStatus.ACTIVE)

	def test_terminal_event_clears_lingering_offer(self):
		d1 = self.make_driver('d1')
		order = self.make_order(self.client_user)
		with self.captureOnCommitCallbacks(execute=True):
			propose(order.id, d1.id, now=timezone.now() - timedelta(seconds=5))
		Order.objects.filter(id=order.id).update(current_status=OrderStatus.CANCELLED)

		fields = encode_event(CancelledByAdmin(order_id=order.id, actor_id=None, reason='test'))
		with self.captureOnCommitCallbacks(execute=True):
			self.worker.process_entry('99-0', fields)

		order.refresh_from_db()
		d1.refresh_from_db()
		self.assertIsNone(order.offered_driver_id)
		self.assertIsNone(order.offer_expires_at)
		self.assertEqual(d1.latest_status, DriverStatus.ACTIVE)
		self.assertEqual(OfferAttempt.objects.get(order=order).status, OfferAttempt.STATUS_WITHDRAWN)

	def test_malformed_entry_is_skipped(self):
		self.worker.process_entry('5-0', {'type': 'nonsense'})

		self.assertEqual(self.worker.last_id, '5-0')
		self.assertEqual(ConsumerCheckpoint.objects.get(consumer_name='test-worker').last_event_id, '5-0')

	@patch('services.dispatch.worker.dispatch_order', side_effect=RuntimeError('boom'))
	def test_handler_failure_does_not_stop_consumption(self, mock_dispatch):
		self.make_order(self.client_user)
		self.make_order(self.client_user)

		self.assertEqual(self.poll(), 2)
		self.assertEqual(mock_dispatch.call_count, 2)
		self.assertEqual(self.worker.last_id, '2-0')


class WorkerLifecycleTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.setUpEventLog()

	def test_first_start_begins_at_end_of_log(self):
		self.event_log.publish(NewOrderReady(order_id=1))
		self.event_log.publish(NewOrderReady(order_id=2))

		worker = DispatchWorker(event_log=self.event_log, consumer_name='fresh')

		self.assertEqual(worker.resolve_start_id(), '2-0')
		self.assertEqual(ConsumerCheckpoint.objects.get(consumer_name='fresh').last_event_id, '2-0')

	def test_restart_resumes_from_checkpoint(self):
		ConsumerCheckpoint.objects.create(consumer_name='resumed', last_event_id='1-0')
		self.event_log.publish(NewOrderReady(order_id=1))
		self.event_log.publish(NewOrderReady(order_id=2))

		worker = DispatchWorker(event_log=self.event_log, consumer_name='resumed')

		self.assertEqual(worker.resolve_start_id(), '1-0')

	@override_settings(DISPATCH={**settings.DISPATCH, 'LEADER_LOCK_ENABLED': True})
	def test_only_one_instance_leads(self):
		first = DispatchWorker(event_log=self.event_log, consumer_name='a')
		second = DispatchWorker(event_log=self.event_log, consumer_name='b')

		self.assertTrue(first.hold_leadership())
		self.assertFalse(second.hold_leadership())
		self.assertTrue(first.hold_leadership())

		first.release_leadership()
		self.assertTrue(second.hold_leadership())

	@patch('services.dispatch.worker.close_old_connections')
	def test_run_survives_event_log_outage(self, mock_close):
		worker = DispatchWorker(event_log=self.event_log, consumer_name='looping')
		calls = []

		def flaky_poll():
			calls.append(1)
			if len(calls) == 1:
				raise redis.ConnectionError('down')
			worker.stop()
			return 0

		with patch.object(worker, 'poll_once', side_effect=flaky_poll):
			worker.run(with_scanner=False)

		self.assertEqual(len(calls), 2)


@patch('services.dispatch.reconciliation.close_old_connections')
class ReconciliationTests(DispatchTestMixin, TestCase):
	def setUp(self):
		self.setUpEventLog()
		self.client_user = self.make_client()

	def test_stalled_order_is_announced_once(self, mock_close):
		order = self.make_order(self.client_user)
		old = timezone.now() - timedelta(minutes=5)
		Order.objects.filter(id=order.id).update(created_at=old, last_dispatch_at=old)
		published_before = len(self.stream.entries)

		self.assertEqual(scan_expired_offers(), (0, 0, 1))
		self.assertEqual(scan_expired_offers(), (0, 0, 0))

		self.assertEqual(self.stream.types()[published_before:], ['new_order_ready'])

	def test_offer_on_finished_order_is_cleaned(self, mock_close):
		d1 = self.make_driver('d1')
		order = self.make_order(self.client_user)
		with self.captureOnCommitCallbacks(execute=True):
			propose(order.id, d1.id, now=timezone.now() - timedelta(seconds=120))
		Order.objects.filter(id=order.id).update(current_status=OrderStatus.FAILED)

		with self.captureOnCommitCallbacks(execute=True):
			self.assertEqual(scan_expired_offers(), (0, 1, 0))

		order.refresh_from_db()
		self.assertIsNone(order.offered_driver_id)
		self.assertNotIn('offer_expired', self.stream.types())

	def test_escalated_orders_are_not_retried(self, mock_close):
		order = self.make_order(self.client_user)
		old = timezone.now() - timedelta(minutes=5)
		Order.objects.filter(id=order.id).update(created_at=old, last_dispatch_at=old, escalated_at=old)

		self.assertEqual(scan_expired_offers(), (0, 0, 0))

	def test_dispatch_skips_missing_order(self, mock_close):
		outcome = dispatch_order(424242, trigger='test')

		self.assertEqual(outcome.action, ACTION_SKIPPED)
		self.assertEqual(outcome.reason, 'order_not_found')

	def test_proposal_outcome_reports_driver(self, mock_close):
		d1 = self.make_driver('d1')
		order = self.make_order(self.client_user)

		with self.captureOnCommitCallbacks(execute=True):
			outcome = dispatch_order(order.id, trigger='test')

		self.assertEqual(outcome.action, ACTION_PROPOSED)
		self.assertEqual((outcome.driver_id, outcome.attempt), (d1.id, 1))
