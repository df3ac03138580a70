from django.test import TestCase
from rest_framework.test import APIRequestFactory, force_authenticate
from rest_framework_simplejwt.tokens import AccessToken

from drivers.models import Driver, DriverStatus
from .models import User
from .views import LoginView, MeView


class AccountApiTests(TestCase):
	def setUp(self):
		self.factory = APIRequestFactory()
		self.user = User.objects.create_user(username='courier', password='driver1234', role='driver')
		self.driver = Driver.objects.create(user=self.user, latest_status=DriverStatus.ACTIVE)

	def test_login_returns_tokens_and_driver(self):
		request = self.factory.post('/api/auth/login/', {'username': 'courier', 'password': 'driver1234'}, format='json')

		response = LoginView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['user']['driver_id'], self.driver.id)
		self.assertEqual(response.data['user']['driver_status'], DriverStatus.ACTIVE)
		access = AccessToken(response.data['tokens']['access'])
		self.assertEqual(str(access['user_id']), str(self.user.id))

	def test_login_rejects_bad_password(self):
		request = self.factory.post('/api/auth/login/', {'username': 'courier', 'password': 'nope'}, format='json')

		response = LoginView.as_view()(request)

		self.assertEqual(response.status_code, 400)

	def test_clients_have_no_driver_fields(self):
		client = User.objects.create_user(username='shop', password='client1234', role='client')
		request = self.factory.get('/api/auth/me/')
		force_authenticate(request, user=client)

		response = MeView.as_view()(request)

		self.assertIsNone(response.data['driver_id'])
		self.assertEqual(response.data['role'], 'client')

	def test_register_push_token(self):
		request = self.factory.patch('/api/auth/me/', {'push_token': 'device-123'}, format='json')
		force_authenticate(request, user=self.user)

		response = MeView.as_view()(request)

		self.assertEqual(response.status_code, 200)
		self.user.refresh_from_db()
		self.assertEqual(self.user.push_token, 'device-123')
