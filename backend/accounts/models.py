from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Platform user: a client placing orders, a courier, or a dispatcher/admin"""
    ROLE_CLIENT = 'client'
    ROLE_DRIVER = 'driver'
    ROLE_ADMIN = 'admin'

    ROLE_CHOICES = [
        (ROLE_CLIENT, 'Client'),
        (ROLE_DRIVER, 'Driver'),
        (ROLE_ADMIN, 'Dispatcher'),
    ]

    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default=ROLE_CLIENT)
    phone_number = models.CharField(max_length=20, blank=True)

    # Device endpoint used by the push gateway
    push_token = models.CharField(max_length=255, null=True, blank=True)

    class Meta:
        db_table = 'users'

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"
