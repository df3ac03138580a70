# orders/permissions.py
from rest_framework.permissions import BasePermission

from accounts.models import User


class HasRole(BasePermission):
    """
    Allows access only to authenticated users whose role is in allowed_roles.
    Keeps role check logic centralized.
    """
    allowed_roles = ()

    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return False
        return getattr(user, "role", None) in self.allowed_roles


class IsClient(HasRole):
    allowed_roles = (User.ROLE_CLIENT,)


class IsDriver(HasRole):
    allowed_roles = (User.ROLE_DRIVER,)


class IsDispatcher(HasRole):
    """Operations staff: admin role or Django staff users."""
    allowed_roles = (User.ROLE_ADMIN,)

    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if user is not None and user.is_authenticated and user.is_staff:
            return True
        return super().has_permission(request, view)
