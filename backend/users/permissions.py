from rest_framework.permissions import BasePermission

from .models import UserRole


class IsManagerOrAdminRole(BasePermission):
    """Allow only admin or manager role, or superuser."""

    def has_permission(self, request, view):
        user = request.user
        return bool(
            user
            and user.is_authenticated
            and (user.is_superuser or getattr(user, "role", None) in (UserRole.ADMIN, UserRole.MANAGER))
        )


class IsStaffRole(BasePermission):
    """Allow any clinic role (including superuser)."""

    def has_permission(self, request, view):
        user = request.user
        role = getattr(user, "role", None)
        return bool(
            user
            and user.is_authenticated
            and (user.is_superuser or role in UserRole.values)
        )
