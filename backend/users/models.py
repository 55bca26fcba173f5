from django.contrib.auth.models import AbstractUser
from django.db import models


class UserRole(models.TextChoices):
    ADMIN = "admin", "管理员"
    MANAGER = "manager", "店长"
    THERAPIST = "therapist", "推拿师"
    RECEPTIONIST = "receptionist", "前台"


class User(AbstractUser):
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.RECEPTIONIST,
    )

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"
