import typing as t

from django.contrib.auth.models import AbstractUser, AnonymousUser
from ninja_extra import ControllerBase


class UserAwareController(ControllerBase):
    def maybe_user(self) -> AbstractUser | AnonymousUser:
        """Get the user for this request."""
        return t.cast(AbstractUser | AnonymousUser, self.context.request.user)  # type: ignore[union-attr]

    def user(self) -> AbstractUser:
        """Get the user for this request."""
        return t.cast(AbstractUser, self.context.request.user)  # type: ignore[union-attr]
