"""Project-wide fixtures."""

import secrets
import string
import typing as t

import faker
import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AbstractUser
from django.core.cache import cache
from pytest import MonkeyPatch


@pytest.fixture(autouse=True)
def increase_rate_limit(monkeypatch: MonkeyPatch) -> None:
    """Increase the rate limits for throttled endpoints to allow testing."""
    monkeypatch.setattr("common.throttling.ClaimThrottle.rate", "1000/min")
    monkeypatch.setattr("common.throttling.WriteThrottle.rate", "1000/min")


@pytest.fixture(autouse=True)
def clear_cache() -> None:
    """Throttle history lives in the cache; start every test from a clean slate."""
    cache.clear()


@pytest.fixture(autouse=True)
def enable_celery_eager_mode(settings: t.Any) -> None:
    """Enable Celery eager mode for tests so tasks execute synchronously."""
    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.CELERY_TASK_EAGER_PROPAGATES = True


class UserFactory:
    """Factory for creating users for testing."""

    fake = faker.Faker()

    def create_user(self, **kwargs: t.Any) -> AbstractUser:
        username = kwargs.pop("username", "".join(secrets.choice(string.ascii_lowercase) for _ in range(10)))
        email = kwargs.pop("email", f"{username}@user.test")
        password = kwargs.pop("password", "password")
        first_name = kwargs.pop("first_name", self.fake.first_name())
        last_name = kwargs.pop("last_name", self.fake.last_name())
        return t.cast(
            AbstractUser,
            get_user_model().objects.create_user(
                username=username,
                email=email,
                password=password,
                first_name=first_name,
                last_name=last_name,
                **kwargs,
            ),
        )

    def __call__(self, **kwargs: t.Any) -> AbstractUser:
        return self.create_user(**kwargs)


@pytest.fixture
def user_factory() -> UserFactory:
    return UserFactory()


@pytest.fixture
def user(user_factory: UserFactory) -> AbstractUser:
    return user_factory(email="participant@example.com")


@pytest.fixture
def organizer(user_factory: UserFactory) -> AbstractUser:
    return user_factory(email="organizer@example.com")
