"""Pytest fixtures for hmarket tests. Everything runs on in-memory backends."""

import pytest

from _helper import ADMIN_ID, DRIVER_ID, OFF_DUTY_DRIVER_ID, OTHER_DRIVER_ID, RecordingNotifier
from hmarket.drivers import DriverProfile, InMemoryDriverDirectory
from hmarket.notifications import NotificationDispatcher
from hmarket.service import OrderService
from hmarket.store import InMemoryOrderStore


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def drivers():
    """Two drivers on duty, one off duty."""
    return InMemoryDriverDirectory(
        [
            DriverProfile(driver_id=DRIVER_ID, name="Karim", vehicle_type="scooter", available=True),
            DriverProfile(driver_id=OTHER_DRIVER_ID, name="Sofia", vehicle_type="bike", available=True),
            DriverProfile(driver_id=OFF_DUTY_DRIVER_ID, name="Luc", available=False),
        ]
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def service(store, drivers, dispatcher):
    return OrderService(store, drivers, dispatcher, admin_user_ids=[ADMIN_ID])
