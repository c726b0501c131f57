"""
Shared fixtures for the home loan test suite
"""

import pytest
from decimal import Decimal
from unittest.mock import Mock

from home_loans.applicants import StorageApplicantDirectory
from home_loans.config import HomeLoanConfig
from home_loans.notifications import NotificationGateway, NotificationOutbox
from home_loans.service import HomeLoanService
from home_loans.storage import InMemoryStorage

from .constants import FIXED_NOW, USER_ID


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def applicants(storage):
    directory = StorageApplicantDirectory(storage)
    directory.register_applicant("Asha Verma", "asha@example.com", user_id=USER_ID)
    return directory


@pytest.fixture
def gateway():
    return Mock(spec=NotificationGateway)


@pytest.fixture
def outbox(gateway):
    return NotificationOutbox(gateway)


@pytest.fixture
def config():
    return HomeLoanConfig()


@pytest.fixture
def service(storage, applicants, outbox, config, clock):
    return HomeLoanService(storage, applicants, outbox, config=config, clock=clock)


@pytest.fixture
def loan(service):
    """A submitted 12 month loan at 12% p.a."""
    return service.apply_loan(
        user_id=USER_ID,
        amount=Decimal("100000.00"),
        tenure_months=12,
        annual_rate_percent=Decimal("12.00"),
        property_value=Decimal("250000.00"),
        purpose="Purchase of first home"
    )
