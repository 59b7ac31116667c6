import pytest

from auth.refresh import reset_refresh_coordinator


@pytest.fixture(autouse=True)
def _isolated_refresh_coordinator():
    reset_refresh_coordinator()
    yield
    reset_refresh_coordinator()
