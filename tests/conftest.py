import pytest

from helpers import NOW


@pytest.fixture
def clock():
    return lambda: NOW
