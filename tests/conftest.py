import pytest

from fakes import FakeResolver


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()
