import pytest

from _helper import Harness, make_harness


@pytest.fixture()
def harness() -> Harness:
    return make_harness()
