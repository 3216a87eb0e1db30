"""Fixtures for provisioning tests."""

import pytest

from tests.unit.provisioning.fakes import Harness, build_harness


@pytest.fixture
def harness() -> Harness:
    return build_harness()
