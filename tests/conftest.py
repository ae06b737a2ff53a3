"""Shared fixtures."""
import pytest

from fakes import FakeHost, make_context
from kubestrap.host import OSFamily


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
def debian_ctx():
    return make_context()


@pytest.fixture
def rhel_ctx():
    return make_context(family=OSFamily.RHEL)
