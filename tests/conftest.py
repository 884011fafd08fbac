import pytest

from helpers import FakeHttpClient, make_transport


@pytest.fixture
def fake_client():
    return FakeHttpClient()


@pytest.fixture
def transport_factory(fake_client):
    def _factory(**overrides):
        return make_transport(fake_client, **overrides)
    return _factory
