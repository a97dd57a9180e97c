"""Shared pytest fixtures for Roomcal tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_module_caches():
    """Reset module-level caches to avoid cross-test contamination.

    The OIDC JWKS cache, the Graph app token and the email settings cache are
    module globals that persist between tests.
    """
    import roomcal.api.auth as auth_module
    import roomcal.graph.mail as mail_module
    from roomcal.infra.system_settings import clear_settings_cache

    def _reset():
        auth_module._jwks_cache = None
        auth_module._jwks_cache_time = 0
        mail_module._token_cache.clear()
        clear_settings_cache()

    _reset()
    yield
    _reset()


@pytest.fixture
def store():
    """In-memory reservation store patched over the repository."""
    from helpers import FakeReservationStore

    fake = FakeReservationStore()
    with fake.installed():
        yield fake


@pytest.fixture
def tasks_client():
    """Inline tasks client swapped in for notification enqueues."""
    from unittest.mock import patch

    from roomcal.tasks.client import TasksClient

    client = TasksClient(backend="inline")
    with patch("roomcal.domain.notifications._get_tasks_client", return_value=client):
        yield client
