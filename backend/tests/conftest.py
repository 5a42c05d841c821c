import pytest

from expense_parser.core.config import get_settings


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with the parse endpoint disabled) across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
