import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    """Run every test against fresh in-process stubs and closed circuits."""
    from django.core.cache import cache

    from apps.orders.http_adapters import _inventory_cb, _payments_cb
    from apps.orders.providers import reset_stubs

    settings.USE_HTTP_ADAPTERS = False
    reset_stubs()
    cache.clear()
    _inventory_cb.on_success()
    _payments_cb.on_success()
    yield
    reset_stubs()
