import pytest


@pytest.fixture(autouse=True)
def reset_monitoring():
    """Give every test a clean metrics registry and alert history."""

    from verification import monitoring

    monitoring.reset_for_tests()
    yield
    monitoring.reset_for_tests()


@pytest.fixture(scope="session", autouse=True)
def close_database_connections():
    """Ensure all database connections are properly closed after tests.

    This fixture runs at the end of the test session to prevent the
    'database is being accessed by other users' error during teardown.
    """
    yield
    from django.db import connections

    for conn in connections.all():
        conn.close()
