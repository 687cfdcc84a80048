"""
Pytest configuration for mediagrab tests.

Nothing here touches the network: origins are served by httpx.MockTransport handlers.
Optional local overrides can be placed in a .env file at the project root.
"""

from pathlib import Path
from typing import Callable

import httpx
import pytest
from dotenv import load_dotenv

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def mock_client_factory() -> Callable:
    """
    Factory fixture that turns a request handler into an httpx client factory.

    Usage:
        def test_something(mock_client_factory):
            factory = mock_client_factory(lambda request: httpx.Response(200, content=b"data"))
    """

    def _factory(handler: Callable[[httpx.Request], httpx.Response]) -> Callable[[], httpx.AsyncClient]:
        transport = httpx.MockTransport(handler)
        return lambda: httpx.AsyncClient(transport=transport, follow_redirects=True)

    return _factory
