"""Tests for FastAPI dependency injection module."""

from unittest.mock import MagicMock, patch

import election_importer.core.scheduler as scheduler_module
from election_importer.core.dependencies import get_async_session, get_scheduler


class TestGetAsyncSession:
    async def test_yields_session_from_factory(self) -> None:
        session = MagicMock()
        factory = MagicMock()
        factory.return_value.__aenter__.return_value = session
        with patch("election_importer.core.dependencies.get_session_factory", return_value=factory):
            gen = get_async_session()
            assert await gen.__anext__() is session
            await gen.aclose()
        factory.return_value.__aexit__.assert_awaited()


class TestGetScheduler:
    def test_returns_process_singleton(self) -> None:
        assert get_scheduler() is scheduler_module.scheduler
