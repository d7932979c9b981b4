"""Tests for database session scopes."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bookingdesk.infra import database
from bookingdesk.infra.store import SqlSchedulingStore, sql_store_scope


def mock_session(in_transaction: bool = True):
    session = MagicMock()
    session.in_transaction.return_value = in_transaction
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session


class TestSessionScope:
    """Test session_scope."""

    @pytest.mark.asyncio
    async def test_uncommitted_work_rolled_back(self):
        session = mock_session()

        with patch.object(database, "async_session_factory", return_value=session):
            async with database.session_scope() as scoped:
                assert scoped is session

        session.commit.assert_not_awaited()
        session.rollback.assert_awaited_once()
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_without_rollback_after_commit(self):
        session = mock_session(in_transaction=False)

        with patch.object(database, "async_session_factory", return_value=session):
            async with database.session_scope():
                pass

        session.rollback.assert_not_awaited()
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_on_error(self):
        session = mock_session()

        with patch.object(database, "async_session_factory", return_value=session):
            with pytest.raises(RuntimeError):
                async with database.session_scope():
                    raise RuntimeError("boom")

        session.commit.assert_not_awaited()
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_scope_wraps_session(self):
        session = mock_session()

        with patch.object(database, "async_session_factory", return_value=session):
            async with sql_store_scope() as store:
                assert isinstance(store, SqlSchedulingStore)
                assert store.session is session


class TestHealth:
    """Test check_db_health."""

    @pytest.mark.asyncio
    async def test_unreachable_database(self):
        engine = MagicMock()
        engine.connect.side_effect = OSError("connection refused")

        with patch.object(database, "engine", engine):
            assert await database.check_db_health() is False
