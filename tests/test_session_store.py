"""
Tests for the Session Store.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from ava_api.db.models import AuthSession
from ava_api.services.session_store import SessionStore, extract_device_info, session_is_live


class TestExtractDeviceInfo:
    @pytest.mark.parametrize(
        ("user_agent", "expected"),
        [
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", "Mobile"),
            ("Mozilla/5.0 (Linux; Android 14; Tablet)", "Tablet"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows"),
            ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "Linux"),
            ("curl/8.4.0", "Unknown"),
        ],
    )
    def test_labels(self, user_agent: str, expected: str):
        assert extract_device_info(user_agent) == expected


class TestSessionIsLive:
    def test_active_and_unexpired(self, fixed_datetime: datetime):
        assert session_is_live(True, fixed_datetime + timedelta(seconds=1), fixed_datetime)

    def test_inactive(self, fixed_datetime: datetime):
        assert not session_is_live(False, fixed_datetime + timedelta(days=1), fixed_datetime)

    def test_expiry_boundary_is_dead(self, fixed_datetime: datetime):
        assert not session_is_live(True, fixed_datetime, fixed_datetime)


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_inserts_active_row(self, db_session: AsyncMock, client_info):
        store = SessionStore(db_session)
        user_id = uuid4()

        session_id = await store.create_session(user_id, client_info)

        added = db_session.add.call_args[0][0]
        assert isinstance(added, AuthSession)
        assert added.id == session_id
        assert added.user_id == user_id
        assert added.is_active is True
        assert added.device_info == "Mac"
        assert added.ip_address == client_info.ip_address
        assert added.expires_at - added.created_at == timedelta(days=7)
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_ttl(self, db_session: AsyncMock, client_info):
        store = SessionStore(db_session, ttl=timedelta(hours=2))

        await store.create_session(uuid4(), client_info)

        added = db_session.add.call_args[0][0]
        assert added.expires_at - added.created_at == timedelta(hours=2)


class TestIsActive:
    @pytest.mark.asyncio
    async def test_missing_session(self, db_session: AsyncMock, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=None))

        assert await SessionStore(db_session).is_active(uuid4()) is False

    @pytest.mark.asyncio
    async def test_live_session(self, db_session: AsyncMock, result_factory, session_row_factory):
        row = session_row_factory()
        db_session.execute = AsyncMock(return_value=result_factory(scalar=row))

        assert await SessionStore(db_session).is_active(row.id) is True

    @pytest.mark.asyncio
    async def test_expired_session(
        self, db_session: AsyncMock, result_factory, session_row_factory
    ):
        row = session_row_factory(expires_in=timedelta(seconds=-1))
        db_session.execute = AsyncMock(return_value=result_factory(scalar=row))

        assert await SessionStore(db_session).is_active(row.id) is False

    @pytest.mark.asyncio
    async def test_deactivated_session(
        self, db_session: AsyncMock, result_factory, session_row_factory
    ):
        row = session_row_factory(is_active=False)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=row))

        assert await SessionStore(db_session).is_active(row.id) is False


class TestTouch:
    @pytest.mark.asyncio
    async def test_updates_and_commits(self, db_session: AsyncMock):
        await SessionStore(db_session).touch(uuid4())

        db_session.execute.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_database_failure_is_not_raised(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(
            side_effect=OperationalError("UPDATE auth_sessions", {}, Exception("gone"))
        )

        await SessionStore(db_session).touch(uuid4())

        db_session.rollback.assert_awaited_once()


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_all_returns_count(self, db_session: AsyncMock, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(rowcount=3))

        count = await SessionStore(db_session).invalidate_all_for_user(uuid4())

        assert count == 3
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_one(self, db_session: AsyncMock):
        await SessionStore(db_session).invalidate(uuid4())

        db_session.execute.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deactivate_expired_returns_count(self, db_session: AsyncMock, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(rowcount=7))

        assert await SessionStore(db_session).deactivate_expired() == 7


class TestListing:
    @pytest.mark.asyncio
    async def test_list_active_maps_rows(
        self, db_session: AsyncMock, result_factory, session_row_factory
    ):
        user_id = uuid4()
        rows = [session_row_factory(user_id=user_id), session_row_factory(user_id=user_id)]
        db_session.execute = AsyncMock(return_value=result_factory(scalars=rows))

        sessions = await SessionStore(db_session).list_active(user_id)

        assert [s.session_id for s in sessions] == [r.id for r in rows]
        assert all(s.user_id == user_id for s in sessions)

    @pytest.mark.asyncio
    async def test_get_active_for_user_hides_dead_session(
        self, db_session: AsyncMock, result_factory, session_row_factory
    ):
        row = session_row_factory(is_active=False)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=row))

        assert await SessionStore(db_session).get_active_for_user(row.user_id, row.id) is None

    @pytest.mark.asyncio
    async def test_get_active_for_user_returns_snapshot(
        self, db_session: AsyncMock, result_factory, session_row_factory
    ):
        row = session_row_factory()
        db_session.execute = AsyncMock(return_value=result_factory(scalar=row))

        snapshot = await SessionStore(db_session).get_active_for_user(row.user_id, row.id)

        assert snapshot is not None
        assert snapshot.session_id == row.id
        assert snapshot.expires_at > datetime.now(UTC)
