"""
Tests for the Security Event Log.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from ava_api.db.models import SecurityEvent
from ava_api.models.api import Severity
from ava_api.services.security_events import SecurityEventLog


class TestLog:
    @pytest.mark.asyncio
    async def test_appends_event(self, db_session: AsyncMock, client_info):
        user_id = uuid4()

        await SecurityEventLog(db_session).log(
            user_id,
            "login_failed",
            client_info,
            details={"email": "user@example.com"},
            severity=Severity.WARNING,
        )

        event = db_session.add.call_args[0][0]
        assert isinstance(event, SecurityEvent)
        assert event.user_id == user_id
        assert event.event_type == "login_failed"
        assert event.severity == "warning"
        assert event.details == {"email": "user@example.com"}
        assert event.ip_address == client_info.ip_address
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_defaults(self, db_session: AsyncMock, client_info):
        await SecurityEventLog(db_session).log(None, "registration_failed", client_info)

        event = db_session.add.call_args[0][0]
        assert event.user_id is None
        assert event.details == {}
        assert event.severity == "info"

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self, db_session: AsyncMock, client_info):
        db_session.commit = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("connection lost"))
        )

        await SecurityEventLog(db_session).log(uuid4(), "logout", client_info)

        db_session.rollback.assert_awaited_once()


class TestPrune:
    @pytest.mark.asyncio
    async def test_returns_deleted_count(self, db_session: AsyncMock, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(rowcount=9))

        deleted = await SecurityEventLog(db_session).prune(
            datetime.now(UTC) - timedelta(days=90)
        )

        assert deleted == 9
        db_session.commit.assert_awaited_once()
