"""
Session Security Tests

The signed-in client is read from the signed session cookie. Malformed or
stale sessions must never resolve to a client.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from billybot.core.session import (
    clear_session,
    get_session_client_id,
    is_session_expired,
    set_session_client_id,
)


def make_request(session=None):
    request = Mock()
    request.session = dict(session or {})
    return request


class TestSessionClientId:

    def test_roundtrip(self):
        request = make_request()
        client_id = uuid.uuid4()

        set_session_client_id(request, client_id)

        assert get_session_client_id(request) == client_id
        assert "created_at" in request.session

    def test_missing_client_id(self):
        assert get_session_client_id(make_request()) is None

    def test_invalid_uuid_clears_session(self):
        request = make_request({"client_id": "not-a-uuid", "created_at": "x"})

        assert get_session_client_id(request) is None
        assert request.session == {}

    def test_relogin_keeps_original_created_at(self):
        created_at = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        request = make_request({"created_at": created_at})

        set_session_client_id(request, uuid.uuid4())

        assert request.session["created_at"] == created_at


class TestSessionExpiry:

    def test_fresh_session(self):
        request = make_request({"created_at": datetime.now(timezone.utc).isoformat()})
        assert is_session_expired(request) is False

    @pytest.mark.parametrize("created_at", [None, "garbage"])
    def test_missing_or_malformed_timestamp_is_expired(self, created_at):
        session = {} if created_at is None else {"created_at": created_at}
        assert is_session_expired(make_request(session)) is True

    def test_expires_after_24_hours(self):
        created_at = datetime.now(timezone.utc) - timedelta(hours=24, minutes=1)
        request = make_request({"created_at": created_at.isoformat()})

        assert is_session_expired(request) is True

    def test_naive_timestamp_treated_as_utc(self):
        created_at = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)
        request = make_request({"created_at": created_at.isoformat()})

        assert is_session_expired(request) is False

    def test_clear_session(self):
        request = make_request({"client_id": str(uuid.uuid4())})
        clear_session(request)
        assert request.session == {}
