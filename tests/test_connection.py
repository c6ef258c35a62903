"""Tests for the connection guardian."""

import pytest

libvirt = pytest.importorskip("libvirt")

from virt_exporter.config import LibvirtConfig  # noqa: E402
from virt_exporter.connection import ConnectionGuardian, Session  # noqa: E402
from virt_exporter.errors import ConnectionUnavailable  # noqa: E402

from .fakes import FakeConnection, ScriptedOpener, refused  # noqa: E402


def _guardian(opener, attempts=3, backoff="exponential", base=0.5):
    sleeps = []
    cfg = LibvirtConfig(
        uri="test:///default",
        reconnect_attempts=attempts,
        reconnect_backoff_seconds=base,
        backoff=backoff,
    )
    return ConnectionGuardian(cfg, opener=opener, sleep=sleeps.append), sleeps


class TestConnectionGuardian:
    """Liveness checks and bounded reconnection."""

    def test_connect_and_noop_when_alive(self):
        conn = FakeConnection()
        opener = ScriptedOpener(conn)
        guardian, sleeps = _guardian(opener)
        first = guardian.connect()
        assert guardian.ensure_live() is first
        assert guardian.ensure_live() is first
        assert opener.uris == ["test:///default"]
        assert guardian.reconnects == 0
        assert sleeps == []

    def test_initial_connection_failure_is_fatal(self):
        guardian, _ = _guardian(ScriptedOpener(refused()))
        with pytest.raises(ConnectionUnavailable):
            guardian.connect()

    def test_reconnect_succeeds_on_second_attempt(self):
        stale = FakeConnection()
        fresh = FakeConnection()
        guardian, sleeps = _guardian(ScriptedOpener(stale, refused(), fresh))
        old = guardian.connect()
        stale.alive = False

        session = guardian.ensure_live()
        assert session is not old
        assert session.conn is fresh
        assert stale.closed == 1
        assert guardian.reconnects == 1
        assert sleeps == [0.5]
        # the old session object is left untouched
        assert old.conn is stale

    def test_exhausted_attempts_raise_and_guardian_recovers(self):
        stale = FakeConnection()
        later = FakeConnection()
        guardian, sleeps = _guardian(ScriptedOpener(stale, refused(), refused(), refused(), later))
        guardian.connect()
        stale.alive = False

        with pytest.raises(ConnectionUnavailable):
            guardian.ensure_live()
        # no sleep after the final attempt
        assert sleeps == [0.5, 1.0]
        assert guardian.session is None

        assert guardian.ensure_live().conn is later

    def test_liveness_error_counts_as_dead(self):
        stale = FakeConnection()
        stale.fail["isAlive"] = refused()
        fresh = FakeConnection()
        guardian, _ = _guardian(ScriptedOpener(stale, fresh))
        guardian.connect()
        assert guardian.ensure_live().conn is fresh

    def test_close_error_is_ignored(self):
        stale = FakeConnection()
        stale.alive = False

        def broken_close():
            raise refused()

        stale.close = broken_close
        guardian, _ = _guardian(ScriptedOpener(stale, FakeConnection()))
        guardian.connect()
        assert guardian.ensure_live().conn is not stale

    def test_close_is_idempotent(self):
        conn = FakeConnection()
        guardian, _ = _guardian(ScriptedOpener(conn))
        guardian.connect()
        guardian.close()
        guardian.close()
        assert conn.closed == 1
        assert guardian.session is None

    @pytest.mark.parametrize("policy,expected", [
        ("linear", [0.5, 1.0, 1.5]),
        ("exponential", [0.5, 1.0, 2.0]),
    ])
    def test_backoff_policies(self, policy, expected):
        guardian, _ = _guardian(ScriptedOpener(), backoff=policy)
        assert [guardian.backoff(n) for n in (1, 2, 3)] == expected


def test_session_is_immutable():
    session = Session(uri="test:///default", conn=FakeConnection())
    with pytest.raises(AttributeError):
        session.conn = None
    assert session.is_alive()
