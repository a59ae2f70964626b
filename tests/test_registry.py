"""
Unit tests for the Session Registry.

Tests:
- Membership: register / remove / lookup, duplicate ids refused
- Snapshot iteration and best-effort broadcast
- Announcement test-and-set, first-wins secrets, forward-only pair states
- close_peer() moves known pairs to CLOSED and forgets their secrets
"""

import pytest

from qchat.keys import HashKeyProvider
from qchat.registry import HandshakeState

from .conftest import BrokenConnection, FakeConnection


class TestMembership:

    def test_register_and_lookup(self, registry):
        conn = FakeConnection()
        session = registry.register("a", conn)
        assert registry.get("a") is session
        assert session.connection is conn
        assert "a" in registry and len(registry) == 1

    def test_duplicate_id_refused(self, registry, connect):
        connect("a")
        with pytest.raises(ValueError):
            registry.register("a", FakeConnection())

    def test_remove(self, registry, connect):
        connect("a")
        assert registry.remove("a").id == "a"
        assert registry.remove("a") is None
        assert registry.get("a") is None

    def test_get_none(self, registry):
        assert registry.get(None) is None

    def test_ready_count(self, registry, connect):
        connect("a")
        connect("b")
        registry.mark_ready("a")
        assert registry.ready_count() == 1


class TestIteration:

    def test_select_keeps_join_order(self, registry, connect):
        for sid in ("c", "a", "b"):
            connect(sid)
        assert [s.id for s in registry.select()] == ["c", "a", "b"]

    def test_snapshot_survives_removal(self, registry, connect):
        """Removing sessions while walking a snapshot is safe."""
        for sid in ("a", "b", "c"):
            connect(sid)
        seen = []
        for s in registry.select():
            registry.remove("c")
            seen.append(s.id)
        assert seen == ["a", "b", "c"]
        assert len(registry) == 2

    def test_for_each(self, registry, connect):
        connect("a")
        connect("b")
        touched = []
        assert registry.for_each(lambda s: s.id != "a", lambda s: touched.append(s.id)) == 1
        assert touched == ["b"]

    @pytest.mark.asyncio
    async def test_broadcast_skips_excluded_and_closed(self, registry, connect):
        a, b, c = connect("a"), connect("b"), connect("c")
        c.open = False
        sent = await registry.broadcast({"type": "x"}, exclude="a")
        assert sent == 1
        assert a.sent == [] and b.sent == [{"type": "x"}] and c.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_survives_failing_peer(self, registry, connect):
        connect("bad", BrokenConnection())
        ok = connect("ok")
        assert await registry.broadcast({"type": "x"}) == 1
        assert ok.sent == [{"type": "x"}]


class TestMutation:

    def test_set_keypair_only_once(self, registry, connect):
        connect("a")
        provider = HashKeyProvider()
        first = provider.generate_keypair()
        assert registry.set_keypair("a", first)
        assert not registry.set_keypair("a", provider.generate_keypair())
        assert registry.get("a").public_key == first.public_hex

    def test_set_keypair_unknown_session(self, registry):
        assert not registry.set_keypair("ghost", HashKeyProvider().generate_keypair())

    def test_mark_announced_is_test_and_set(self, registry, connect):
        connect("a")
        assert registry.mark_announced("a", "b")
        assert not registry.mark_announced("a", "b")
        assert registry.mark_announced("a", "c")
        registry.unmark_announced("a", "b")
        assert registry.mark_announced("a", "b")

    def test_first_secret_wins(self, registry, connect):
        connect("a")
        assert registry.store_secret("a", "b", b"one")
        assert not registry.store_secret("a", "b", b"two")
        assert registry.secret_for("a", "b") == b"one"
        assert registry.has_secret("a", "b")
        assert not registry.has_secret("a", "c")

    def test_pair_state_only_moves_forward(self, registry, connect):
        connect("a")
        assert registry.advance_pair("a", "b", HandshakeState.EXCHANGING) is HandshakeState.EXCHANGING
        assert registry.advance_pair("a", "b", HandshakeState.KEY_PUBLISHED) is HandshakeState.EXCHANGING
        assert registry.advance_pair("a", "b", HandshakeState.READY) is HandshakeState.READY
        assert registry.pair_state("a", "b") is HandshakeState.READY

    def test_advance_on_missing_session(self, registry):
        assert registry.advance_pair("ghost", "b", HandshakeState.READY) is HandshakeState.CLOSED
        assert registry.pair_state("ghost", "b") is None

    def test_state_ranks(self):
        order = [HandshakeState.NO_KEY, HandshakeState.KEY_PUBLISHED, HandshakeState.EXCHANGING,
                 HandshakeState.READY, HandshakeState.CLOSED]
        assert [s.rank for s in order] == sorted(s.rank for s in order)


class TestClosePeer:

    def test_close_peer(self, registry, connect):
        connect("a")
        connect("b")
        connect("c")
        registry.advance_pair("a", "x", HandshakeState.READY)
        registry.store_secret("a", "x", b"s")
        registry.store_peer_key("a", "x", b"k")
        registry.mark_announced("a", "x")
        registry.store_peer_key("b", "x", b"k")

        assert registry.close_peer("x") == 2
        a = registry.get("a")
        assert registry.pair_state("a", "x") is HandshakeState.CLOSED
        assert registry.pair_state("b", "x") is HandshakeState.CLOSED
        assert "x" not in a.shared_secrets and "x" not in a.peer_keys and "x" not in a.announced_to
        assert registry.pair_state("c", "x") is None

    def test_closed_is_terminal(self, registry, connect):
        connect("a")
        registry.advance_pair("a", "x", HandshakeState.READY)
        registry.close_peer("x")
        assert registry.advance_pair("a", "x", HandshakeState.READY) is HandshakeState.CLOSED
