"""
Unit tests for the Key Exchange Coordinator.

Tests:
- Key generation announces the new key to everyone already present
- public_key requests derive matching secrets on both sides of a pair
- Each public key reaches each peer at most once, late joiners included
- Disconnects close pairs; closed pairs refuse further exchanges
- Security summaries reflect progress
"""

import logging

import pytest

from qchat.coordinator import HandshakeState
from qchat.errors import ProtocolError, StateError
from qchat.keys import to_hex
from qchat.messages import PublicKeyMessage

from .conftest import BrokenConnection


class TestKeyGeneration:

    @pytest.mark.asyncio
    async def test_start_sends_progress_then_keys(self, coordinator, connect):
        a = connect("a")
        await coordinator.start("a")
        assert [f["type"] for f in a.sent] == ["key_generation_start", "keys_generated"]
        keys = a.sent[1]
        assert keys["algorithm"] == "Kyber-1024-sim"
        assert keys["keySize"] == "128 bytes"
        assert keys["publicKey"] == coordinator.registry.get("a").public_key

    @pytest.mark.asyncio
    async def test_start_for_departed_session(self, coordinator):
        await coordinator.start("ghost")
        assert await coordinator.generate_keys("ghost") is None

    @pytest.mark.asyncio
    async def test_new_key_is_announced_to_others(self, coordinator, connect):
        a = connect("a")
        await coordinator.generate_keys("a")
        b = connect("b")
        await coordinator.generate_keys("b")

        announced = a.of_type("peer_public_key")
        assert len(announced) == 1
        assert announced[0]["clientId"] == "b"
        assert announced[0]["publicKey"] == coordinator.registry.get("b").public_key
        assert b.of_type("peer_public_key") == []
        assert coordinator.pair_state("b", "a") is HandshakeState.KEY_PUBLISHED

    @pytest.mark.asyncio
    async def test_generate_again_does_not_rekey(self, coordinator, connect):
        a = connect("a")
        await coordinator.generate_keys("a")
        connect("b")
        await coordinator.generate_keys("b")
        first = coordinator.registry.get("b").keypair

        assert await coordinator.generate_keys("b") is first
        assert len(a.of_type("peer_public_key")) == 1

    @pytest.mark.asyncio
    async def test_failing_peer_does_not_stop_announcements(self, coordinator, connect):
        connect("bad", BrokenConnection())
        b = connect("b")
        connect("c")
        assert await coordinator.generate_keys("c") is not None

        assert [f["clientId"] for f in b.of_type("peer_public_key")] == ["c"]
        # The failed announcement is not counted as made.
        assert "bad" not in coordinator.registry.get("c").announced_to
        assert "b" in coordinator.registry.get("c").announced_to

    @pytest.mark.asyncio
    async def test_announcement_skips_closed_connection(self, coordinator, connect):
        a = connect("a")
        a.open = False
        connect("b")
        await coordinator.generate_keys("b")
        assert a.sent == []


class TestExchange:

    @pytest.mark.asyncio
    async def test_pair_reaches_ready_with_matching_secrets(self, coordinator, join):
        conns = await join("a", "b")
        assert coordinator.pair_state("a", "b") is HandshakeState.READY
        assert coordinator.pair_state("b", "a") is HandshakeState.READY
        assert coordinator.secret_of("a", "b") == coordinator.secret_of("b", "a")
        assert len(coordinator.secret_of("a", "b")) == 32
        assert coordinator.registry.get("a").ready and coordinator.registry.get("b").ready

        complete = conns["a"].of_type("key_exchange_complete")
        assert complete[0]["peerId"] == "b"
        assert complete[0]["securityInfo"]["sharedSecretEstablished"] is True
        assert [f["peerId"] for f in conns["b"].of_type("peer_ready")] == ["a"]

    @pytest.mark.asyncio
    async def test_three_sessions_each_key_announced_once(self, coordinator, join):
        conns = await join("a", "b")
        await join("c")

        for sid, conn in conns.items():
            names = sorted(f["clientId"] for f in conn.of_type("peer_public_key"))
            assert names == sorted(set(conns) - {sid})

        for x in conns:
            for y in conns:
                if x != y:
                    assert coordinator.pair_state(x, y) is HandshakeState.READY
                    assert coordinator.secret_of(x, y) == coordinator.secret_of(y, x)
        assert coordinator.secret_of("a", "b") != coordinator.secret_of("a", "c")

    @pytest.mark.asyncio
    async def test_repeat_request_keeps_secret(self, coordinator, join):
        await join("a", "b")
        before = coordinator.secret_of("a", "b")
        again = await coordinator.handle_public_key("a", PublicKeyMessage("b", None))
        assert again == before

    @pytest.mark.asyncio
    async def test_no_keypair_yet(self, coordinator, connect):
        connect("a")
        connect("b")
        await coordinator.generate_keys("b")
        with pytest.raises(StateError):
            await coordinator.handle_public_key("a", PublicKeyMessage("b", None))

    @pytest.mark.asyncio
    async def test_cannot_exchange_with_self(self, coordinator, join):
        await join("a")
        with pytest.raises(ProtocolError):
            await coordinator.handle_public_key("a", PublicKeyMessage("a", None))

    @pytest.mark.asyncio
    async def test_unknown_peer_is_refused(self, coordinator, join):
        await join("a")
        with pytest.raises(StateError):
            await coordinator.handle_public_key("a", PublicKeyMessage("nobody", None))
        with pytest.raises(StateError):
            await coordinator.handle_public_key("a", PublicKeyMessage("nobody", "ab" * 128))
        assert coordinator.pair_state("a", "nobody") is not HandshakeState.READY

    @pytest.mark.asyncio
    async def test_peer_without_keys_is_refused(self, coordinator, join, connect):
        await join("a")
        connect("b")
        with pytest.raises(StateError):
            await coordinator.handle_public_key("a", PublicKeyMessage("b", "ab" * 128))

    @pytest.mark.asyncio
    async def test_peer_found_by_key(self, coordinator, connect):
        connect("a")
        connect("b")
        await coordinator.generate_keys("a")
        await coordinator.generate_keys("b")
        b_key = coordinator.registry.get("b").public_key
        await coordinator.handle_public_key("a", PublicKeyMessage(None, b_key))
        assert coordinator.pair_state("a", "b") is HandshakeState.READY

    @pytest.mark.asyncio
    async def test_registered_key_wins_over_claimed(self, coordinator, connect, caplog):
        connect("a")
        connect("b")
        await coordinator.generate_keys("a")
        await coordinator.generate_keys("b")
        reg = coordinator.registry
        expected = coordinator.provider.derive(reg.get("a").keypair.public, reg.get("b").keypair.public)

        with caplog.at_level(logging.WARNING, logger="qchat.coordinator"):
            secret = await coordinator.handle_public_key("a", PublicKeyMessage("b", "00" * 128))
        assert secret == expected
        assert "does not match" in caplog.text


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_pairs_close_and_stay_closed(self, coordinator, join):
        await join("a", "b")
        old_key = coordinator.registry.get("b").public_key
        coordinator.registry.remove("b")
        coordinator.handle_disconnect("b")

        assert coordinator.pair_state("a", "b") is HandshakeState.CLOSED
        assert coordinator.secret_of("a", "b") is None
        assert coordinator.pair_state("b", "a") is HandshakeState.CLOSED
        with pytest.raises(StateError):
            await coordinator.handle_public_key("a", PublicKeyMessage("b", old_key))

    @pytest.mark.asyncio
    async def test_late_request_for_departed_peer(self, coordinator, connect):
        """A request already in flight when the peer left never makes the pair ready."""
        connect("a")
        await coordinator.generate_keys("a")
        connect("c")
        await coordinator.generate_keys("c")
        c_key = coordinator.registry.get("c").public_key

        coordinator.registry.remove("c")
        coordinator.handle_disconnect("c")

        with pytest.raises(StateError):
            await coordinator.handle_public_key("a", PublicKeyMessage("c", c_key))
        assert coordinator.pair_state("a", "c") is not HandshakeState.READY
        assert coordinator.secret_of("a", "c") is None
        assert not coordinator.registry.get("a").ready


class TestIntrospection:

    @pytest.mark.asyncio
    async def test_pair_state_fallbacks(self, coordinator, connect):
        connect("a")
        assert coordinator.pair_state("a", "b") is HandshakeState.NO_KEY
        await coordinator.generate_keys("a")
        assert coordinator.pair_state("a", "b") is HandshakeState.KEY_PUBLISHED

    @pytest.mark.asyncio
    async def test_security_info_progress(self, coordinator, connect, join):
        connect("lonely")
        info = coordinator.security_info("lonely")
        assert info["keyPairGenerated"] is False
        assert info["status"] == "Setting up..."
        assert info["signaturesAuthenticateSender"] is False

        await join("a", "b")
        info = coordinator.security_info("a")
        assert info["keyPairGenerated"] and info["ready"]
        assert info["readyPeers"] == 1
        assert info["keySize"] == 256
        assert info["status"] == "Ready"

    def test_security_info_unknown_session(self, coordinator):
        info = coordinator.security_info("ghost")
        assert info["keyPairGenerated"] is False and info["readyPeers"] == 0

    def test_peer_key_hex_roundtrip(self, coordinator):
        pair = coordinator.provider.generate_keypair()
        assert pair.public_hex == to_hex(pair.public)
