import pytest
from conftest import packet

from rmatchd.codec import decode
from rmatchd.constants import (
    K_BODY,
    K_DST,
    K_SRC,
    K_T,
    T_ANSWER,
    T_CANDIDATE,
    T_ERROR,
    T_OFFER,
    T_REGISTER,
)
from rmatchd.presence import PresenceRegistry
from rmatchd.relay import SignalingRelay


class _Sink:
    def __init__(self, failing=()) -> None:
        self.failing = set(failing)
        self.sent: list[tuple[str, bytes]] = []

    def __call__(self, conn, data: bytes) -> None:
        if conn in self.failing:
            raise OSError("boom")
        self.sent.append((conn, data))


def test_relay_delivers_to_every_target_connection_only() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "a1")
    reg.register("alice", "a2")
    reg.register("bob", "b1")
    sink = _Sink()

    n = SignalingRelay(reg, sink).relay(T_OFFER, "alice", {"sdp": "x"}, src="bob")

    assert n == 2
    assert sorted(c for c, _ in sink.sent) == ["a1", "a2"]
    env = decode(sink.sent[0][1])
    assert env[K_T] == T_OFFER
    assert env[K_SRC] == "bob"
    assert env[K_DST] == "alice"
    assert env[K_BODY] == {"sdp": "x"}


def test_relay_to_offline_target_is_silent_noop() -> None:
    sink = _Sink()
    assert SignalingRelay(PresenceRegistry(), sink).relay(T_ANSWER, "nobody", "x") == 0
    assert sink.sent == []


def test_relay_without_target_is_dropped() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "a1")
    sink = _Sink()
    relay = SignalingRelay(reg, sink)
    assert relay.relay(T_CANDIDATE, None, "x") == 0
    assert relay.relay(T_CANDIDATE, "", "x") == 0
    assert sink.sent == []


def test_failed_send_does_not_block_other_connections() -> None:
    reg = PresenceRegistry()
    for c in ("a1", "a2", "a3"):
        reg.register("alice", c)
    sink = _Sink(failing={"a2"})

    n = SignalingRelay(reg, sink).relay(T_OFFER, "alice", "x")

    assert n == 2
    assert sorted(c for c, _ in sink.sent) == ["a1", "a3"]


def test_relay_excludes_sending_connection() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "a1")
    reg.register("alice", "a2")
    sink = _Sink()
    assert SignalingRelay(reg, sink).relay(T_OFFER, "alice", "x", exclude="a1") == 1
    assert [c for c, _ in sink.sent] == ["a2"]


def test_relay_rejects_non_signaling_kind() -> None:
    with pytest.raises(ValueError):
        SignalingRelay(PresenceRegistry(), _Sink()).relay(T_REGISTER, "alice", "x")


def test_relay_queues_when_given_outgoing() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "a1")
    sink = _Sink()
    outgoing: list = []
    assert SignalingRelay(reg, sink).relay(T_OFFER, "alice", "x", outgoing=outgoing) == 1
    assert sink.sent == []
    assert [c for c, _ in outgoing] == ["a1"]


def test_offer_reaches_both_alice_tabs_but_not_bob(hub) -> None:
    a1 = hub.connect("alice-1")
    a2 = hub.connect("alice-2")
    b = hub.connect("bob")
    a1.receive(packet(T_REGISTER, body="alice"))
    a2.receive(packet(T_REGISTER, body="alice"))
    b.receive(packet(T_REGISTER, body="bob"))
    hub.sent.clear()

    b.receive(packet(T_OFFER, dst="alice", body={"sdp": "offer"}))

    for tab in (a1, a2):
        (msg,) = hub.received(tab)
        assert msg[K_T] == T_OFFER
        assert msg[K_SRC] == "bob"
        assert msg[K_BODY] == {"sdp": "offer"}
    assert hub.received(b) == []
    assert hub.stats_manager.get("relayed") == 2


def test_messages_from_one_sender_keep_their_order(hub) -> None:
    a = hub.connect("alice")
    b = hub.connect("bob")
    a.receive(packet(T_REGISTER, body="alice"))
    b.receive(packet(T_REGISTER, body="bob"))
    hub.sent.clear()

    b.receive(packet(T_OFFER, dst="alice", body=0))
    for i in range(1, 6):
        b.receive(packet(T_CANDIDATE, dst="alice", body=i))

    assert [m[K_BODY] for m in hub.received(a)] == [0, 1, 2, 3, 4, 5]


def test_signal_without_target_reports_error_to_sender(hub) -> None:
    b = hub.connect("bob")
    b.receive(packet(T_REGISTER, body="bob"))
    hub.sent.clear()

    b.receive(packet(T_ANSWER, body="x"))

    (reply,) = hub.received(b)
    assert reply[K_T] == T_ERROR


def test_signal_to_offline_target_is_dropped_quietly(hub) -> None:
    b = hub.connect("bob")
    b.receive(packet(T_REGISTER, body="bob"))
    hub.sent.clear()

    b.receive(packet(T_OFFER, dst="alice", body="x"))

    assert hub.sent == []
    assert hub.stats_manager.get("relay_dropped") == 1


def test_dead_recipient_link_does_not_block_others(hub) -> None:
    a1 = hub.connect("alice-1")
    a2 = hub.connect("alice-2")
    b = hub.connect("bob")
    for link, ident in ((a1, "alice"), (a2, "alice"), (b, "bob")):
        link.receive(packet(T_REGISTER, body=ident))
    hub.sent.clear()
    a1.fail_sends = True

    b.receive(packet(T_OFFER, dst="alice", body="x"))

    assert hub.received(a1) == []
    assert len(hub.received(a2)) == 1
    assert hub.stats_manager.get("send_failures") == 1
