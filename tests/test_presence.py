import random
import threading

from rmatchd.presence import PresenceRegistry


def test_register_and_lookup() -> None:
    reg = PresenceRegistry()
    assert reg.register("alice", "c1") is True
    assert reg.register("alice", "c2") is False

    assert reg.connections_for("alice") == {"c1", "c2"}
    assert reg.is_online("alice")
    assert not reg.is_online("bob")
    assert reg.connections_for("bob") == frozenset()
    assert reg.all_online_identities() == {"alice"}


def test_register_same_connection_twice_is_idempotent() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "c1")
    reg.register("alice", "c1")
    assert len(reg.connections_for("alice")) == 1
    assert reg.counts() == {"identities": 1, "connections": 1}


def test_connection_moves_between_identities() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "c1")
    reg.register("bob", "c1")

    assert reg.connections_for("bob") == {"c1"}
    assert not reg.is_online("alice")
    assert reg.identity_for("c1") == "bob"


def test_unregister_removes_empty_identity() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "c1")
    reg.register("alice", "c2")

    assert reg.unregister("c1") == ("alice", False)
    assert reg.is_online("alice")
    assert reg.unregister("c2") == ("alice", True)
    assert not reg.is_online("alice")
    assert reg.all_online_identities() == frozenset()


def test_unregister_unknown_connection_is_noop() -> None:
    reg = PresenceRegistry()
    assert reg.unregister("never-registered") == (None, False)
    reg.register("alice", "c1")
    reg.unregister("c1")
    assert reg.unregister("c1") == (None, False)


def test_returned_sets_are_snapshots() -> None:
    reg = PresenceRegistry()
    reg.register("alice", "c1")
    snap = reg.connections_for("alice")
    reg.register("alice", "c2")
    reg.unregister("c1")
    assert snap == {"c1"}


def _check_invariants(reg: PresenceRegistry) -> None:
    seen: dict = {}
    for identity in reg.all_online_identities():
        conns = reg.connections_for(identity)
        assert conns, f"empty entry for {identity!r}"
        for c in conns:
            assert c not in seen, f"{c!r} under {seen.get(c)!r} and {identity!r}"
            seen[c] = identity
            assert reg.identity_for(c) == identity


def test_random_register_unregister_sequences_keep_invariants() -> None:
    rng = random.Random(1234)
    reg = PresenceRegistry()
    identities = ["alice", "bob", "carol", "dave"]
    conns = [f"c{i}" for i in range(10)]

    for _ in range(2000):
        c = rng.choice(conns)
        if rng.random() < 0.55:
            reg.register(rng.choice(identities), c)
        else:
            reg.unregister(c)
        _check_invariants(reg)


def test_concurrent_mutation_keeps_invariants() -> None:
    reg = PresenceRegistry()
    errors: list[BaseException] = []

    def worker(n: int) -> None:
        rng = random.Random(n)
        try:
            for i in range(500):
                conn = (n, i % 7)
                reg.register(rng.choice(["alice", "bob", "carol"]), conn)
                reg.connections_for("alice")
                if rng.random() < 0.5:
                    reg.unregister(conn)
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    _check_invariants(reg)
    for n in range(8):
        for i in range(7):
            reg.unregister((n, i))
    assert reg.all_online_identities() == frozenset()
    assert reg.counts() == {"identities": 0, "connections": 0}
