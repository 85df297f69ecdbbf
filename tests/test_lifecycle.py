import pytest

from oshub.constants import (
    B_DELETION_SECRET,
    B_ITEM_MIME,
    B_ITEM_NAME,
    B_ITEM_SIZE,
    B_ITEMS,
    B_PEER_ID,
    B_PEERS,
    B_PUBLIC_ID,
    ID_ALPHABET,
    K_BODY,
    K_SRC,
    K_T,
    T_CANCELLED,
    T_CREATED,
    T_JOIN_SUCCESS,
    T_NEW_PEER_JOINED,
    T_SESSION_CLOSED,
)
from oshub.errors import DuplicateKeyError, InvalidInput, NotFound, ResourceExhausted
from oshub.lifecycle import SessionLifecycle

SENDER = b"\x01" * 16
R1 = b"\x02" * 16
R2 = b"\x03" * 16

ITEMS = [{B_ITEM_NAME: "a.txt", B_ITEM_SIZE: 10, B_ITEM_MIME: "text/plain"}]


def _create(ctx, conn=SENDER):
    return SessionLifecycle(ctx).create(conn, ITEMS, [])


def test_create_returns_identifiers_from_alphabet(ctx, sent) -> None:
    outgoing = []
    public_id, secret = SessionLifecycle(ctx).create(SENDER, ITEMS, outgoing)

    assert len(public_id) == ctx.config.public_id_length
    assert len(secret) == ctx.config.deletion_secret_length
    assert len(public_id) != len(secret)
    assert set(public_id) <= set(ID_ALPHABET)
    assert set(secret) <= set(ID_ALPHABET)

    [(conn, env)] = sent(outgoing)
    assert conn == SENDER
    assert env[K_T] == T_CREATED
    assert env[K_SRC] == b"hub"
    assert env[K_BODY] == {B_PUBLIC_ID: public_id, B_DELETION_SECRET: secret}


def test_create_twice_yields_distinct_identifiers(ctx) -> None:
    first = _create(ctx)
    second = _create(ctx)
    assert first[0] != second[0]
    assert first[1] != second[1]


def test_create_persists_record_and_subscribes_sender(ctx) -> None:
    public_id, secret = _create(ctx)
    session = ctx.store.get(public_id)
    assert session.sender_id == SENDER
    assert session.deletion_secret == secret
    assert session.receiver_ids == set()
    assert session.is_open
    assert [i.name for i in session.items] == ["a.txt"]
    assert ctx.registry.members(public_id) == {SENDER}


def test_create_with_empty_items_persists_nothing(ctx) -> None:
    outgoing = []
    with pytest.raises(InvalidInput):
        SessionLifecycle(ctx).create(SENDER, [], outgoing)
    assert ctx.store.count() == 0
    assert outgoing == []


def test_create_retries_on_collision(ctx, monkeypatch) -> None:
    real_insert = ctx.store.insert
    calls = []

    def flaky_insert(session):
        calls.append(session.public_id)
        if len(calls) < 3:
            raise DuplicateKeyError("public_id")
        real_insert(session)

    monkeypatch.setattr(ctx.store, "insert", flaky_insert)
    public_id, _ = _create(ctx)
    assert len(calls) == 3
    assert ctx.store.get(public_id) is not None


def test_create_gives_up_after_max_attempts(ctx, monkeypatch) -> None:
    def always_collide(session):
        raise DuplicateKeyError("deletion_secret")

    monkeypatch.setattr(ctx.store, "insert", always_collide)
    with pytest.raises(ResourceExhausted) as exc:
        _create(ctx)
    assert exc.value.message == "failed to create session"
    assert ctx.registry.groups == {}


def test_join_unknown_session_is_not_found(ctx) -> None:
    with pytest.raises(NotFound) as exc:
        SessionLifecycle(ctx).join(R1, "nope00", [])
    assert exc.value.message == "session not found or no longer available"


@pytest.mark.parametrize("public_id", [None, "", "   ", 123, b"abc"])
def test_join_rejects_malformed_id(ctx, public_id) -> None:
    with pytest.raises(NotFound):
        SessionLifecycle(ctx).join(R1, public_id, [])


def test_join_after_sender_left_matches_never_created(ctx) -> None:
    public_id, _ = _create(ctx)
    ctx.store.pop_by_sender(SENDER)

    with pytest.raises(NotFound) as gone:
        SessionLifecycle(ctx).join(R1, public_id, [])
    with pytest.raises(NotFound) as never:
        SessionLifecycle(ctx).join(R1, "nope00", [])
    assert type(gone.value) is type(never.value)
    assert gone.value.message == never.value.message


def test_join_closed_session_is_not_found(ctx) -> None:
    public_id, _ = _create(ctx)
    ctx.store._sessions[public_id].is_open = False
    with pytest.raises(NotFound):
        SessionLifecycle(ctx).join(R1, public_id, [])
    assert ctx.registry.members(public_id) == {SENDER}


def test_join_returns_items_and_peers(ctx, sent) -> None:
    public_id, _ = _create(ctx)
    outgoing = []
    items, peers = SessionLifecycle(ctx).join(R1, public_id, outgoing)

    assert [i.name for i in items] == ["a.txt"]
    assert peers == [SENDER]

    out = sent(outgoing)
    success = [(c, e) for c, e in out if e[K_T] == T_JOIN_SUCCESS]
    assert len(success) == 1
    conn, env = success[0]
    assert conn == R1
    assert env[K_BODY][B_ITEMS] == ITEMS
    assert env[K_BODY][B_PEERS] == [SENDER]

    joined = [(c, e) for c, e in out if e[K_T] == T_NEW_PEER_JOINED]
    assert [c for c, _ in joined] == [SENDER]
    assert joined[0][1][K_BODY] == {B_PEER_ID: R1}


def test_second_joiner_sees_all_and_each_peer_notified_once(ctx, sent) -> None:
    lifecycle = SessionLifecycle(ctx)
    public_id, _ = _create(ctx)
    lifecycle.join(R1, public_id, [])

    outgoing = []
    _, peers = lifecycle.join(R2, public_id, outgoing)
    assert set(peers) == {SENDER, R1}

    notified = [c for c, e in sent(outgoing) if e[K_T] == T_NEW_PEER_JOINED]
    assert sorted(notified) == sorted([SENDER, R1])
    for _, env in sent(outgoing):
        if env[K_T] == T_NEW_PEER_JOINED:
            assert env[K_BODY] == {B_PEER_ID: R2}


def test_join_twice_does_not_duplicate_receiver(ctx) -> None:
    lifecycle = SessionLifecycle(ctx)
    public_id, _ = _create(ctx)
    lifecycle.join(R1, public_id, [])
    lifecycle.join(R1, public_id, [])
    assert ctx.store.get(public_id).receiver_ids == {R1}


def test_join_rolls_back_when_session_vanishes(ctx, monkeypatch) -> None:
    public_id, _ = _create(ctx)
    monkeypatch.setattr(ctx.store, "add_receiver", lambda pid, conn: False)
    with pytest.raises(NotFound):
        SessionLifecycle(ctx).join(R1, public_id, [])
    assert ctx.registry.members(public_id) == {SENDER}


def test_join_unsubscribes_when_store_write_fails(ctx, monkeypatch) -> None:
    public_id, _ = _create(ctx)

    def fail(pid, conn):
        raise OSError("disk full")

    monkeypatch.setattr(ctx.store, "add_receiver", fail)
    with pytest.raises(OSError):
        SessionLifecycle(ctx).join(R1, public_id, [])
    assert ctx.registry.members(public_id) == {SENDER}


def test_sender_joining_own_session_is_listed_as_receiver(ctx, sent) -> None:
    public_id, _ = _create(ctx)
    outgoing = []
    _, peers = SessionLifecycle(ctx).join(SENDER, public_id, outgoing)

    assert peers == []
    assert ctx.store.get(public_id).receiver_ids == {SENDER}
    out = sent(outgoing)
    assert [(c, e[K_T]) for c, e in out] == [(SENDER, T_JOIN_SUCCESS)]


def test_cancel_with_secret_closes_group(ctx, sent) -> None:
    lifecycle = SessionLifecycle(ctx)
    public_id, secret = _create(ctx)
    lifecycle.join(R1, public_id, [])
    lifecycle.join(R2, public_id, [])

    outgoing = []
    lifecycle.cancel(SENDER, public_id, secret, outgoing)

    out = sent(outgoing)
    closed = sorted(c for c, e in out if e[K_T] == T_SESSION_CLOSED)
    assert closed == sorted([R1, R2])
    cancelled = [(c, e) for c, e in out if e[K_T] == T_CANCELLED]
    assert cancelled[0][0] == SENDER
    assert cancelled[0][1][K_BODY] == {B_PUBLIC_ID: public_id}

    assert ctx.store.get(public_id) is None
    assert public_id not in ctx.registry.groups


def test_cancel_with_wrong_secret_is_not_found(ctx) -> None:
    public_id, _ = _create(ctx)
    with pytest.raises(NotFound) as exc:
        SessionLifecycle(ctx).cancel(R1, public_id, "wrong-secret", [])
    assert exc.value.message == "session not found or bad deletion secret"
    assert ctx.store.get(public_id) is not None


def test_expire_deletes_old_sessions(ctx, sent) -> None:
    lifecycle = SessionLifecycle(ctx)
    public_id, _ = _create(ctx)
    lifecycle.join(R1, public_id, [])
    created_at = ctx.store.get(public_id).created_at

    assert lifecycle.expire([], now=created_at + 1) == []

    outgoing = []
    expired = lifecycle.expire(
        outgoing, now=created_at + ctx.config.session_ttl_s + 1
    )
    assert expired == [public_id]
    assert ctx.store.count() == 0
    closed = sorted(c for c, e in sent(outgoing) if e[K_T] == T_SESSION_CLOSED)
    assert closed == sorted([SENDER, R1])
    assert ctx.stats.get("sessions_expired") == 1
