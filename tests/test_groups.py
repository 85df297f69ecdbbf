from oshub.groups import ConnectionRegistry


def test_subscribe_and_members_copy() -> None:
    reg = ConnectionRegistry()
    reg.subscribe("g1", b"a")
    reg.subscribe("g1", b"b")
    members = reg.members("g1")
    members.add(b"z")
    assert reg.members("g1") == {b"a", b"b"}
    assert reg.members("missing") == set()


def test_unregister_leaves_all_groups() -> None:
    reg = ConnectionRegistry()
    reg.register(b"a")
    reg.subscribe("g1", b"a")
    reg.subscribe("g2", b"a")
    reg.subscribe("g2", b"b")

    assert reg.unregister(b"a") == ["g1", "g2"]
    assert not reg.is_connected(b"a")
    assert "g1" not in reg.groups
    assert reg.members("g2") == {b"b"}
    assert reg.unregister(b"a") == []


def test_drop_group_returns_members() -> None:
    reg = ConnectionRegistry()
    reg.subscribe("g1", b"a")
    reg.subscribe("g1", b"b")
    reg.subscribe("g2", b"a")

    assert reg.drop_group("g1") == {b"a", b"b"}
    assert reg.drop_group("g1") == set()
    assert reg.unregister(b"a") == ["g2"]
    assert reg.unregister(b"b") == []


def test_get_stats() -> None:
    reg = ConnectionRegistry()
    reg.register(b"a")
    reg.register(b"b")
    reg.subscribe("g1", b"a")
    reg.subscribe("g1", b"b")
    reg.subscribe("g2", b"a")

    stats = reg.get_stats()
    assert stats["connections"] == 2
    assert stats["groups_total"] == 2
    assert stats["memberships"] == 3
    assert stats["top_groups"][0] == ("g1", 2)
