import os

import pytest

from oshub.errors import DuplicateKeyError
from oshub.models import ItemMetadata, Session
from oshub.store import MemorySessionStore, TomlSessionStore

ITEMS = (ItemMetadata("a.txt", 10, "text/plain"),)


def _session(public_id="pub001", sender=b"\x01" * 16, secret="secret0001", **kw):
    return Session(public_id, sender, secret, ITEMS, **kw)


@pytest.fixture(params=["memory", "toml"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemorySessionStore()
    return TomlSessionStore(str(tmp_path / "sessions.toml"))


def test_insert_and_get(store) -> None:
    store.insert(_session())
    got = store.get("pub001")
    assert got is not None
    assert got.items == ITEMS
    assert store.count() == 1


def test_insert_rejects_duplicate_public_id(store) -> None:
    store.insert(_session())
    with pytest.raises(DuplicateKeyError) as exc:
        store.insert(_session(secret="secret0002"))
    assert exc.value.field == "public_id"
    assert store.count() == 1


def test_insert_rejects_duplicate_secret(store) -> None:
    store.insert(_session())
    with pytest.raises(DuplicateKeyError) as exc:
        store.insert(_session(public_id="pub002"))
    assert exc.value.field == "deletion_secret"


def test_returned_sessions_are_copies(store) -> None:
    store.insert(_session())
    store.get("pub001").receiver_ids.add(b"x")
    assert store.get("pub001").receiver_ids == set()


def test_find_open_skips_closed(store) -> None:
    store.insert(_session(is_open=False))
    assert store.get("pub001") is not None
    assert store.find_open("pub001") is None
    assert store.find_open("missing") is None


def test_add_receiver_is_idempotent(store) -> None:
    store.insert(_session())
    assert store.add_receiver("pub001", b"r1")
    assert store.add_receiver("pub001", b"r1")
    assert store.get("pub001").receiver_ids == {b"r1"}
    assert not store.add_receiver("missing", b"r1")


def test_pop_by_sender_removes_all_owned(store) -> None:
    store.insert(_session("pub001", secret="secret0001"))
    store.insert(_session("pub002", secret="secret0002"))
    store.insert(_session("pub003", sender=b"\x02" * 16, secret="secret0003"))

    popped = store.pop_by_sender(b"\x01" * 16)
    assert sorted(s.public_id for s in popped) == ["pub001", "pub002"]
    assert store.count() == 1
    assert store.pop_by_sender(b"\x01" * 16) == []


def test_pull_receiver_across_sessions(store) -> None:
    store.insert(_session("pub001", secret="secret0001"))
    store.insert(_session("pub002", secret="secret0002"))
    store.add_receiver("pub001", b"r1")
    store.add_receiver("pub002", b"r1")
    store.add_receiver("pub002", b"r2")

    assert store.pull_receiver(b"r1") == 2
    assert store.pull_receiver(b"r1") == 0
    assert store.get("pub001").receiver_ids == set()
    assert store.get("pub002").receiver_ids == {b"r2"}
    assert store.count() == 2


def test_delete_with_secret(store) -> None:
    store.insert(_session())
    assert store.delete_with_secret("pub001", "wrong") is None
    assert store.delete_with_secret("missing", "secret0001") is None
    removed = store.delete_with_secret("pub001", "secret0001")
    assert removed is not None and removed.public_id == "pub001"
    assert store.get("pub001") is None


def test_delete_expired(store) -> None:
    store.insert(_session("old001", secret="secret0001", created_at=100.0))
    store.insert(_session("new001", secret="secret0002", created_at=300.0))
    removed = store.delete_expired(200.0)
    assert [s.public_id for s in removed] == ["old001"]
    assert store.get("new001") is not None


def test_toml_store_survives_reload(tmp_path) -> None:
    path = str(tmp_path / "sessions.toml")
    store = TomlSessionStore(path)
    store.insert(_session(created_at=1234.5))
    store.add_receiver("pub001", b"\xaa\xbb")

    if os.name == "posix":
        assert os.stat(path).st_mode & 0o777 == 0o600

    reloaded = TomlSessionStore(path)
    got = reloaded.get("pub001")
    assert got is not None
    assert got.sender_id == b"\x01" * 16
    assert got.deletion_secret == "secret0001"
    assert got.receiver_ids == {b"\xaa\xbb"}
    assert got.items == ITEMS
    assert got.created_at == 1234.5
    assert got.is_open


def test_toml_store_skips_malformed_entries(tmp_path) -> None:
    path = tmp_path / "sessions.toml"
    path.write_text(
        """
[sessions.good01]
sender = "0101"
deletion_secret = "secret0001"
is_open = true
created_at = 1.0
receivers = []

[[sessions.good01.items]]
name = "a.txt"
size = 10
mime_type = "text/plain"

[sessions.bad001]
sender = "0202"
deletion_secret = "secret0002"
""",
        encoding="utf-8",
    )
    store = TomlSessionStore(str(path))
    assert store.count() == 1
    assert store.get("good01").sender_id == b"\x01\x01"


def test_toml_store_accepts_empty_registry(tmp_path) -> None:
    path = tmp_path / "sessions.toml"
    path.write_text("# comment\n\n[sessions]\n", encoding="utf-8")
    assert TomlSessionStore(str(path)).count() == 0


def test_toml_store_skips_bool_item_size(tmp_path) -> None:
    path = tmp_path / "sessions.toml"
    path.write_text(
        """
[sessions.bool01]
sender = "0101"
deletion_secret = "secret0001"

[[sessions.bool01.items]]
name = "a.txt"
size = true
mime_type = "text/plain"
""",
        encoding="utf-8",
    )
    assert TomlSessionStore(str(path)).count() == 0


def _fail_replace(*args, **kwargs):
    raise OSError("disk full")


def test_failed_write_rolls_back_insert(tmp_path, monkeypatch) -> None:
    path = tmp_path / "sessions.toml"
    store = TomlSessionStore(str(path))
    monkeypatch.setattr(os, "replace", _fail_replace)

    with pytest.raises(OSError):
        store.insert(_session())
    assert store.count() == 0
    assert store.get("pub001") is None
    assert not (tmp_path / "sessions.toml.tmp").exists()

    monkeypatch.undo()
    store.insert(_session())
    assert store.count() == 1


def test_failed_write_keeps_popped_sessions(tmp_path, monkeypatch) -> None:
    path = tmp_path / "sessions.toml"
    store = TomlSessionStore(str(path))
    store.insert(_session())
    store.add_receiver("pub001", b"r1")
    monkeypatch.setattr(os, "replace", _fail_replace)

    with pytest.raises(OSError):
        store.pop_by_sender(b"\x01" * 16)
    with pytest.raises(OSError):
        store.pull_receiver(b"r1")
    with pytest.raises(OSError):
        store.add_receiver("pub001", b"r2")

    got = store.get("pub001")
    assert got is not None
    assert got.receiver_ids == {b"r1"}
    assert not (tmp_path / "sessions.toml.tmp").exists()

    monkeypatch.undo()
    assert [s.public_id for s in store.pop_by_sender(b"\x01" * 16)] == ["pub001"]
    assert TomlSessionStore(str(path)).count() == 0
