import json

from montagetracker.backend.store import (
    STATE_SLOT,
    InMemoryMontageStore,
    PostgresMontageStore,
    create_store,
)


def test_create_store_returns_postgres_store_when_database_url_present() -> None:
    store = create_store(database_url="postgresql://local")

    assert isinstance(store, PostgresMontageStore)


def test_create_store_returns_in_memory_store_when_database_url_missing() -> None:
    store = create_store(database_url=None)

    assert isinstance(store, InMemoryMontageStore)


def test_in_memory_store_is_empty_on_first_load() -> None:
    store = InMemoryMontageStore()

    assert store.load() is None


def test_in_memory_store_saves_copies_and_clears() -> None:
    store = InMemoryMontageStore()
    snapshot = {"config": {"id": "m-1"}, "usedCharacteristics": [["a", ["might"]]]}

    store.save(snapshot)
    snapshot["config"]["id"] = "mutated"
    loaded = store.load()

    assert loaded == {"config": {"id": "m-1"}, "usedCharacteristics": [["a", ["might"]]]}

    store.save(None)

    assert store.load() is None


class _FakeCursor:
    def __init__(self, row=None) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.row = row

    def execute(self, sql: str, params: tuple) -> None:
        self.commands.append((sql, params))

    def fetchone(self):
        return self.row

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, row=None) -> None:
        self.cursor_instance = _FakeCursor(row=row)
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _PostgresStoreWithFakeConnection(PostgresMontageStore):
    def __init__(self, row=None) -> None:
        super().__init__(database_url="postgresql://local")
        self.fake_connection = _FakeConnection(row=row)

    def _connect(self) -> _FakeConnection:
        return self.fake_connection


def test_postgres_save_upserts_snapshot_into_fixed_slot() -> None:
    store = _PostgresStoreWithFakeConnection()

    store.save({"config": {"id": "m-1"}, "successes": 2})

    commands = store.fake_connection.cursor_instance.commands
    assert store.fake_connection.committed is True
    assert len(commands) == 1
    sql, params = commands[0]
    assert "INSERT INTO montage_settings" in sql
    assert "ON CONFLICT (slot) DO UPDATE" in sql
    assert params[0] == STATE_SLOT
    assert json.loads(params[1]) == {"config": {"id": "m-1"}, "successes": 2}


def test_postgres_save_none_clears_slot() -> None:
    store = _PostgresStoreWithFakeConnection()

    store.save(None)

    _, params = store.fake_connection.cursor_instance.commands[0]
    assert params[1] is None


def test_postgres_load_decodes_json_text_and_dicts() -> None:
    text_store = _PostgresStoreWithFakeConnection(row=('{"successes": 3}',))
    dict_store = _PostgresStoreWithFakeConnection(row=({"successes": 4},))

    assert text_store.load() == {"successes": 3}
    assert dict_store.load() == {"successes": 4}
    assert text_store.fake_connection.cursor_instance.commands[0][1] == (STATE_SLOT,)


def test_postgres_load_returns_none_for_missing_or_cleared_slot() -> None:
    assert _PostgresStoreWithFakeConnection(row=None).load() is None
    assert _PostgresStoreWithFakeConnection(row=(None,)).load() is None
