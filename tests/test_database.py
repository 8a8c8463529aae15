import pytest

import database


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DATABASE_FILE", str(tmp_path / "nested" / "state.db"))
    database.initialize_database()
    return database


def test_missing_key_returns_default(db):
    assert db.load_state(db.KEY_BOOKS) is None
    assert db.load_state(db.KEY_BOOKS, []) == []


def test_save_and_load_round_trip(db):
    db.save_state({
        db.KEY_BOOKS: [{"id": "A0001", "title": "貓"}],
        db.KEY_ACTIVE_USER: {"username": "alice", "role": "student"},
    })

    assert db.load_state(db.KEY_BOOKS) == [{"id": "A0001", "title": "貓"}]
    assert db.load_state(db.KEY_ACTIVE_USER)["username"] == "alice"

    db.save_state({db.KEY_ACTIVE_USER: None})
    assert db.load_state(db.KEY_ACTIVE_USER, "fallback") is None


def test_corrupt_value_is_treated_as_missing(db):
    conn = db.get_db_connection()
    with conn:
        conn.execute("INSERT INTO app_state (key, value) VALUES (?, ?)", (db.KEY_SETTINGS, "{not json"))
    conn.close()

    assert db.load_state(db.KEY_SETTINGS, {}) == {}


def test_clear_state_removes_all_keys(db):
    db.save_state({key: [] for key in db.STATE_KEYS})
    db.save_state({"unrelated": 1})

    db.clear_state()

    for key in db.STATE_KEYS:
        assert db.load_state(key) is None
    assert db.load_state("unrelated") == 1
