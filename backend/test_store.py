"""
Tests for the SQLite session store
"""

import asyncio
import json
import threading

from nutrilog.models import ActionKind, ContextBuffer, PendingAction, Topic
from nutrilog.db import NutritionDb
from nutrilog.store import SQLiteSessionStore


def test_new_user_gets_empty_session(tmp_path):
    store = SQLiteSessionStore(tmp_path / "sessions.db")

    session = asyncio.run(store.get_session("u1", "s1"))

    assert session.pending_action is None
    assert session.context == {}
    assert session.buffer.recent_foods == []


def test_pending_action_is_a_single_slot(tmp_path):
    store = SQLiteSessionStore(tmp_path / "sessions.db")

    async def scenario():
        await store.save_pending_action("u1", PendingAction(ActionKind.FOOD_LOG, {"food_name": "rice"}))
        await store.save_pending_action("u1", PendingAction(ActionKind.RECIPE_LOG, {"recipe_name": "Chili"}))
        latest = (await store.get_session("u1", "s1")).pending_action
        await store.clear_pending_action("u1")
        cleared = (await store.get_session("u1", "s1")).pending_action
        return latest, cleared

    latest, cleared = asyncio.run(scenario())

    assert latest == PendingAction(ActionKind.RECIPE_LOG, {"recipe_name": "Chili"})
    assert cleared is None


def test_context_patches_merge_and_survive_reopen(tmp_path):
    path = tmp_path / "sessions.db"
    store = SQLiteSessionStore(path)

    async def write():
        await store.update_context("u1", {"intent": "log_food", "agent": "reasoning"})
        await store.update_context("u1", {"intent": "query_goals"})
        await store.update_buffer("u1", ContextBuffer(recent_foods=["oats"], last_topic=Topic.FOOD))
    asyncio.run(write())

    session = asyncio.run(SQLiteSessionStore(path).get_session("u1", "s2"))

    assert session.context == {"intent": "query_goals", "agent": "reasoning"}
    assert session.buffer.recent_foods == ["oats"]
    assert session.buffer.last_topic == Topic.FOOD
    assert session.session_id == "s2"


def seed_pending(store, user_id, pending):
    conn = store.get_conn()
    conn.execute(
        "INSERT INTO user_sessions (user_id, session_id, pending_action, agent_context, buffer, updated_at) "
        "VALUES (?, 'default', ?, '{}', '{}', '')",
        (user_id, json.dumps(pending)),
    )
    conn.commit()
    conn.close()


def test_unrecognized_pending_type_still_loads(tmp_path):
    store = SQLiteSessionStore(tmp_path / "sessions.db")
    seed_pending(store, "u1", {"type": "bulk_goal_update", "data": {"count": 3}})

    session = asyncio.run(store.get_session("u1", "s1"))

    assert session.pending_action == PendingAction(ActionKind.UNKNOWN, {"count": 3})


def record_connection_threads(monkeypatch, target):
    threads = []
    open_conn = target.get_conn

    def get_conn():
        threads.append(threading.get_ident())
        return open_conn()

    monkeypatch.setattr(target, "get_conn", get_conn)
    return threads


def test_sqlite_work_runs_off_the_event_loop_thread(tmp_path, monkeypatch):
    store = SQLiteSessionStore(tmp_path / "sessions.db")
    db = NutritionDb(tmp_path / "nutrilog.db")
    store_threads = record_connection_threads(monkeypatch, store)
    db_threads = record_connection_threads(monkeypatch, db)

    async def scenario():
        await store.get_session("u1", "s1")
        await store.update_context("u1", {"intent": "log_food"})
        await db.update_user_goal("u1", "protein_g", 150, "g")
        await db.get_user_goals("u1")
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert len(store_threads) == 2
    assert len(db_threads) == 2
    assert loop_thread not in store_threads + db_threads
