"""
Nutrition Database
SQLite tables for the food log, nutrient goals, saved recipes and the agent
execution log
"""

import asyncio
import functools
import json
import logging
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from config import DB_PATH
from nutrilog.nutrients import FOOD_LOG_COLUMNS

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def in_thread(func):
    """Run a blocking SQLite method on a worker thread"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)
    return wrapper


class NutritionDb:
    """Row store used by tools, the recipe book and the confirmation engine"""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or DB_PATH)
        self.init_db()

    def get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        conn = self.get_conn()
        cur = conn.cursor()

        nutrient_columns = ",\n".join(f"    {col} REAL" for col in FOOD_LOG_COLUMNS)
        cur.execute(f"""
        CREATE TABLE IF NOT EXISTS food_log (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            food_name TEXT NOT NULL,
            portion TEXT,
            calories INTEGER,
            log_time TEXT NOT NULL,
            recipe_id TEXT,
            extras TEXT,
        {nutrient_columns}
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS user_goals (
            user_id TEXT NOT NULL,
            nutrient TEXT NOT NULL,
            target_value REAL NOT NULL,
            unit TEXT,
            goal_type TEXT DEFAULT 'goal',
            yellow_min REAL,
            green_min REAL,
            red_min REAL,
            updated_at TEXT,
            PRIMARY KEY (user_id, nutrient)
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS user_recipes (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            recipe_name TEXT NOT NULL,
            servings REAL DEFAULT 1,
            nutrition_data TEXT,
            per_serving_nutrition TEXT,
            ingredients TEXT,
            instructions TEXT,
            created_at TEXT,
            updated_at TEXT
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS agent_executions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            session_id TEXT,
            intent TEXT,
            agents_involved TEXT,
            execution_time_ms INTEGER,
            status TEXT,
            response_type TEXT,
            message TEXT,
            timezone TEXT,
            created_at TEXT
        )
        """)

        conn.commit()
        conn.close()

    # -------------------------------------------------
    # Goals
    # -------------------------------------------------

    @in_thread
    def get_user_goals(self, user_id: str) -> list[dict]:
        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM user_goals WHERE user_id = ? ORDER BY nutrient", (user_id,))
        rows = [dict(row) for row in cur.fetchall()]
        conn.close()
        return rows

    @in_thread
    def update_user_goal(
        self,
        user_id: str,
        nutrient: str,
        target_value: float,
        unit: str,
        goal_type: str = "goal",
        thresholds: Optional[dict] = None,
    ) -> dict:
        thresholds = thresholds or {}
        row = {
            "user_id": user_id,
            "nutrient": nutrient,
            "target_value": target_value,
            "unit": unit,
            "goal_type": goal_type or "goal",
            "yellow_min": thresholds.get("yellow_min"),
            "green_min": thresholds.get("green_min"),
            "red_min": thresholds.get("red_min"),
            "updated_at": now_iso(),
        }

        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("""
        INSERT INTO user_goals
        (user_id, nutrient, target_value, unit, goal_type, yellow_min, green_min, red_min, updated_at)
        VALUES (:user_id, :nutrient, :target_value, :unit, :goal_type, :yellow_min, :green_min, :red_min, :updated_at)
        ON CONFLICT(user_id, nutrient) DO UPDATE SET
            target_value = excluded.target_value,
            unit = excluded.unit,
            goal_type = excluded.goal_type,
            yellow_min = excluded.yellow_min,
            green_min = excluded.green_min,
            red_min = excluded.red_min,
            updated_at = excluded.updated_at
        """, row)
        conn.commit()
        conn.close()
        return row

    # -------------------------------------------------
    # Food log
    # -------------------------------------------------

    @in_thread
    def log_food_items(self, user_id: str, items: list[dict]) -> list[dict]:
        conn = self.get_conn()
        cur = conn.cursor()
        logged = []

        for item in items:
            row = {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "food_name": item.get("food_name") or "Unknown food",
                "portion": item.get("portion"),
                "calories": item.get("calories"),
                "log_time": item.get("log_time") or now_iso(),
                "recipe_id": item.get("recipe_id"),
                "extras": json.dumps(item["extras"]) if item.get("extras") else None,
            }
            for col in FOOD_LOG_COLUMNS:
                if col in item:
                    row[col] = item[col]

            columns = ", ".join(row)
            placeholders = ", ".join(f":{col}" for col in row)
            cur.execute(f"INSERT INTO food_log ({columns}) VALUES ({placeholders})", row)
            logged.append(row)

        conn.commit()
        conn.close()
        return logged

    @in_thread
    def get_food_log(self, user_id: str) -> list[dict]:
        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM food_log WHERE user_id = ? ORDER BY log_time", (user_id,))
        rows = []
        for row in cur.fetchall():
            entry = {k: v for k, v in dict(row).items() if v is not None}
            if entry.get("extras"):
                entry["extras"] = json.loads(entry["extras"])
            rows.append(entry)
        conn.close()
        return rows

    # -------------------------------------------------
    # Recipes
    # -------------------------------------------------

    @in_thread
    def list_recipes(self, user_id: str) -> list[dict]:
        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM user_recipes WHERE user_id = ? ORDER BY created_at", (user_id,))
        rows = [_recipe_from_row(row) for row in cur.fetchall()]
        conn.close()
        return rows

    @in_thread
    def get_recipe(self, user_id: str, recipe_id: str) -> Optional[dict]:
        return self._select_recipe(user_id, recipe_id)

    def _select_recipe(self, user_id: str, recipe_id: str) -> Optional[dict]:
        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM user_recipes WHERE user_id = ? AND id = ?", (user_id, recipe_id))
        row = cur.fetchone()
        conn.close()
        return _recipe_from_row(row) if row else None

    @in_thread
    def save_recipe(self, user_id: str, recipe: dict) -> dict:
        now = now_iso()
        saved = {
            "id": recipe.get("id") or str(uuid.uuid4()),
            "recipe_name": recipe["recipe_name"],
            "servings": recipe.get("servings") or 1,
            "nutrition_data": recipe.get("nutrition_data") or {},
            "per_serving_nutrition": recipe.get("per_serving_nutrition") or {},
            "ingredients": recipe.get("ingredients") or [],
            "instructions": recipe.get("instructions") or "",
            "created_at": now,
        }

        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("""
        INSERT INTO user_recipes
        (id, user_id, recipe_name, servings, nutrition_data, per_serving_nutrition,
         ingredients, instructions, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            saved["id"],
            user_id,
            saved["recipe_name"],
            saved["servings"],
            json.dumps(saved["nutrition_data"]),
            json.dumps(saved["per_serving_nutrition"]),
            json.dumps(saved["ingredients"]),
            saved["instructions"],
            now,
            now,
        ))
        conn.commit()
        conn.close()
        return saved

    @in_thread
    def update_recipe(self, user_id: str, recipe_id: str, fields: dict) -> Optional[dict]:
        allowed = ["recipe_name", "servings", "nutrition_data", "per_serving_nutrition", "ingredients", "instructions"]
        updates = {}
        for key in allowed:
            if key in fields:
                value = fields[key]
                updates[key] = json.dumps(value) if isinstance(value, (dict, list)) else value
        if not updates:
            return self._select_recipe(user_id, recipe_id)

        updates["updated_at"] = now_iso()
        assignments = ", ".join(f"{key} = ?" for key in updates)

        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute(
            f"UPDATE user_recipes SET {assignments} WHERE user_id = ? AND id = ?",
            (*updates.values(), user_id, recipe_id),
        )
        conn.commit()
        conn.close()
        return self._select_recipe(user_id, recipe_id)

    # -------------------------------------------------
    # Execution log
    # -------------------------------------------------

    @in_thread
    def log_execution(
        self,
        user_id: str,
        session_id: str,
        intent: str,
        agents_involved: list[str],
        start_time: float,
        response: dict,
        message: str,
        timezone: str = "UTC",
    ) -> None:
        elapsed_ms = int((time.time() - start_time) * 1000)

        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("""
        INSERT INTO agent_executions
        (user_id, session_id, intent, agents_involved, execution_time_ms, status,
         response_type, message, timezone, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            user_id,
            session_id,
            intent,
            json.dumps(agents_involved),
            elapsed_ms,
            response.get("status"),
            response.get("response_type"),
            message,
            timezone,
            now_iso(),
        ))
        conn.commit()
        conn.close()

    @in_thread
    def get_executions(self, user_id: str) -> list[dict]:
        conn = self.get_conn()
        cur = conn.cursor()
        cur.execute("SELECT * FROM agent_executions WHERE user_id = ? ORDER BY id", (user_id,))
        rows = [dict(row) for row in cur.fetchall()]
        conn.close()
        return rows


def _recipe_from_row(row: Any) -> dict:
    recipe = dict(row)
    for key, default in (("nutrition_data", {}), ("per_serving_nutrition", {}), ("ingredients", [])):
        raw = recipe.get(key)
        recipe[key] = json.loads(raw) if raw else default
    recipe.pop("user_id", None)
    return recipe
