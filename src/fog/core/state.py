"""The state store: settings, encrypted secrets, repos, tasks and task events.

Each thread gets its own SQLite connection. Writers serialize on a single
lock held only around the database call; readers never take it.
"""

import sqlite3
import threading
from pathlib import Path

from fog.config import Config, get_config
from fog.core import crypto
from fog.core import repos as repos_mod
from fog.core import tasks as tasks_mod
from fog.db.engine import connect, init_db
from fog.db.models import Repo, Task, TaskEvent
from fog.errors import StoreError

GITHUB_TOKEN_KEY = "github_pat"
CLOUD_DEVICE_TOKEN_KEY = "cloud_device_token"


class Store:
    def __init__(self, db_path: Path, key_path: Path):
        self.db_path = db_path
        self.key_path = key_path
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._master_key: bytes | None = None

        try:
            conn = init_db(db_path)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"open state store {db_path}: {e}") from e
        self._register(conn)

    @classmethod
    def open(cls, config: Config | None = None) -> "Store":
        config = config or get_config()
        return cls(config.db_path, config.key_path)

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        with self._conns_lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
        self._local = threading.local()

    def release_thread(self):
        """Close the calling thread's connection; the next call on this thread reconnects."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._conns_lock:
            if conn in self._conns:
                self._conns.remove(conn)
        conn.close()

    # ── Connections ─────────────────────────────────────────────────────────

    def _register(self, conn: sqlite3.Connection):
        self._local.conn = conn
        with self._conns_lock:
            self._conns.append(conn)

    def _db(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = connect(self.db_path)
            except sqlite3.Error as e:
                raise StoreError(f"connect {self.db_path}: {e}") from e
            self._register(conn)
        return conn

    def _read(self, fn, *args):
        try:
            return fn(self._db(), *args)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def _write(self, fn, *args):
        with self._write_lock:
            conn = self._db()
            try:
                return fn(conn, *args)
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(str(e)) from e

    # ── Settings ────────────────────────────────────────────────────────────

    def get_setting(self, key: str) -> tuple[str, bool]:
        row = self._read(_select_one, "SELECT value FROM settings WHERE key = ?", (key,))
        if row is None:
            return "", False
        return row["value"], True

    def set_setting(self, key: str, value: str):
        self._write(
            _execute,
            """INSERT INTO settings (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = datetime('now')""",
            (key, value),
        )

    # ── Secrets ─────────────────────────────────────────────────────────────

    def _key(self) -> bytes:
        if self._master_key is None:
            try:
                self._master_key = crypto.load_or_create_master_key(self.key_path)
            except OSError as e:
                raise StoreError(f"master key {self.key_path}: {e}") from e
        return self._master_key

    def set_secret(self, key: str, value: str):
        blob = crypto.encrypt(self._key(), key, value)
        self._write(
            _execute,
            """INSERT INTO secrets (key, ciphertext) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET ciphertext = excluded.ciphertext, updated_at = datetime('now')""",
            (key, blob),
        )

    def get_secret(self, key: str) -> tuple[str, bool]:
        """Decrypt a secret. Raises DecryptError when the row fails authentication."""
        row = self._read(_select_one, "SELECT ciphertext FROM secrets WHERE key = ?", (key,))
        if row is None:
            return "", False
        return crypto.decrypt(self._key(), key, bytes(row["ciphertext"])), True

    def has_secret(self, key: str) -> bool:
        return self._read(_select_one, "SELECT 1 FROM secrets WHERE key = ?", (key,)) is not None

    def save_github_token(self, token: str):
        self.set_secret(GITHUB_TOKEN_KEY, token.strip())

    def get_github_token(self) -> tuple[str, bool]:
        return self.get_secret(GITHUB_TOKEN_KEY)

    def has_github_token(self) -> bool:
        return self.has_secret(GITHUB_TOKEN_KEY)

    # ── Repos ───────────────────────────────────────────────────────────────

    def upsert_repo(self, repo: Repo) -> Repo:
        return self._write(repos_mod.upsert_repo, repo)

    def get_repo_by_name(self, name: str) -> Repo | None:
        return self._read(repos_mod.get_repo_by_name, name)

    def get_repo(self, repo_id: int) -> Repo | None:
        return self._read(repos_mod.get_repo, repo_id)

    def list_repos(self) -> list[Repo]:
        return self._read(repos_mod.list_repos)

    # ── Tasks ───────────────────────────────────────────────────────────────

    def save_task(self, task: Task) -> Task:
        return self._write(tasks_mod.save_task, task)

    def get_task(self, task_id: str) -> Task | None:
        return self._read(tasks_mod.get_task, task_id)

    def list_tasks(self, repo_id: int | None = None, limit: int | None = None) -> list[Task]:
        return self._read(tasks_mod.list_tasks, repo_id, limit)

    def list_active_tasks(self) -> list[Task]:
        return self._read(tasks_mod.list_active_tasks)

    def delete_task(self, task_id: str) -> bool:
        return self._write(tasks_mod.delete_task, task_id)

    def find_latest_thread_task(self, channel_id: str, root_ts: str) -> Task | None:
        return self._read(tasks_mod.find_latest_thread_task, channel_id, root_ts)

    def append_event(self, task_id: str, event_type: str, message: str = "", data: dict | None = None) -> TaskEvent:
        return self._write(tasks_mod.append_event, task_id, event_type, message, data)

    def list_events(self, task_id: str) -> list[TaskEvent]:
        return self._read(tasks_mod.list_events, task_id)


def _select_one(db: sqlite3.Connection, sql: str, params: tuple):
    return db.execute(sql, params).fetchone()


def _execute(db: sqlite3.Connection, sql: str, params: tuple):
    db.execute(sql, params)
    db.commit()
