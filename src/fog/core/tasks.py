"""Task and task-event persistence."""

import json
import sqlite3
from datetime import datetime

from fog.db.models import TERMINAL_STATES, Task, TaskEvent, TaskOptions, can_transition, is_terminal, utcnow
from fog.errors import TaskStateError

STATE_CHANGED = "state_changed"


def save_task(db: sqlite3.Connection, task: Task) -> Task:
    """Insert or update a task row, enforcing the lifecycle rules."""
    existing = db.execute(
        "SELECT state, branch, worktree_path FROM tasks WHERE id = ?", (task.id,)
    ).fetchone()
    now = utcnow()

    if existing is None:
        task.created_at = task.created_at or now
        task.updated_at = now
        db.execute(
            """INSERT INTO tasks (id, repo_id, parent_task_id, state, prompt, ai_tool, model, branch,
                                  worktree_path, options_json, metadata_json, error,
                                  created_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id, task.repo_id, task.parent_task_id, task.state, task.prompt, task.ai_tool,
                task.model, task.branch, task.worktree_path, json.dumps(task.options.to_dict()),
                json.dumps(task.metadata), task.error, task.created_at.isoformat(),
                task.updated_at.isoformat(), _iso(task.completed_at),
            ),
        )
        _log_event(db, task.id, STATE_CHANGED, task.state, {"state": task.state})
        db.commit()
        return task

    old_state = existing["state"]
    if is_terminal(old_state):
        raise TaskStateError(f"task {task.id} is {old_state}; no further updates allowed")
    if task.state != old_state and not can_transition(old_state, task.state):
        raise TaskStateError(f"illegal transition {old_state} -> {task.state} for task {task.id}")
    if existing["branch"] != task.branch:
        raise TaskStateError(f"branch of task {task.id} cannot change")
    if existing["worktree_path"] and existing["worktree_path"] != task.worktree_path:
        raise TaskStateError(f"worktree path of task {task.id} is already assigned")

    task.updated_at = now
    db.execute(
        """UPDATE tasks SET state = ?, model = ?, worktree_path = ?, options_json = ?, metadata_json = ?,
                            error = ?, updated_at = ?, completed_at = ?
           WHERE id = ?""",
        (
            task.state, task.model, task.worktree_path, json.dumps(task.options.to_dict()),
            json.dumps(task.metadata), task.error, task.updated_at.isoformat(),
            _iso(task.completed_at), task.id,
        ),
    )
    if task.state != old_state:
        _log_event(db, task.id, STATE_CHANGED, f"{old_state} -> {task.state}", {"state": task.state})
    db.commit()
    return task


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(db: sqlite3.Connection, repo_id: int | None = None, limit: int | None = None) -> list[Task]:
    """List tasks, newest first."""
    query = "SELECT * FROM tasks"
    params: list = []
    if repo_id is not None:
        query += " WHERE repo_id = ?"
        params.append(repo_id)
    query += " ORDER BY created_at DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def list_active_tasks(db: sqlite3.Connection) -> list[Task]:
    placeholders = ", ".join("?" for _ in TERMINAL_STATES)
    rows = db.execute(
        f"SELECT * FROM tasks WHERE state NOT IN ({placeholders}) ORDER BY created_at DESC",
        sorted(TERMINAL_STATES),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    cur = db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return cur.rowcount > 0


def find_latest_thread_task(db: sqlite3.Connection, channel_id: str, root_ts: str) -> Task | None:
    """Latest task started from a Slack thread, keyed by (channel, root ts)."""
    row = db.execute(
        """SELECT * FROM tasks
           WHERE json_extract(metadata_json, '$.slack_channel_id') = ?
             AND json_extract(metadata_json, '$.slack_root_ts') = ?
           ORDER BY created_at DESC LIMIT 1""",
        (channel_id, root_ts),
    ).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def append_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    message: str = "",
    data: dict | None = None,
) -> TaskEvent:
    event = _log_event(db, task_id, event_type, message, data)
    db.commit()
    return event


def list_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Events for a task in the order they were appended."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY ts ASC, id ASC", (task_id,)
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            type=r["type"],
            message=r["message"] or "",
            data=json.loads(r["data_json"]) if r["data_json"] else None,
            ts=_parse_dt(r["ts"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    message: str = "",
    data: dict | None = None,
) -> TaskEvent:
    ts = utcnow()
    cur = db.execute(
        "INSERT INTO task_events (task_id, ts, type, message, data_json) VALUES (?, ?, ?, ?, ?)",
        (task_id, ts.isoformat(), event_type, message, json.dumps(data) if data is not None else None),
    )
    return TaskEvent(task_id=task_id, type=event_type, message=message, data=data, id=cur.lastrowid, ts=ts)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        repo_id=row["repo_id"],
        parent_task_id=row["parent_task_id"],
        state=row["state"],
        prompt=row["prompt"],
        ai_tool=row["ai_tool"],
        model=row["model"],
        branch=row["branch"],
        worktree_path=row["worktree_path"],
        options=TaskOptions.from_dict(json.loads(row["options_json"] or "{}")),
        metadata=json.loads(row["metadata_json"] or "{}"),
        error=row["error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
