import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, Optional, Sequence
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from engines.validation import NotFoundError, ValidationError, validate_percentage
from schemas import ITEM_TYPES, parse_question

logger = logging.getLogger(__name__)

_ITEM_REFERENCE_COLUMNS = {
    "content": "content_id",
    "assessment": "assessment_id",
    "info": "body",
}

_SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
  id          TEXT PRIMARY KEY,
  email       TEXT UNIQUE,
  is_member   INTEGER NOT NULL DEFAULT 0,
  created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS flows (
  id                 TEXT PRIMARY KEY,
  name               TEXT NOT NULL,
  description        TEXT,
  promote_to_member  INTEGER NOT NULL DEFAULT 0,
  is_active          INTEGER NOT NULL DEFAULT 1,
  created_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS stages (
  id          TEXT PRIMARY KEY,
  flow_id     TEXT NOT NULL,
  title       TEXT NOT NULL,
  position    INTEGER NOT NULL,
  created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  UNIQUE(flow_id, position),
  FOREIGN KEY(flow_id) REFERENCES flows(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS assessments (
  id             TEXT PRIMARY KEY,
  name           TEXT NOT NULL,
  description    TEXT,
  passing_score  REAL NOT NULL DEFAULT 70 CHECK (passing_score BETWEEN 0 AND 100),
  retry_limit    INTEGER NOT NULL DEFAULT 3 CHECK (retry_limit >= 0),
  is_published   INTEGER NOT NULL DEFAULT 1,
  created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS stage_items (
  id             TEXT PRIMARY KEY,
  stage_id       TEXT NOT NULL,
  type           TEXT NOT NULL CHECK (type IN ('content', 'assessment', 'info')),
  title          TEXT NOT NULL DEFAULT '',
  position       INTEGER NOT NULL,
  content_id     TEXT,
  assessment_id  TEXT,
  body           TEXT,
  created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  UNIQUE(stage_id, position),
  CHECK (
    (type = 'content' AND content_id IS NOT NULL AND assessment_id IS NULL AND body IS NULL) OR
    (type = 'assessment' AND assessment_id IS NOT NULL AND content_id IS NULL AND body IS NULL) OR
    (type = 'info' AND body IS NOT NULL AND content_id IS NULL AND assessment_id IS NULL)
  ),
  FOREIGN KEY(stage_id) REFERENCES stages(id) ON DELETE CASCADE,
  FOREIGN KEY(assessment_id) REFERENCES assessments(id)
);

CREATE INDEX IF NOT EXISTS idx_stage_items_stage ON stage_items(stage_id, position);

CREATE TABLE IF NOT EXISTS enrollments (
  id            TEXT PRIMARY KEY,
  user_id       TEXT NOT NULL,
  flow_id       TEXT NOT NULL,
  status        TEXT NOT NULL DEFAULT 'active',
  started_at    TEXT NOT NULL,
  completed_at  TEXT,
  UNIQUE(user_id, flow_id),
  FOREIGN KEY(flow_id) REFERENCES flows(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS stage_progress (
  id             TEXT PRIMARY KEY,
  user_id        TEXT NOT NULL,
  enrollment_id  TEXT NOT NULL,
  stage_id       TEXT NOT NULL,
  started_at     TEXT,
  completed_at   TEXT,
  created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  UNIQUE(user_id, stage_id, enrollment_id),
  FOREIGN KEY(enrollment_id) REFERENCES enrollments(id) ON DELETE CASCADE,
  FOREIGN KEY(stage_id) REFERENCES stages(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS stage_item_progress (
  id             TEXT PRIMARY KEY,
  user_id        TEXT NOT NULL,
  enrollment_id  TEXT NOT NULL,
  stage_item_id  TEXT NOT NULL,
  score          REAL CHECK (score IS NULL OR score BETWEEN 0 AND 100),
  completed_at   TEXT NOT NULL,
  metadata       TEXT,
  created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  UNIQUE(user_id, stage_item_id, enrollment_id),
  FOREIGN KEY(enrollment_id) REFERENCES enrollments(id) ON DELETE CASCADE,
  FOREIGN KEY(stage_item_id) REFERENCES stage_items(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_item_progress_enrollment
  ON stage_item_progress(enrollment_id, user_id);

CREATE TABLE IF NOT EXISTS questions (
  id              TEXT PRIMARY KEY,
  assessment_id   TEXT NOT NULL,
  type            TEXT NOT NULL,
  question        TEXT NOT NULL,
  options         TEXT NOT NULL DEFAULT '[]',
  correct_answer  TEXT,
  explanation     TEXT,
  points          REAL NOT NULL DEFAULT 1 CHECK (points >= 0),
  position        INTEGER NOT NULL DEFAULT 0,
  created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY(assessment_id) REFERENCES assessments(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_questions_assessment ON questions(assessment_id, position);

CREATE TABLE IF NOT EXISTS assessment_attempts (
  id                  TEXT PRIMARY KEY,
  assessment_id       TEXT NOT NULL,
  user_id             TEXT NOT NULL,
  enrollment_id       TEXT,
  answers             TEXT NOT NULL DEFAULT '{}',
  awarded             TEXT NOT NULL DEFAULT '{}',
  overrides           TEXT NOT NULL DEFAULT '{}',
  time_spent_seconds  INTEGER NOT NULL DEFAULT 0,
  score               REAL,
  max_score           REAL,
  is_passed           INTEGER NOT NULL DEFAULT 0,
  started_at          TEXT NOT NULL,
  completed_at        TEXT,
  created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY(assessment_id) REFERENCES assessments(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_attempts_user ON assessment_attempts(user_id, assessment_id);
"""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid4())


def _decode_json_field(value: Optional[str], field: str = "value") -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError) as e:
        logger.warning("Stored %s is not valid JSON (%s): %.80r", field, e, value)
        return None


def _row_to_dict(row: sqlite3.Row, *, json_fields: Sequence[str] = (), bool_fields: Sequence[str] = ()) -> Dict[str, Any]:
    record = dict(row)
    for field in json_fields:
        if field in record:
            record[field] = _decode_json_field(record[field], field)
    for field in bool_fields:
        if field in record:
            record[field] = bool(record[field])
    return record


class RecordStore:
    """Persistence for flows, enrollments, progress rows and assessment attempts.

    Every method accepts an optional ``con``; when given, the statement runs on
    that connection without committing so that callers can group writes with
    :meth:`transaction`.
    """

    def __init__(self, path: str, max_connections: int = 10, pool: Optional[SQLiteConnectionPool] = None):
        self.path = str(path)
        self._pool = pool or SQLiteConnectionPool(self.path, max_connections=max_connections)

    # ----- plumbing ----------------------------------------------------
    def init(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._pool.get_connection() as con:
            if self.path != ":memory:":
                con.execute("PRAGMA journal_mode=WAL")
            con.executescript(_SCHEMA)
            con.commit()
        logger.info("Record store ready at %s", self.path)

    def close(self) -> None:
        self._pool.close_all()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._pool.transaction() as con:
            yield con

    def _exec(self, sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None) -> int:
        if con is not None:
            return con.execute(sql, tuple(params)).rowcount
        with self._pool.get_connection() as pooled:
            cur = pooled.execute(sql, tuple(params))
            pooled.commit()
            return cur.rowcount

    def _query(self, sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
        if con is not None:
            return con.execute(sql, tuple(params)).fetchall()
        with self._pool.get_connection() as pooled:
            return pooled.execute(sql, tuple(params)).fetchall()

    def _one(self, sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None) -> Optional[sqlite3.Row]:
        rows = self._query(sql, params, con)
        return rows[0] if rows else None

    # ----- authoring ---------------------------------------------------
    def create_user(self, user_id: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        user_id = user_id or _new_id()
        self._exec("INSERT OR IGNORE INTO users (id, email) VALUES (?, ?)", (user_id, email))
        return self.get_user(user_id)  # type: ignore[return-value]

    def get_user(self, user_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM users WHERE id = ?", (user_id,), con)
        return _row_to_dict(row, bool_fields=("is_member",)) if row else None

    def create_flow(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        promote_to_member: bool = False,
        flow_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValidationError("flow name is required")
        flow_id = flow_id or _new_id()
        self._exec(
            "INSERT INTO flows (id, name, description, promote_to_member) VALUES (?, ?, ?, ?)",
            (flow_id, name.strip(), description, int(bool(promote_to_member))),
        )
        return self.get_flow(flow_id)  # type: ignore[return-value]

    def get_flow(self, flow_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM flows WHERE id = ?", (flow_id,), con)
        return _row_to_dict(row, bool_fields=("promote_to_member", "is_active")) if row else None

    def create_stage(self, flow_id: str, title: str, position: int, *, stage_id: Optional[str] = None) -> Dict[str, Any]:
        if self.get_flow(flow_id) is None:
            raise NotFoundError(f"flow {flow_id} not found")
        if position < 0:
            raise ValidationError("position must be greater than or equal to zero")
        stage_id = stage_id or _new_id()
        try:
            self._exec(
                "INSERT INTO stages (id, flow_id, title, position) VALUES (?, ?, ?, ?)",
                (stage_id, flow_id, title, int(position)),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"stage position {position} already used in flow {flow_id}") from exc
        return self.get_stage(stage_id)  # type: ignore[return-value]

    def get_stage(self, stage_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM stages WHERE id = ?", (stage_id,), con)
        return dict(row) if row else None

    def list_stages(self, flow_id: str, con: Optional[sqlite3.Connection] = None) -> list[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM stages WHERE flow_id = ? ORDER BY position ASC", (flow_id,), con
        )
        return [dict(row) for row in rows]

    def create_stage_item(
        self,
        stage_id: str,
        item_type: str,
        position: int,
        *,
        title: str = "",
        content_id: Optional[str] = None,
        assessment_id: Optional[str] = None,
        body: Optional[str] = None,
        item_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if item_type not in ITEM_TYPES:
            raise ValidationError(f"invalid stage item type {item_type!r}")
        references = {"content_id": content_id, "assessment_id": assessment_id, "body": body}
        populated = {name for name, value in references.items() if value is not None}
        expected = _ITEM_REFERENCE_COLUMNS[item_type]
        if populated != {expected}:
            raise ValidationError(f"{item_type} items must set exactly {expected}")
        if self.get_stage(stage_id) is None:
            raise NotFoundError(f"stage {stage_id} not found")
        if assessment_id is not None and self.get_assessment(assessment_id) is None:
            raise NotFoundError(f"assessment {assessment_id} not found")
        item_id = item_id or _new_id()
        try:
            self._exec(
                """
                INSERT INTO stage_items (id, stage_id, type, title, position, content_id, assessment_id, body)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (item_id, stage_id, item_type, title, int(position), content_id, assessment_id, body),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"item position {position} already used in stage {stage_id}") from exc
        return self.get_stage_item(item_id)  # type: ignore[return-value]

    def get_stage_item(self, item_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM stage_items WHERE id = ?", (item_id,), con)
        return dict(row) if row else None

    def list_stage_items(self, stage_id: str, con: Optional[sqlite3.Connection] = None) -> list[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM stage_items WHERE stage_id = ? ORDER BY position ASC", (stage_id,), con
        )
        return [dict(row) for row in rows]

    def create_assessment(
        self,
        name: str,
        *,
        passing_score: float = 70,
        retry_limit: int = 3,
        is_published: bool = True,
        description: Optional[str] = None,
        assessment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        passing = validate_percentage(passing_score, "passing_score")
        if passing is None:
            raise ValidationError("passing_score is required")
        if retry_limit < 0:
            raise ValidationError("retry_limit must be greater than or equal to zero")
        assessment_id = assessment_id or _new_id()
        self._exec(
            """
            INSERT INTO assessments (id, name, description, passing_score, retry_limit, is_published)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (assessment_id, name, description, passing, int(retry_limit), int(bool(is_published))),
        )
        return self.get_assessment(assessment_id)  # type: ignore[return-value]

    def get_assessment(
        self,
        assessment_id: str,
        *,
        include_questions: bool = False,
        con: Optional[sqlite3.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM assessments WHERE id = ?", (assessment_id,), con)
        if row is None:
            return None
        assessment = _row_to_dict(row, bool_fields=("is_published",))
        if include_questions:
            assessment["questions"] = self.list_questions(assessment_id, con=con)
        return assessment

    def create_question(
        self,
        assessment_id: str,
        question_type: str,
        question: str,
        *,
        correct_answer: Any = None,
        options: Sequence[str] = (),
        points: float = 1,
        position: Optional[int] = None,
        explanation: Optional[str] = None,
        question_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.get_assessment(assessment_id) is None:
            raise NotFoundError(f"assessment {assessment_id} not found")
        if position is None:
            row = self._one(
                "SELECT COUNT(*) AS n FROM questions WHERE assessment_id = ?", (assessment_id,)
            )
            position = int(row["n"]) if row else 0
        record = {
            "id": question_id or _new_id(),
            "assessment_id": assessment_id,
            "type": question_type,
            "question": question,
            "options": list(options),
            "correct_answer": correct_answer,
            "explanation": explanation,
            "points": points,
            "position": position,
        }
        parsed = parse_question(record)
        self._exec(
            """
            INSERT INTO questions (id, assessment_id, type, question, options, correct_answer, explanation, points, position)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                parsed.id,
                assessment_id,
                parsed.type,
                parsed.question,
                json.dumps(parsed.options),
                json.dumps(parsed.correct_answer),
                parsed.explanation,
                float(parsed.points),
                int(parsed.position),
            ),
        )
        return parsed.model_dump()

    def list_questions(self, assessment_id: str, con: Optional[sqlite3.Connection] = None) -> list[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM questions WHERE assessment_id = ? ORDER BY position ASC, created_at ASC",
            (assessment_id,),
            con,
        )
        return [_row_to_dict(row, json_fields=("options", "correct_answer")) for row in rows]

    # ----- enrollments -------------------------------------------------
    def create_enrollment(self, user_id: str, flow_id: str, *, started_at: Optional[str] = None) -> Dict[str, Any]:
        """Enroll ``user_id`` in ``flow_id``; an existing enrollment is returned as is."""
        if self.get_flow(flow_id) is None:
            raise NotFoundError(f"flow {flow_id} not found")
        self.create_user(user_id)
        self._exec(
            """
            INSERT INTO enrollments (id, user_id, flow_id, status, started_at)
            VALUES (?, ?, ?, 'active', ?)
            ON CONFLICT(user_id, flow_id) DO NOTHING
            """,
            (_new_id(), user_id, flow_id, started_at or utcnow()),
        )
        row = self._one(
            "SELECT * FROM enrollments WHERE user_id = ? AND flow_id = ?", (user_id, flow_id)
        )
        return dict(row)  # type: ignore[arg-type]

    def get_enrollment(self, enrollment_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM enrollments WHERE id = ?", (enrollment_id,), con)
        return dict(row) if row else None

    def list_enrollments(self, user_id: str) -> list[Dict[str, Any]]:
        rows = self._query(
            """
            SELECT e.*, f.name AS flow_name, f.description AS flow_description
            FROM enrollments e
            JOIN flows f ON f.id = e.flow_id
            WHERE e.user_id = ?
            ORDER BY e.started_at DESC
            """,
            (user_id,),
        )
        return [dict(row) for row in rows]

    def list_flow_enrollments(self, flow_id: str) -> list[Dict[str, Any]]:
        rows = self._query("SELECT * FROM enrollments WHERE flow_id = ?", (flow_id,))
        return [dict(row) for row in rows]

    def mark_enrollment_completed(self, enrollment_id: str, completed_at: str, con: Optional[sqlite3.Connection] = None) -> bool:
        """Set ``completed_at`` once; returns True only for the first transition."""
        changed = self._exec(
            """
            UPDATE enrollments SET completed_at = ?, status = 'completed'
            WHERE id = ? AND completed_at IS NULL
            """,
            (completed_at, enrollment_id),
            con,
        )
        return changed > 0

    def promote_user_to_member(self, user_id: str, con: Optional[sqlite3.Connection] = None) -> None:
        self._exec(
            "INSERT INTO users (id, is_member) VALUES (?, 1) ON CONFLICT(id) DO UPDATE SET is_member = 1",
            (user_id,),
            con,
        )

    # ----- stage progress ----------------------------------------------
    def upsert_stage_started(
        self,
        user_id: str,
        enrollment_id: str,
        stage_id: str,
        started_at: str,
        con: Optional[sqlite3.Connection] = None,
    ) -> Dict[str, Any]:
        self._exec(
            """
            INSERT INTO stage_progress (id, user_id, enrollment_id, stage_id, started_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, stage_id, enrollment_id) DO UPDATE SET
              started_at = COALESCE(stage_progress.started_at, excluded.started_at)
            """,
            (_new_id(), user_id, enrollment_id, stage_id, started_at),
            con,
        )
        return self.get_stage_progress(user_id, enrollment_id, stage_id, con=con)  # type: ignore[return-value]

    def get_stage_progress(
        self,
        user_id: str,
        enrollment_id: str,
        stage_id: str,
        con: Optional[sqlite3.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        row = self._one(
            """
            SELECT * FROM stage_progress
            WHERE user_id = ? AND enrollment_id = ? AND stage_id = ?
            """,
            (user_id, enrollment_id, stage_id),
            con,
        )
        return dict(row) if row else None

    def mark_stage_completed(
        self,
        user_id: str,
        enrollment_id: str,
        stage_id: str,
        completed_at: str,
        con: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Set ``completed_at`` once; returns True only for the first transition."""
        changed = self._exec(
            """
            UPDATE stage_progress SET completed_at = ?
            WHERE user_id = ? AND enrollment_id = ? AND stage_id = ? AND completed_at IS NULL
            """,
            (completed_at, user_id, enrollment_id, stage_id),
            con,
        )
        return changed > 0

    def list_stage_progress(self, user_id: str, enrollment_id: str, con: Optional[sqlite3.Connection] = None) -> Dict[str, Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM stage_progress WHERE user_id = ? AND enrollment_id = ?",
            (user_id, enrollment_id),
            con,
        )
        return {row["stage_id"]: dict(row) for row in rows}

    # ----- item progress -----------------------------------------------
    def upsert_item_completed(
        self,
        user_id: str,
        enrollment_id: str,
        item_id: str,
        completed_at: str,
        *,
        score: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        con: Optional[sqlite3.Connection] = None,
    ) -> Dict[str, Any]:
        """Record completion; an existing ``completed_at`` is never moved."""
        self._exec(
            """
            INSERT INTO stage_item_progress (id, user_id, enrollment_id, stage_item_id, score, completed_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, stage_item_id, enrollment_id) DO UPDATE SET
              completed_at = COALESCE(stage_item_progress.completed_at, excluded.completed_at),
              score = COALESCE(excluded.score, stage_item_progress.score),
              metadata = COALESCE(excluded.metadata, stage_item_progress.metadata)
            """,
            (
                _new_id(),
                user_id,
                enrollment_id,
                item_id,
                score,
                completed_at,
                json.dumps(metadata) if metadata is not None else None,
            ),
            con,
        )
        return self.get_item_progress(user_id, enrollment_id, item_id, con=con)  # type: ignore[return-value]

    def get_item_progress(
        self,
        user_id: str,
        enrollment_id: str,
        item_id: str,
        con: Optional[sqlite3.Connection] = None,
    ) -> Optional[Dict[str, Any]]:
        row = self._one(
            """
            SELECT * FROM stage_item_progress
            WHERE user_id = ? AND enrollment_id = ? AND stage_item_id = ?
            """,
            (user_id, enrollment_id, item_id),
            con,
        )
        return _row_to_dict(row, json_fields=("metadata",)) if row else None

    def list_item_progress(self, user_id: str, enrollment_id: str, con: Optional[sqlite3.Connection] = None) -> Dict[str, Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM stage_item_progress WHERE user_id = ? AND enrollment_id = ?",
            (user_id, enrollment_id),
            con,
        )
        return {
            row["stage_item_id"]: _row_to_dict(row, json_fields=("metadata",)) for row in rows
        }

    # ----- assessment attempts -----------------------------------------
    def insert_attempt(
        self,
        assessment_id: str,
        user_id: str,
        started_at: str,
        enrollment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        attempt_id = _new_id()
        self._exec(
            """
            INSERT INTO assessment_attempts (id, assessment_id, user_id, enrollment_id, answers, started_at)
            VALUES (?, ?, ?, ?, '{}', ?)
            """,
            (attempt_id, assessment_id, user_id, enrollment_id, started_at),
        )
        return self.get_attempt(attempt_id)  # type: ignore[return-value]

    def get_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        row = self._one("SELECT * FROM assessment_attempts WHERE id = ?", (attempt_id,))
        return self._attempt_from_row(row) if row else None

    def update_attempt_result(
        self,
        attempt_id: str,
        *,
        answers: Dict[str, Any],
        time_spent_seconds: int,
        score: float,
        max_score: float,
        is_passed: bool,
        awarded: Dict[str, float],
        overrides: Dict[str, float],
        completed_at: str,
    ) -> Dict[str, Any]:
        changed = self._exec(
            """
            UPDATE assessment_attempts SET
              answers = ?, time_spent_seconds = ?, score = ?, max_score = ?,
              is_passed = ?, awarded = ?, overrides = ?, completed_at = ?
            WHERE id = ?
            """,
            (
                json.dumps(answers),
                int(time_spent_seconds),
                float(score),
                float(max_score),
                int(bool(is_passed)),
                json.dumps(awarded),
                json.dumps(overrides),
                completed_at,
                attempt_id,
            ),
        )
        if not changed:
            raise NotFoundError(f"attempt {attempt_id} not found")
        return self.get_attempt(attempt_id)  # type: ignore[return-value]

    def list_attempts_for_user(self, user_id: str, assessment_id: Optional[str] = None) -> list[Dict[str, Any]]:
        sql = "SELECT * FROM assessment_attempts WHERE user_id = ?"
        params: list[Any] = [user_id]
        if assessment_id:
            sql += " AND assessment_id = ?"
            params.append(assessment_id)
        sql += " ORDER BY started_at DESC, created_at DESC"
        return [self._attempt_from_row(row) for row in self._query(sql, params)]

    def list_assessment_attempts(
        self,
        assessment_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        user_id: Optional[str] = None,
        passed: Optional[bool] = None,
    ) -> tuple[list[Dict[str, Any]], int]:
        where = ["assessment_id = ?"]
        params: list[Any] = [assessment_id]
        if user_id:
            where.append("user_id = ?")
            params.append(user_id)
        if passed is not None:
            where.append("is_passed = ?")
            params.append(int(passed))
        clause = " AND ".join(where)
        total_row = self._one(f"SELECT COUNT(*) AS n FROM assessment_attempts WHERE {clause}", params)
        rows = self._query(
            f"""
            SELECT * FROM assessment_attempts WHERE {clause}
            ORDER BY started_at DESC, created_at DESC
            LIMIT ? OFFSET ?
            """,
            [*params, int(limit), int(offset)],
        )
        total = int(total_row["n"]) if total_row else 0
        return [self._attempt_from_row(row) for row in rows], total

    def count_completed_attempts(self, assessment_id: str, user_id: str) -> int:
        row = self._one(
            """
            SELECT COUNT(*) AS n FROM assessment_attempts
            WHERE assessment_id = ? AND user_id = ? AND completed_at IS NOT NULL
            """,
            (assessment_id, user_id),
        )
        return int(row["n"]) if row else 0

    @staticmethod
    def _attempt_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        record = _row_to_dict(
            row,
            json_fields=("answers", "awarded", "overrides"),
            bool_fields=("is_passed",),
        )
        for field in ("answers", "awarded", "overrides"):
            if record.get(field) is None:
                record[field] = {}
        score, max_score = record.get("score"), record.get("max_score")
        if score is None or max_score is None:
            record["percentage"] = None
        else:
            record["percentage"] = round(score / max_score * 100, 2) if max_score > 0 else 0.0
        return record
