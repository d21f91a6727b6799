"""File-backed session store: save/load sessions for resuming workflows.

Layout under ``<base>/.mloop/orchestration/``::

    sessions/<session-id>.json
    checkpoints/<session-id>/<checkpoint-id>.json     (write-once)
    decisions/<session-id>-decisions.json            (append-only list)
    artifacts/<session-id>/<name>.json
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, TypeVar

from auto_ml_orchestrator.context import HitlDecision, utcnow
from auto_ml_orchestrator.errors import SchemaVersionError, SessionStoreError
from auto_ml_orchestrator.serde import from_jsonable, to_jsonable
from auto_ml_orchestrator.session import (
    CURRENT_SCHEMA_VERSION,
    OrchestrationSession,
    SessionCheckpoint,
    SessionSummary,
)
from auto_ml_orchestrator.state import is_terminal

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_DELAYS = (0.05, 0.1, 0.2)


def _migrate_v0(data: dict[str, Any]) -> dict[str, Any]:
    # v0 records predate the version field and kept history under "history"
    if "history" in data and "state_history" not in data:
        data["state_history"] = data.pop("history")
    data.setdefault("metadata", {})
    data.setdefault("checkpoints", [])
    data["schema_version"] = 1
    return data


_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    0: _migrate_v0,
}


def migrate(data: dict[str, Any], path: str = "<memory>") -> dict[str, Any]:
    """Upgrade a raw session record to the current schema version.

    Raises
    ------
    SchemaVersionError
        If the record was written by a newer schema than this build knows.
    """
    version = int(data.get("schema_version", 0))
    if version > CURRENT_SCHEMA_VERSION:
        raise SchemaVersionError(path, version, CURRENT_SCHEMA_VERSION)
    while version < CURRENT_SCHEMA_VERSION:
        data = _MIGRATIONS[version](data)
        logger.debug("Migrated %s from schema v%d to v%d", path, version, version + 1)
        version += 1
    return data


class SessionStore:
    """JSON-file persistence for :class:`OrchestrationSession` records."""

    def __init__(self, base_dir: str | os.PathLike = ".", retry_delays=RETRY_DELAYS):
        self.root = Path(base_dir) / ".mloop" / "orchestration"
        self.sessions_dir = self.root / "sessions"
        self.checkpoints_dir = self.root / "checkpoints"
        self.decisions_dir = self.root / "decisions"
        self.artifacts_dir = self.root / "artifacts"
        self.retry_delays = tuple(retry_delays)

    # ── Low-level I/O ──────────────────────────────────────────────

    def _with_retry(self, description: str, fn: Callable[[], T]) -> T:
        attempts = len(self.retry_delays) + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except OSError as e:
                if attempt == attempts:
                    raise SessionStoreError(
                        f"{description} failed after {attempts} attempts: {e}"
                    ) from e
                delay = self.retry_delays[attempt - 1]
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    description, attempt, attempts, e, delay,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    def _write_json(self, path: Path, payload: Any, exclusive: bool = False) -> None:
        text = json.dumps(payload, indent=2)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            if exclusive:
                with open(path, "x", encoding="utf-8") as f:
                    f.write(text)
                return
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

        self._with_retry(f"Writing {path}", write)

    def _read_json(self, path: Path) -> Any | None:
        def read() -> str | None:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

        text = self._with_retry(f"Reading {path}", read)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Session record is corrupted: {path}. "
                f"JSON parse error: {e}. "
                f"Delete the file or fix the JSON manually."
            ) from e

    # ── Sessions ───────────────────────────────────────────────────

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def save(self, session: OrchestrationSession) -> str:
        """Atomically overwrite the session record. Returns its path."""
        path = self.session_path(session.session_id)
        self._write_json(path, session.to_dict())
        logger.debug(
            "Saved session %s (%s, %s)",
            session.session_id, session.context.current_state.value, session.status.value,
        )
        return str(path)

    def load(self, session_id: str) -> OrchestrationSession | None:
        path = self.session_path(session_id)
        data = self._read_json(path)
        if data is None:
            return None
        data = migrate(data, str(path))
        try:
            return OrchestrationSession.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Session record is corrupted: {path}. {e}") from e

    def exists(self, session_id: str) -> bool:
        return self.session_path(session_id).exists()

    def list(self) -> list[SessionSummary]:
        """Summaries of every readable session, most recently updated first."""
        if not self.sessions_dir.exists():
            return []
        summaries = []
        for path in self.sessions_dir.glob("*.json"):
            try:
                session = self.load(path.stem)
            except (ValueError, SessionStoreError) as e:
                logger.warning("Skipping unreadable session %s: %s", path.name, e)
                continue
            if session is not None:
                summaries.append(session.summary())
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    def list_resumable(self) -> list[SessionSummary]:
        return [s for s in self.list() if s.can_resume]

    def delete(self, session_id: str) -> bool:
        """Remove a session and everything stored alongside it."""
        path = self.session_path(session_id)
        if not path.exists():
            return False
        self._with_retry(f"Deleting {path}", path.unlink)
        for directory in (
            self.checkpoints_dir / session_id,
            self.artifacts_dir / session_id,
        ):
            if directory.exists():
                shutil.rmtree(directory)
        decisions = self._decisions_path(session_id)
        if decisions.exists():
            decisions.unlink()
        logger.info("Deleted session %s", session_id)
        return True

    def cleanup(self, max_age_days: int = 30) -> list[str]:
        """Delete terminal sessions not updated within *max_age_days*."""
        cutoff = utcnow() - timedelta(days=max_age_days)
        removed = []
        for summary in self.list():
            if is_terminal(summary.state) and summary.updated_at < cutoff:
                self.delete(summary.session_id)
                removed.append(summary.session_id)
        if removed:
            logger.info("Cleaned up %d session(s) older than %d days", len(removed), max_age_days)
        return removed

    # ── Checkpoints ────────────────────────────────────────────────

    def save_checkpoint(self, session_id: str, checkpoint: SessionCheckpoint) -> str:
        path = self.checkpoints_dir / session_id / f"{checkpoint.checkpoint_id}.json"
        if path.exists():
            raise SessionStoreError(f"Checkpoint already written: {path}")
        self._write_json(path, to_jsonable(checkpoint), exclusive=True)
        return str(path)

    def load_checkpoints(self, session_id: str) -> list[SessionCheckpoint]:
        directory = self.checkpoints_dir / session_id
        if not directory.exists():
            return []
        checkpoints = []
        for path in sorted(directory.glob("*.json")):
            data = self._read_json(path)
            if data is not None:
                checkpoints.append(from_jsonable(SessionCheckpoint, data))
        checkpoints.sort(key=lambda c: c.timestamp)
        return checkpoints

    # ── Decisions ──────────────────────────────────────────────────

    def _decisions_path(self, session_id: str) -> Path:
        return self.decisions_dir / f"{session_id}-decisions.json"

    def append_decision(self, session_id: str, decision: HitlDecision) -> None:
        path = self._decisions_path(session_id)
        records = self._read_json(path) or []
        records.append(to_jsonable(decision))
        self._write_json(path, records)

    def load_decisions(self, session_id: str) -> list[HitlDecision]:
        records = self._read_json(self._decisions_path(session_id)) or []
        return [from_jsonable(HitlDecision, r) for r in records]

    # ── Artifacts ──────────────────────────────────────────────────

    def save_artifact(self, session_id: str, name: str, payload: Any) -> str:
        path = self.artifacts_dir / session_id / f"{name}.json"
        self._write_json(path, to_jsonable(payload))
        return str(path)

    def load_artifact(self, session_id: str, name: str) -> Any | None:
        return self._read_json(self.artifacts_dir / session_id / f"{name}.json")
