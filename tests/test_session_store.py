"""Tests for the file-backed session store."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest


def _session(data_path="data.csv"):
    from auto_ml_orchestrator.context import OrchestrationContext
    from auto_ml_orchestrator.session import OrchestrationSession

    return OrchestrationSession(context=OrchestrationContext(data_path=data_path))


class TestSaveLoad:

    def test_round_trip(self, tmp_path):
        """A loaded session equals the saved one field for field."""
        from auto_ml_orchestrator.context import AnalysisResult
        from auto_ml_orchestrator.session_store import SessionStore
        from auto_ml_orchestrator.state import WorkflowState

        store = SessionStore(tmp_path)
        session = _session()
        session.context.analysis = AnalysisResult(row_count=3, column_count=2, confidence=0.5)
        session.record_transition(WorkflowState.NOT_STARTED, WorkflowState.INITIALIZING)
        session.metadata["note"] = "x"
        path = store.save(session)

        assert path.endswith(f"{session.session_id}.json")
        loaded = store.load(session.session_id)
        assert loaded.to_dict() == session.to_dict()
        assert store.exists(session.session_id)

    def test_missing_session(self, tmp_path):
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        assert store.load("orc-20240101-000000") is None
        assert not store.delete("orc-20240101-000000")

    def test_layout(self, tmp_path):
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        session = _session()
        store.save(session)
        assert (tmp_path / ".mloop" / "orchestration" / "sessions" / f"{session.session_id}.json").exists()

    def test_corrupted_record(self, tmp_path):
        """A corrupted record raises ValueError naming the file, and list() skips it."""
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        store.save(_session())
        bad = store.sessions_dir / "orc-20240101-badbad.json"
        bad.write_text("{not valid json")

        with pytest.raises(ValueError, match="corrupted"):
            store.load("orc-20240101-badbad")
        assert len(store.list()) == 1

    def test_no_temp_files_left(self, tmp_path):
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        session = _session()
        for _ in range(3):
            store.save(session)
        assert [p.name for p in store.sessions_dir.iterdir()] == [f"{session.session_id}.json"]


class TestSchemaVersion:

    def test_v0_record_is_migrated(self, tmp_path):
        """Records without a version field load as v0 and gain the current fields."""
        from auto_ml_orchestrator.session import CURRENT_SCHEMA_VERSION
        from auto_ml_orchestrator.session_store import SessionStore
        from auto_ml_orchestrator.state import WorkflowState

        store = SessionStore(tmp_path)
        session = _session()
        session.record_transition(WorkflowState.NOT_STARTED, WorkflowState.INITIALIZING, "go")
        data = session.to_dict()
        del data["schema_version"]
        del data["metadata"]
        del data["checkpoints"]
        data["history"] = data.pop("state_history")
        store.sessions_dir.mkdir(parents=True)
        store.session_path(session.session_id).write_text(json.dumps(data))

        loaded = store.load(session.session_id)
        assert loaded.schema_version == CURRENT_SCHEMA_VERSION
        assert loaded.state_history[0].reason == "go"
        assert loaded.metadata == {}

    def test_future_version_rejected(self, tmp_path):
        from auto_ml_orchestrator.errors import SchemaVersionError
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        session = _session()
        data = session.to_dict()
        data["schema_version"] = 99
        store.sessions_dir.mkdir(parents=True)
        store.session_path(session.session_id).write_text(json.dumps(data))

        with pytest.raises(SchemaVersionError) as exc:
            store.load(session.session_id)
        assert exc.value.found == 99


class TestListingAndCleanup:

    def test_list_most_recent_first(self, tmp_path):
        from auto_ml_orchestrator.context import utcnow
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        old, new = _session("old.csv"), _session("new.csv")
        old.updated_at = utcnow() - timedelta(hours=1)
        store.save(old)
        store.save(new)
        assert [s.data_path for s in store.list()] == ["new.csv", "old.csv"]

    def test_list_resumable(self, tmp_path):
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        active, done = _session("a.csv"), _session("b.csv")
        done.mark_completed()
        store.save(active)
        store.save(done)
        assert [s.session_id for s in store.list_resumable()] == [active.session_id]

    def test_cleanup_removes_old_terminal_sessions(self, tmp_path):
        from auto_ml_orchestrator.context import utcnow
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        stale, recent, stale_active = _session(), _session(), _session()
        stale.mark_completed()
        stale.updated_at = utcnow() - timedelta(days=40)
        recent.mark_cancelled()
        stale_active.updated_at = utcnow() - timedelta(days=40)
        for s in (stale, recent, stale_active):
            store.save(s)

        removed = store.cleanup(30)
        assert removed == [stale.session_id]
        assert store.load(stale.session_id) is None
        assert store.load(recent.session_id) is not None
        assert store.load(stale_active.session_id) is not None

    def test_delete_removes_side_files(self, tmp_path):
        from auto_ml_orchestrator.context import HitlDecision
        from auto_ml_orchestrator.session_store import SessionStore
        from auto_ml_orchestrator.state import WorkflowState

        store = SessionStore(tmp_path)
        session = _session()
        sid = session.session_id
        store.save(session)
        store.save_artifact(sid, "analysis", {"rows": 3})
        store.save_checkpoint(sid, session.create_checkpoint("x"))
        store.append_decision(sid, HitlDecision("data-analysis-review", WorkflowState.ANALYSIS_REVIEW, "approve"))

        assert store.delete(sid)
        assert not (store.artifacts_dir / sid).exists()
        assert not (store.checkpoints_dir / sid).exists()
        assert store.load_decisions(sid) == []


class TestCheckpointsAndDecisions:

    def test_checkpoints_are_write_once(self, tmp_path):
        from auto_ml_orchestrator.errors import SessionStoreError
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        session = _session()
        checkpoint = session.create_checkpoint("analysis-complete")
        store.save_checkpoint(session.session_id, checkpoint)
        with pytest.raises(SessionStoreError):
            store.save_checkpoint(session.session_id, checkpoint)

        loaded = store.load_checkpoints(session.session_id)
        assert [c.checkpoint_id for c in loaded] == [checkpoint.checkpoint_id]
        assert loaded[0].context_snapshot == checkpoint.context_snapshot

    def test_decisions_append(self, tmp_path):
        from auto_ml_orchestrator.context import HitlDecision
        from auto_ml_orchestrator.session_store import SessionStore
        from auto_ml_orchestrator.state import WorkflowState

        store = SessionStore(tmp_path)
        sid = "orc-20240101-abcdef"
        store.append_decision(sid, HitlDecision("training-review", WorkflowState.TRAINING_REVIEW, "retrain"))
        store.append_decision(sid, HitlDecision("training-review", WorkflowState.TRAINING_REVIEW, "approve",
                                                comment="fine"))
        decisions = store.load_decisions(sid)
        assert [d.option_id for d in decisions] == ["retrain", "approve"]
        assert decisions[1].comment == "fine"
        assert decisions[0].state == WorkflowState.TRAINING_REVIEW

    def test_artifacts(self, tmp_path):
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path)
        store.save_artifact("s1", "training", {"best": "Ridge"})
        assert store.load_artifact("s1", "training") == {"best": "Ridge"}
        assert store.load_artifact("s1", "missing") is None


class TestRetry:

    def test_transient_errors_are_retried(self, tmp_path):
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path, retry_delays=(0, 0))
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise OSError("disk busy")
            return "ok"

        assert store._with_retry("flaky", flaky) == "ok"
        assert len(attempts) == 3

    def test_persistent_errors_raise_store_error(self, tmp_path):
        from auto_ml_orchestrator.errors import SessionStoreError
        from auto_ml_orchestrator.session_store import SessionStore

        store = SessionStore(tmp_path, retry_delays=(0,))

        def broken():
            raise OSError("read-only file system")

        with pytest.raises(SessionStoreError, match="after 2 attempts"):
            store._with_retry("broken", broken)
