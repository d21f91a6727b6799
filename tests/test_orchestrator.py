"""Tests for the orchestrator: review routing, pause/resume, failure recovery, cancellation."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pandas as pd
import pytest


def _orchestrator(tmp_path, collaborators, thresholds=None, **kwargs):
    from auto_ml_orchestrator.orchestrator import Orchestrator
    from auto_ml_orchestrator.policy import CheckpointPolicy, PolicyConfig
    from auto_ml_orchestrator.session_store import SessionStore

    policy = CheckpointPolicy(PolicyConfig.from_dict({"thresholds": thresholds or {}}))
    return Orchestrator(SessionStore(tmp_path), policy=policy, collaborators=collaborators, **kwargs)


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------

class TestPauseAndResume:

    @pytest.mark.asyncio
    async def test_pauses_at_first_explicit_review(self, tmp_path, clean_csv, fakes):
        """Without a handler the session stops at training review; confident reviews pass on their own."""
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        orch = _orchestrator(tmp_path, fakes)
        session = await orch.run(clean_csv)

        assert session.status == SessionStatus.PAUSED
        assert session.context.current_state == WorkflowState.TRAINING_REVIEW
        assert fakes.trainer.calls == [clean_csv]
        assert all(d.is_auto_approval for d in session.context.hitl_decisions)
        assert [d.checkpoint_id for d in session.context.hitl_decisions] == [
            "data-analysis-review", "model-selection-review", "preprocessing-review",
        ]

        stored = orch.store.load(session.session_id)
        assert stored.status == SessionStatus.PAUSED
        assert orch.store.load_decisions(session.session_id) == []
        assert session.context.options.output_dir == str(
            tmp_path / ".mloop" / "outputs" / session.session_id
        )

    @pytest.mark.asyncio
    async def test_resume_runs_to_completion(self, tmp_path, clean_csv, fakes, make_handler):
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        orch = _orchestrator(tmp_path, fakes)
        paused = await orch.run(clean_csv)

        handler = make_handler()
        session = await orch.resume(paused.session_id, handler)

        assert session.status == SessionStatus.COMPLETED
        assert session.context.current_state == WorkflowState.COMPLETED
        assert handler.seen == ["training-review", "deployment-review"]
        assert fakes.deployer.modes == ["deploy"]
        # training already ran before the pause
        assert len(fakes.trainer.calls) == 1
        assert [d.option_id for d in orch.store.load_decisions(session.session_id)] == ["approve", "approve"]

        labels = [c.label for c in orch.store.load_checkpoints(session.session_id)]
        assert labels == [
            "analysis-complete", "recommendation-complete", "preprocessing-complete",
            "training-complete", "evaluation-complete", "deployment-complete",
        ]
        assert orch.store.load_artifact(session.session_id, "training")["best_model_name"] == "RandomForestClassifier"

    @pytest.mark.asyncio
    async def test_pause_at_preprocessing_review_then_resume(self, tmp_path, clean_csv, fakes, make_handler):
        """Paused at preprocessing review, the state holds; resuming with an answer moves on to training."""
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        orch = _orchestrator(tmp_path, fakes, {"preprocessing-review": None})
        paused = await orch.run(clean_csv)

        assert paused.status == SessionStatus.PAUSED
        assert paused.context.current_state == WorkflowState.PREPROCESSING_REVIEW
        assert fakes.trainer.calls == []
        stored = orch.store.load(paused.session_id)
        assert stored.context.current_state == WorkflowState.PREPROCESSING_REVIEW
        seen_before = len(stored.state_history)

        handler = make_handler()
        session = await orch.resume(paused.session_id, handler)

        first = session.state_history[seen_before]
        assert (first.from_state, first.to_state) == (WorkflowState.PREPROCESSING_REVIEW, WorkflowState.TRAINING)
        assert handler.seen == ["preprocessing-review", "training-review", "deployment-review"]
        assert session.status == SessionStatus.COMPLETED
        assert fakes.trainer.calls == [clean_csv]

    @pytest.mark.asyncio
    async def test_failing_handler_fails_the_session(self, tmp_path, clean_csv, fakes, make_handler):
        """An answer handler that raises is a stage failure the session can recover from."""
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        async def broken(request):
            raise RuntimeError("review service unavailable")

        orch = _orchestrator(tmp_path, fakes, {"data-analysis-review": None})
        session = await orch.run(clean_csv, handler=broken)

        assert session.status == SessionStatus.FAILED
        assert session.context.failed_at_state == WorkflowState.ANALYSIS_REVIEW
        [error] = session.context.errors
        assert error.state == WorkflowState.ANALYSIS_REVIEW
        assert error.recoverable
        assert "review service unavailable" in error.message
        assert orch.store.load_decisions(session.session_id) == []

        recovered = await orch.resume(session.session_id, make_handler())
        assert recovered.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_handler_returning_none_pauses(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        async def undecided(request):
            return None

        session = await _orchestrator(tmp_path, fakes).run(clean_csv, handler=undecided)
        assert session.status == SessionStatus.PAUSED
        assert session.context.current_state == WorkflowState.TRAINING_REVIEW

    @pytest.mark.asyncio
    async def test_sync_handler_with_plain_string(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.state import SessionStatus

        def handler(request):
            return "save" if request.checkpoint_id == "deployment-review" else "approve"

        session = await _orchestrator(tmp_path, fakes).run(clean_csv, handler=handler)
        assert session.status == SessionStatus.COMPLETED
        assert fakes.deployer.modes == ["save"]
        assert session.context.deployment.mode == "save"

    @pytest.mark.asyncio
    async def test_unknown_and_finished_sessions(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.context import OrchestrationOptions
        from auto_ml_orchestrator.errors import SessionNotFoundError, SessionNotResumableError

        orch = _orchestrator(tmp_path, fakes)
        with pytest.raises(SessionNotFoundError):
            await orch.resume("orc-20240101-000000")

        done = await orch.run(clean_csv, OrchestrationOptions(skip_hitl=True))
        with pytest.raises(SessionNotResumableError) as exc:
            await orch.resume(done.session_id)
        assert exc.value.status == "completed"


# ---------------------------------------------------------------------------
# Review answers
# ---------------------------------------------------------------------------

class TestReviewAnswers:

    @pytest.mark.asyncio
    async def test_retry_reruns_the_reviewed_stage(self, tmp_path, clean_csv, fakes, make_handler):
        from auto_ml_orchestrator.state import SessionStatus

        orch = _orchestrator(tmp_path, fakes, {"data-analysis-review": None})
        handler = make_handler("reanalyze")
        session = await orch.run(clean_csv, handler=handler)

        assert session.status == SessionStatus.COMPLETED
        assert fakes.analyzer.calls == 2
        assert handler.seen[:2] == ["data-analysis-review", "data-analysis-review"]
        assert [d.option_id for d in session.context.hitl_decisions][:2] == ["reanalyze", "approve"]

    @pytest.mark.asyncio
    async def test_modify_continues_and_keeps_comment(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.policy import HitlAnswer
        from auto_ml_orchestrator.state import SessionStatus

        offered = {}

        async def handler(request):
            if request.checkpoint_id == "data-analysis-review":
                offered.update({o.id: o.description for o in request.options})
                return HitlAnswer(option_id="modify", comment="target should be churn")
            return HitlAnswer(option_id="approve")

        orch = _orchestrator(tmp_path, fakes, {"data-analysis-review": None})
        session = await orch.run(clean_csv, handler=handler)

        assert "comment" in offered["modify"]
        assert session.status == SessionStatus.COMPLETED
        assert fakes.analyzer.calls == 1
        [first, *_] = orch.store.load_decisions(session.session_id)
        assert (first.option_id, first.comment) == ("modify", "target should be churn")

    @pytest.mark.asyncio
    async def test_reviewer_cancel(self, tmp_path, clean_csv, fakes, make_handler):
        from auto_ml_orchestrator.events import EventChannel, SessionCancelled
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        channel = EventChannel()
        orch = _orchestrator(tmp_path, fakes, {"data-analysis-review": None}, channel=channel)
        session = await orch.run(clean_csv, handler=make_handler("cancel"))

        assert session.status == SessionStatus.CANCELLED
        assert session.context.current_state == WorkflowState.CANCELLED
        assert fakes.recommender.calls == 0
        assert isinstance(channel.history[-1], SessionCancelled)
        assert not channel.history[-1].can_resume
        assert "reviewer" in session.metadata["cancellation_reason"]

    @pytest.mark.asyncio
    async def test_skip_training_without_prior_model_fails(self, tmp_path, clean_csv, fakes, make_handler):
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        orch = _orchestrator(tmp_path, fakes, {"model-selection-review": None})
        session = await orch.run(clean_csv, handler=make_handler("skip-training"))

        assert session.status == SessionStatus.FAILED
        assert session.context.failed_at_state == WorkflowState.TRAINING
        assert "no previously trained model" in session.context.last_error
        assert fakes.trainer.calls == []

    @pytest.mark.asyncio
    async def test_skip_preprocessing_trains_on_raw_data(self, tmp_path, clean_csv, fakes, make_handler):
        from auto_ml_orchestrator.preprocess import RulePreprocessor

        fakes.preprocessor = RulePreprocessor()
        orch = _orchestrator(tmp_path, fakes, {"preprocessing-review": None})
        session = await orch.run(clean_csv, handler=make_handler("skip"))

        assert session.context.preprocessing.skipped
        assert Path(session.context.preprocessing.output_path).name == "clean_preprocessed.csv"
        assert fakes.trainer.calls == [clean_csv]

    @pytest.mark.asyncio
    async def test_approved_preprocessing_feeds_training(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.context import OrchestrationOptions
        from auto_ml_orchestrator.preprocess import RulePreprocessor

        fakes.preprocessor = RulePreprocessor()
        session = await _orchestrator(tmp_path, fakes).run(clean_csv, OrchestrationOptions(skip_hitl=True))
        assert fakes.trainer.calls == [session.context.preprocessing.output_path]
        assert session.context.preprocessing.used_incremental

    @pytest.mark.asyncio
    async def test_export_answer_selects_deployment_mode(self, tmp_path, clean_csv, fakes, make_handler):
        from auto_ml_orchestrator.state import SessionStatus

        session = await _orchestrator(tmp_path, fakes).run(clean_csv, handler=make_handler("approve", "export"))
        assert session.status == SessionStatus.COMPLETED
        assert fakes.deployer.modes == ["export"]
        assert session.context.artifacts["deployment"].endswith("export")


# ---------------------------------------------------------------------------
# Failure, recovery and cancellation
# ---------------------------------------------------------------------------

class TestFailureAndCancel:

    @pytest.mark.asyncio
    async def test_failed_stage_is_recovered_on_resume(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.context import OrchestrationOptions
        from auto_ml_orchestrator.events import EventChannel, SessionCompleted, SessionFailed
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        fakes.trainer.failures = 1
        channel = EventChannel()
        orch = _orchestrator(tmp_path, fakes, channel=channel)
        session = await orch.run(clean_csv, OrchestrationOptions(skip_hitl=True))

        assert session.status == SessionStatus.FAILED
        assert session.context.failed_at_state == WorkflowState.TRAINING
        assert session.context.last_error == "trainer crashed"
        assert session.context.errors[-1].recoverable
        failed = [e for e in channel.history if isinstance(e, SessionFailed)]
        assert len(failed) == 1 and failed[0].can_resume
        assert orch.store.load(session.session_id).can_recover()

        session = await orch.resume(session.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert len(fakes.trainer.calls) == 2
        assert isinstance(channel.history[-1], SessionCompleted)
        assert channel.history[-1].final_metrics["model"] == "RandomForestClassifier"

    @pytest.mark.asyncio
    async def test_missing_dataset_fails_initialization(self, tmp_path, fakes):
        from auto_ml_orchestrator.state import SessionStatus, WorkflowState

        session = await _orchestrator(tmp_path, fakes).run(str(tmp_path / "nope.csv"))
        assert session.status == SessionStatus.FAILED
        assert session.context.failed_at_state == WorkflowState.INITIALIZING
        assert fakes.analyzer.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_signal_interrupts_running_stage(self, tmp_path, clean_csv, fakes):
        from auto_ml_orchestrator.errors import SessionNotResumableError
        from auto_ml_orchestrator.state import SessionStatus

        loop = asyncio.get_running_loop()
        cancel = asyncio.Event()
        analyzer = fakes.analyzer
        analyzer.delay = 0.5
        slow_analyze = analyzer.analyze

        def analyze(path, options):
            loop.call_soon_threadsafe(cancel.set)
            return slow_analyze(path, options)

        analyzer.analyze = analyze

        orch = _orchestrator(tmp_path, fakes)
        session = await orch.run(clean_csv, cancel=cancel)

        assert session.status == SessionStatus.CANCELLED
        assert session.metadata["cancellation_reason"] == "Cancelled while analyzing dataset"
        assert session.context.analysis is None
        with pytest.raises(SessionNotResumableError):
            await orch.resume(session.session_id)

    @pytest.mark.asyncio
    async def test_advance_ignores_inactive_sessions(self, tmp_path, fakes):
        from auto_ml_orchestrator.context import OrchestrationContext
        from auto_ml_orchestrator.session import OrchestrationSession
        from auto_ml_orchestrator.state import WorkflowState

        session = OrchestrationSession(context=OrchestrationContext(data_path="data.csv"))
        session.mark_paused()
        events, state = await _orchestrator(tmp_path, fakes).advance(session)
        assert events == []
        assert state == WorkflowState.NOT_STARTED


# ---------------------------------------------------------------------------
# End to end with the default collaborators
# ---------------------------------------------------------------------------

class TestDefaultCollaborators:

    @pytest.mark.asyncio
    async def test_full_run(self, tmp_path, churn_csv):
        from auto_ml_orchestrator.context import OrchestrationOptions
        from auto_ml_orchestrator.events import EventChannel, HitlRequested, PhaseStarted, SessionCompleted
        from auto_ml_orchestrator.memory import DatasetFingerprint, JsonPatternMemory
        from auto_ml_orchestrator.orchestrator import Collaborators, Orchestrator
        from auto_ml_orchestrator.session_store import SessionStore
        from auto_ml_orchestrator.state import SessionStatus

        memory = JsonPatternMemory(tmp_path)
        channel = EventChannel()
        orch = Orchestrator(
            SessionStore(tmp_path),
            collaborators=Collaborators.defaults(memory=memory),
            memory=memory,
            channel=channel,
        )
        session = await orch.run(churn_csv, OrchestrationOptions(target_column="target", skip_hitl=True))

        ctx = session.context
        assert session.status == SessionStatus.COMPLETED, ctx.last_error
        assert ctx.analysis.inferred_task_type == "binary"
        assert ctx.preprocessing.pending_decisions == []
        step_names = [s.name for s in ctx.preprocessing.steps]
        assert "WhitespaceNormalization_plan_WhitespaceIssue" in step_names
        assert Path(ctx.deployment.location).exists()
        assert ctx.deployment.mode == "deploy"

        assert not any(isinstance(e, HitlRequested) for e in channel.history)
        assert [e.phase_number for e in channel.history if isinstance(e, PhaseStarted)] == [1, 2, 3, 4, 5]
        completed = channel.history[-1]
        assert isinstance(completed, SessionCompleted)
        assert completed.summary["decisions"] == completed.summary["auto_approved"] == 5
        assert memory.path.exists()
        fingerprint = DatasetFingerprint.from_dataframe(pd.read_csv(churn_csv), "target")
        assert memory.find_insights(fingerprint)


# ---------------------------------------------------------------------------
# Graph wiring
# ---------------------------------------------------------------------------

class TestGraph:

    def test_route_next(self):
        from langgraph.graph import END

        from auto_ml_orchestrator.context import OrchestrationContext
        from auto_ml_orchestrator.graph import route_next
        from auto_ml_orchestrator.session import OrchestrationSession
        from auto_ml_orchestrator.state import WorkflowState

        session = OrchestrationSession(context=OrchestrationContext(data_path="data.csv"))
        session.context.current_state = WorkflowState.TRAINING
        assert route_next({"session": session, "halted": False}) == "training"
        assert route_next({"session": session, "halted": True}) == END
        session.mark_paused()
        assert route_next({"session": session, "halted": False}) == END

    def test_review_nodes_can_loop_back(self):
        from langgraph.graph import END

        from auto_ml_orchestrator.graph import _successors
        from auto_ml_orchestrator.state import WorkflowState

        targets = _successors(WorkflowState.TRAINING_REVIEW)
        assert set(targets) == {END, "training_review", "evaluation", "training"}
        assert "completed" not in _successors(WorkflowState.DEPLOYMENT)

    def test_compiled_graph_has_a_node_per_state(self, tmp_path, fakes):
        from auto_ml_orchestrator.graph import build_graph
        from auto_ml_orchestrator.state import RUNNABLE_STATES

        app = build_graph(_orchestrator(tmp_path, fakes))
        assert "route_start" in app.nodes
        assert {s.value for s in RUNNABLE_STATES} <= set(app.nodes)
