"""Orchestration state machine.

:meth:`Orchestrator.advance` executes the single action bound to the
session's current state, moves the session along the transition table,
emits events and persists the session.  :meth:`Orchestrator.run` and
:meth:`Orchestrator.resume` drive ``advance`` through the LangGraph in
``auto_ml_orchestrator.graph`` until the session is terminal or paused.

Blocking collaborator work runs in a worker thread and is raced against the
optional cancel signal; a fired signal or a cancelled task ends the session
as Cancelled.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import traceback
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from auto_ml_orchestrator.analysis import DataAnalyzer
from auto_ml_orchestrator.collaborators import (
    Analyzer,
    Deployer,
    Evaluator,
    PreprocessingExecutor,
    Recommender,
    TrainingRunner,
)
from auto_ml_orchestrator.context import (
    HitlDecision,
    OrchestrationContext,
    OrchestrationOptions,
    PreprocessingResult,
    StageError,
)
from auto_ml_orchestrator.errors import (
    CollaboratorError,
    SessionNotFoundError,
    SessionNotResumableError,
    SessionStoreError,
    StageCancelledError,
)
from auto_ml_orchestrator.events import (
    AgentCompleted,
    AgentStarted,
    EventChannel,
    HitlRequested,
    HitlResponse,
    OrchestrationEvent,
    PhaseCompleted,
    PhaseStarted,
    ProgressUpdate,
    SessionCancelled,
    SessionCompleted,
    SessionFailed,
    SessionStarted,
    StateChanged,
)
from auto_ml_orchestrator.memory import DatasetFingerprint, ProcessingOutcome
from auto_ml_orchestrator.policy import CheckpointPolicy, HitlAction, HitlAnswer
from auto_ml_orchestrator.preprocess import RulePreprocessor
from auto_ml_orchestrator.recommend import HeuristicRecommender
from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery
from auto_ml_orchestrator.rules.models import PreprocessingRule
from auto_ml_orchestrator.serde import to_jsonable
from auto_ml_orchestrator.session import OrchestrationSession
from auto_ml_orchestrator.session_store import SessionStore
from auto_ml_orchestrator.state import (
    PHASE_NAMES,
    RETRY_STATE,
    SessionStatus,
    WorkflowState,
    display_name,
    is_checkpoint,
    is_terminal,
    next_state,
    phase_number,
    progress_percentage,
)
from auto_ml_orchestrator.training import LocalDeployer, SklearnEvaluator, SklearnTrainingRunner
from auto_ml_orchestrator.utils import ensure_dir, read_dataset

logger = logging.getLogger(__name__)

S = WorkflowState

HitlHandler = Callable[[HitlRequested], Union[Optional[HitlAnswer], Awaitable[Optional[HitlAnswer]]]]
RuleDecider = Callable[[PreprocessingRule], Optional[str]]

_STAGE_LABELS = {
    S.ANALYSIS: "analysis-complete",
    S.RECOMMENDATION: "recommendation-complete",
    S.PREPROCESSING: "preprocessing-complete",
    S.TRAINING: "training-complete",
    S.EVALUATION: "evaluation-complete",
    S.DEPLOYMENT: "deployment-complete",
}

_PHASE_DESCRIPTIONS = {
    1: "Profile the dataset and detect the prediction target",
    2: "Choose task type, metric and candidate estimators",
    3: "Discover and apply data-cleaning rules",
    4: "Train candidate models and evaluate the best one",
    5: "Deploy, export or save the selected model",
}


@dataclass
class Collaborators:
    analyzer: Analyzer
    recommender: Recommender
    preprocessor: PreprocessingExecutor
    trainer: TrainingRunner
    evaluator: Evaluator
    deployer: Deployer

    @classmethod
    def defaults(cls, memory=None, recommender: Recommender | None = None, random_seed: int = 42) -> Collaborators:
        return cls(
            analyzer=DataAnalyzer(memory=memory),
            recommender=recommender or HeuristicRecommender(),
            preprocessor=RulePreprocessor(),
            trainer=SklearnTrainingRunner(random_seed=random_seed),
            evaluator=SklearnEvaluator(),
            deployer=LocalDeployer(),
        )


class Orchestrator:
    """Drives sessions through the workflow.

    Parameters
    ----------
    store : SessionStore
        Where sessions, checkpoints and decisions are persisted.
    policy : CheckpointPolicy, optional
        Auto-approval rules for review states.
    collaborators : Collaborators, optional
        Stage implementations; the scikit-learn defaults when omitted.
    memory : optional
        Advisory pattern memory; outcomes are recorded when it has ``record``.
    discovery : ProgressiveRuleDiscovery, optional
        Rule-discovery engine used by the preprocessing stage.
    channel : EventChannel, optional
        Receives every emitted event.
    rule_decider : callable, optional
        Asked once per rule that needs a decision during discovery.
    """

    def __init__(
        self,
        store: SessionStore,
        policy: CheckpointPolicy | None = None,
        collaborators: Collaborators | None = None,
        memory=None,
        discovery: ProgressiveRuleDiscovery | None = None,
        channel: EventChannel | None = None,
        rule_decider: RuleDecider | None = None,
    ):
        self.store = store
        self.policy = policy or CheckpointPolicy()
        self.memory = memory
        self.collaborators = collaborators or Collaborators.defaults(memory=memory)
        self.discovery = discovery or ProgressiveRuleDiscovery()
        self.channel = channel
        self.rule_decider = rule_decider

    # ── Public API ─────────────────────────────────────────────────

    async def run(
        self,
        data_path: str,
        options: OrchestrationOptions | None = None,
        handler: HitlHandler | None = None,
        cancel: asyncio.Event | None = None,
        session_id: str = "",
    ) -> OrchestrationSession:
        """Start a new session and drive it until it is terminal or paused."""
        ctx = OrchestrationContext(data_path=str(data_path), options=options or OrchestrationOptions())
        if session_id:
            ctx.session_id = session_id
        session = OrchestrationSession(context=ctx)
        self.store.save(session)
        logger.info("Session %s started for %s", session.session_id, data_path)
        self._emit(None, SessionStarted(session_id=session.session_id, data_path=ctx.data_path))
        return await self.drive(session, handler, cancel)

    async def resume(
        self,
        session_id: str,
        handler: HitlHandler | None = None,
        cancel: asyncio.Event | None = None,
    ) -> OrchestrationSession:
        """Continue a paused or active session, or recover a failed one."""
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.can_recover():
            logger.info("Recovering session %s at %s", session_id, session.context.failed_at_state.value)
            session.recover()
        elif session.can_resume():
            session.resume()
        else:
            raise SessionNotResumableError(session_id, session.status.value, session.context.current_state.value)
        self.store.save(session)
        self._emit(None, SessionStarted(
            session_id=session.session_id, data_path=session.context.data_path, resumed=True,
        ))
        return await self.drive(session, handler, cancel)

    async def drive(
        self,
        session: OrchestrationSession,
        handler: HitlHandler | None = None,
        cancel: asyncio.Event | None = None,
    ) -> OrchestrationSession:
        """Run the workflow graph from the session's current state."""
        from auto_ml_orchestrator.graph import RECURSION_LIMIT, build_graph

        app = build_graph(self, handler=handler, cancel=cancel)
        await app.ainvoke(
            {"session": session, "halted": False},
            config={"recursion_limit": RECURSION_LIMIT},
        )
        return session

    async def advance(
        self,
        session: OrchestrationSession,
        handler: HitlHandler | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[list[OrchestrationEvent], WorkflowState]:
        """Execute the action of the current state and move to the next one.

        Returns the events emitted during this step and the state the
        session is in afterwards.  Errors never escape: they end the session
        as Failed (or Cancelled for cancellation) and are reported as events.
        """
        events: list[OrchestrationEvent] = []
        ctx = session.context
        state = ctx.current_state
        if is_terminal(state) or session.status != SessionStatus.ACTIVE:
            return events, state

        try:
            if cancel is not None and cancel.is_set():
                raise StageCancelledError(f"Cancelled before {display_name(state)}")
            if is_checkpoint(state):
                target, reason = await self._review(session, state, handler, cancel, events)
            else:
                await self._execute(session, state, cancel, events)
                target, reason = next_state(state), "stage completed"
            if target is None:
                return events, ctx.current_state
            self._transition(session, state, target, reason, events)
            self.store.save(session)
        except StageCancelledError as e:
            self._cancel(session, str(e), events)
        except asyncio.CancelledError:
            self._cancel(session, f"Task cancelled during {display_name(state)}", events)
            raise
        except Exception as e:
            self._fail(session, state, e, events)
            await asyncio.to_thread(self._remember, session, False)
        else:
            if ctx.current_state == S.COMPLETED:
                await asyncio.to_thread(self._remember, session, True)
                self._emit(events, self._completed_event(session))
        return events, ctx.current_state

    # ── Transitions ────────────────────────────────────────────────

    def _transition(
        self,
        session: OrchestrationSession,
        from_state: WorkflowState,
        to_state: WorkflowState,
        reason: str,
        events: list,
    ) -> None:
        ctx = session.context
        session.record_transition(from_state, to_state, reason)
        if to_state == S.COMPLETED:
            session.mark_completed()
        else:
            ctx.current_state = to_state
        self._emit(events, StateChanged(
            session_id=ctx.session_id, from_state=from_state, to_state=to_state, reason=reason,
        ))

        old_phase, new_phase = phase_number(from_state), phase_number(to_state)
        if old_phase != new_phase:
            if old_phase:
                started = session.metadata.pop(f"phase_{old_phase}_started", "")
                duration = time.time() - float(started) if started else 0.0
                self._emit(events, PhaseCompleted(
                    session_id=ctx.session_id,
                    phase_number=old_phase,
                    phase_name=PHASE_NAMES[old_phase],
                    duration=duration,
                ))
            if new_phase:
                session.metadata[f"phase_{new_phase}_started"] = str(time.time())
                self._emit(events, PhaseStarted(
                    session_id=ctx.session_id,
                    phase_number=new_phase,
                    phase_name=PHASE_NAMES[new_phase],
                    description=_PHASE_DESCRIPTIONS[new_phase],
                ))
        self._emit(events, ProgressUpdate(
            session_id=ctx.session_id,
            percentage=progress_percentage(ctx.current_state),
            operation=display_name(ctx.current_state),
        ))

    def _fail(self, session: OrchestrationSession, state: WorkflowState, error: Exception, events: list) -> None:
        ctx = session.context
        message = str(error) or type(error).__name__
        logger.error("Session %s failed at %s: %s", session.session_id, state.value, message)
        ctx.errors.append(StageError(
            state=state,
            message=message,
            details="".join(traceback.format_exception(type(error), error, error.__traceback__))[-4000:],
            recoverable=True,
        ))
        session.record_transition(state, S.FAILED, reason=message)
        session.mark_failed(message)
        try:
            self.store.save(session)
        except SessionStoreError as e:
            logger.error("Could not persist failed session %s: %s", session.session_id, e)
        self._emit(events, SessionFailed(
            session_id=session.session_id,
            state=state,
            error=message,
            details=type(error).__name__,
            can_resume=True,
        ))

    def _cancel(self, session: OrchestrationSession, reason: str, events: list) -> None:
        state = session.context.current_state
        logger.info("Session %s cancelled at %s: %s", session.session_id, state.value, reason)
        session.record_transition(state, S.CANCELLED, reason=reason)
        session.mark_cancelled(reason)
        try:
            self.store.save(session)
        except SessionStoreError as e:
            logger.error("Could not persist cancelled session %s: %s", session.session_id, e)
            return
        self._emit(events, SessionCancelled(
            session_id=session.session_id, state=state, reason=reason, can_resume=False,
        ))

    # ── Stage actions ──────────────────────────────────────────────

    async def _execute(
        self,
        session: OrchestrationSession,
        state: WorkflowState,
        cancel: asyncio.Event | None,
        events: list,
    ) -> None:
        ctx = session.context
        c = self.collaborators

        if state == S.NOT_STARTED:
            return
        if state == S.INITIALIZING:
            if not Path(ctx.data_path).exists():
                raise CollaboratorError(f"Dataset not found: {ctx.data_path}")
            if not ctx.options.output_dir:
                ctx.options.output_dir = str(self.store.root.parent / "outputs" / ctx.session_id)
            ensure_dir(ctx.options.output_dir)
            return

        if state == S.ANALYSIS:
            ctx.analysis = await self._call(
                session, "analyzer", "Analyzing dataset", cancel, events,
                c.analyzer.analyze, ctx.data_path, ctx.options,
            )
        elif state == S.RECOMMENDATION:
            if ctx.analysis is None:
                raise CollaboratorError("Cannot recommend a model before the dataset is analyzed")
            ctx.recommendation = await self._call(
                session, "recommender", "Selecting task type, metric and estimators", cancel, events,
                c.recommender.recommend, ctx.analysis, ctx.options,
            )
        elif state == S.PREPROCESSING:
            ctx.preprocessing = await self._call(
                session, "preprocessor", "Discovering and applying cleaning rules", cancel, events,
                self._preprocess, ctx,
            )
            ctx.artifacts["preprocessed_data"] = ctx.preprocessing.output_path
        elif state == S.TRAINING:
            ctx.training = await self._train(session, cancel, events)
            ctx.artifacts["model"] = ctx.training.model_path
        elif state == S.EVALUATION:
            if ctx.training is None:
                raise CollaboratorError("Cannot evaluate before a model is trained")
            ctx.evaluation = await self._call(
                session, "evaluator", "Evaluating the best model", cancel, events,
                c.evaluator.evaluate, ctx.training, ctx.working_data_path(), ctx.target_column(), ctx.task_type(),
            )
            ctx.artifacts["evaluation_report"] = ctx.evaluation.report_path
        elif state == S.DEPLOYMENT:
            if ctx.training is None:
                raise CollaboratorError("Cannot deploy before a model is trained")
            decision = ctx.last_decision(S.DEPLOYMENT_REVIEW)
            mode = decision.option_id if decision and decision.option_id in ("deploy", "export", "save") else "deploy"
            ctx.deployment = await self._call(
                session, "deployer", f"Model {mode}", cancel, events,
                c.deployer.deploy, ctx.training, mode, ctx.options.output_dir,
            )
            ctx.artifacts["deployment"] = ctx.deployment.location

        result = getattr(ctx, state.value, None)
        if result is not None:
            self.store.save_artifact(session.session_id, state.value, to_jsonable(result))
        label = _STAGE_LABELS.get(state)
        if label:
            checkpoint = session.create_checkpoint(label)
            self.store.save_checkpoint(session.session_id, checkpoint)

    async def _train(self, session: OrchestrationSession, cancel, events):
        ctx = session.context
        if session.metadata.pop("skip_training", "") == "true":
            prior = ctx.training
            if prior is None or not prior.model_path or not Path(prior.model_path).exists():
                raise CollaboratorError(
                    "Training was skipped but no previously trained model is available"
                )
            logger.info("Training skipped; reusing %s", prior.model_path)
            return replace(prior, skipped=True)
        if ctx.recommendation is None:
            raise CollaboratorError("Cannot train before a model is recommended")
        target = ctx.target_column()
        if not target:
            raise CollaboratorError("No target column selected")
        return await self._call(
            session, "trainer", f"Training {len(ctx.recommendation.trainers)} candidate models", cancel, events,
            self.collaborators.trainer.train,
            ctx.working_data_path(), target, ctx.recommendation,
            ctx.options.max_training_time, ctx.options.output_dir,
        )

    def _preprocess(self, ctx: OrchestrationContext) -> PreprocessingResult:
        """Rule discovery followed by the executor; runs in a worker thread."""
        df = read_dataset(ctx.data_path)
        target = ctx.target_column()
        if target in df.columns:
            df = df.drop(columns=[target])
        decisions = {}
        if ctx.preprocessing is not None:
            decisions = {r["signature"]: r["decision"] for r in ctx.preprocessing.rules if r.get("decision")}

        discovery = self.discovery.discover(df, decisions=decisions, decide=self.rule_decider)
        result = self.collaborators.preprocessor.apply(
            ctx.data_path, discovery.applicable_rules, ctx.options.output_dir,
        )
        result.used_incremental = True
        result.rules = [r.to_record() for r in discovery.rules]
        result.pending_decisions = [r.signature() for r in discovery.pending_decisions]
        result.converged = discovery.converged
        result.exception_report = list(discovery.exception_report)
        result.confidence = round(discovery.confidence, 4)
        return result

    def _apply_pending(self, ctx: OrchestrationContext) -> PreprocessingResult:
        """Approve every pending rule and re-run the executor; runs in a worker thread."""
        prep = ctx.preprocessing
        pending = set(prep.pending_decisions)
        rules = []
        for record in prep.rules:
            if record.get("signature") in pending:
                record["approved"] = True
                record["decision"] = "approve"
            rule = PreprocessingRule.from_record(record)
            if rule.active and (not rule.requires_hitl or rule.approved):
                rules.append(rule)
        applied = self.collaborators.preprocessor.apply(ctx.data_path, rules, ctx.options.output_dir)
        return replace(
            prep,
            output_path=applied.output_path,
            steps=applied.steps,
            rows_after=applied.rows_after,
            columns_after=applied.columns_after,
            pending_decisions=[],
        )

    # ── Review ─────────────────────────────────────────────────────

    async def _review(
        self,
        session: OrchestrationSession,
        state: WorkflowState,
        handler: HitlHandler | None,
        cancel: asyncio.Event | None,
        events: list,
    ) -> tuple[WorkflowState | None, str]:
        """Obtain an answer for a review state and route it.

        Returns ``(None, ...)`` when the session was paused for a human.
        """
        ctx = session.context
        definition = self.policy.definition(state)
        confidence = ctx.current_confidence()

        if not self.policy.should_trigger_hitl(state, confidence, ctx.options):
            option_id = self.policy.auto_option(state)
            comment = "HITL skipped" if ctx.options.skip_hitl else f"Auto-approved at {confidence:.0%} confidence"
            decision = HitlDecision(
                checkpoint_id=definition.id, state=state, option_id=option_id,
                is_auto_approval=True, confidence=confidence, comment=comment,
            )
        else:
            request = self.policy.build_request(state, ctx)
            self._emit(events, request)
            if handler is None:
                self._pause(session, definition.name)
                return None, ""
            started = time.monotonic()
            answer = await self._ask(handler, request, cancel)
            if answer is None:
                self._pause(session, definition.name)
                return None, ""
            decision = HitlDecision(
                checkpoint_id=definition.id, state=state,
                option_id=(answer.option_id or request.default_option()).strip().lower(),
                confidence=confidence, comment=answer.comment,
                response_time=time.monotonic() - started,
            )
            self.store.append_decision(session.session_id, decision)

        ctx.hitl_decisions.append(decision)
        self._emit(events, HitlResponse.from_decision(session.session_id, decision))
        action = self.policy.process_response(state, decision.option_id)
        logger.info(
            "%s: %s -> %s%s", definition.name, decision.option_id, action.value,
            " (auto)" if decision.is_auto_approval else "",
        )
        return await self._route(session, state, action, decision, cancel, events)

    async def _route(self, session, state, action: HitlAction, decision: HitlDecision, cancel, events):
        ctx = session.context
        reason = f"{decision.option_id} at {self.policy.definition(state).id}"
        if action == HitlAction.CANCEL:
            raise StageCancelledError(f"Cancelled by reviewer at {display_name(state)}")
        if action == HitlAction.RETRY:
            return RETRY_STATE.get(state, next_state(state)), reason
        if action == HitlAction.SKIP:
            if state == S.PREPROCESSING_REVIEW and ctx.preprocessing is not None:
                ctx.preprocessing.skipped = True
            elif state == S.RECOMMENDATION_REVIEW:
                session.metadata["skip_training"] = "true"
        elif (
            action == HitlAction.PROCEED
            and state == S.PREPROCESSING_REVIEW
            and ctx.preprocessing is not None
            and ctx.preprocessing.pending_decisions
        ):
            ctx.preprocessing = await self._call(
                session, "preprocessor", "Applying approved rules", cancel, events,
                self._apply_pending, ctx,
            )
        return next_state(state), reason

    async def _ask(self, handler: HitlHandler, request: HitlRequested, cancel) -> HitlAnswer | None:
        call = getattr(handler, "__call__", None)
        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(call):
            answer = await self._race(handler(request), cancel, "waiting for a review answer")
        else:
            answer = await self._race(asyncio.to_thread(handler, request), cancel, "waiting for a review answer")
            if inspect.isawaitable(answer):
                answer = await self._race(answer, cancel, "waiting for a review answer")
        if isinstance(answer, str):
            answer = HitlAnswer(option_id=answer)
        return answer

    def _pause(self, session: OrchestrationSession, checkpoint_name: str) -> None:
        logger.info("Session %s paused at %s awaiting review", session.session_id, checkpoint_name)
        session.mark_paused()
        self.store.save(session)

    # ── Collaborator calls ─────────────────────────────────────────

    async def _call(self, session, agent_name: str, task: str, cancel, events, fn, *args) -> Any:
        self._emit(events, AgentStarted(session_id=session.session_id, agent_name=agent_name, task=task))
        started = time.monotonic()
        try:
            result = await self._race(asyncio.to_thread(fn, *args), cancel, task)
        except Exception:
            self._emit(events, AgentCompleted(
                session_id=session.session_id, agent_name=agent_name,
                success=False, duration=time.monotonic() - started,
            ))
            raise
        self._emit(events, AgentCompleted(
            session_id=session.session_id, agent_name=agent_name,
            success=True, duration=time.monotonic() - started,
            results={"confidence": getattr(result, "confidence", None)},
        ))
        return result

    @staticmethod
    async def _race(awaitable: Awaitable, cancel: asyncio.Event | None, what: str):
        """Await *awaitable*, raising StageCancelledError if *cancel* fires first."""
        work = asyncio.ensure_future(awaitable)
        if cancel is None:
            return await work
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        # a worker thread cannot be interrupted; its result is discarded
        work.cancel()
        raise StageCancelledError(f"Cancelled while {what[:1].lower() + what[1:]}")

    # ── Events & memory ────────────────────────────────────────────

    def _emit(self, events: list | None, event: OrchestrationEvent) -> None:
        if events is not None:
            events.append(event)
        if self.channel is not None:
            self.channel.publish(event)

    @staticmethod
    def _completed_event(session: OrchestrationSession) -> SessionCompleted:
        ctx = session.context
        final_metrics: dict[str, Any] = {}
        if ctx.training is not None:
            final_metrics = {
                "model": ctx.training.best_model_name,
                "metric_name": ctx.training.primary_metric_name,
                "metric_value": ctx.training.primary_metric_value,
                "metrics": dict(ctx.training.metrics),
            }
        if ctx.evaluation is not None:
            final_metrics["test_metrics"] = dict(ctx.evaluation.test_metrics)
        summary = {
            "rows": ctx.analysis.row_count if ctx.analysis else 0,
            "target": ctx.target_column(),
            "task_type": ctx.task_type(),
            "decisions": len(ctx.hitl_decisions),
            "auto_approved": sum(1 for d in ctx.hitl_decisions if d.is_auto_approval),
            "preprocessing_steps": len(ctx.preprocessing.steps) if ctx.preprocessing else 0,
            "deployment": ctx.deployment.location if ctx.deployment else "",
        }
        return SessionCompleted(
            session_id=ctx.session_id,
            total_duration=ctx.elapsed().total_seconds(),
            final_metrics=final_metrics,
            artifacts=dict(ctx.artifacts),
            summary=summary,
        )

    def _remember(self, session: OrchestrationSession, success: bool) -> None:
        """Record the session outcome in pattern memory; never fails the session."""
        record = getattr(self.memory, "record", None)
        ctx = session.context
        if record is None or ctx.analysis is None:
            return
        try:
            df = read_dataset(ctx.data_path)
            fingerprint = DatasetFingerprint.from_dataframe(df, ctx.target_column())
            fingerprint.task_type = ctx.task_type()
            training = ctx.training
            record(fingerprint, ProcessingOutcome(
                session_id=session.session_id,
                success=success,
                task_type=ctx.task_type(),
                best_model=training.best_model_name if training else "",
                metric_name=training.primary_metric_name if training else "",
                metric_value=training.primary_metric_value if training else 0.0,
                preprocessing_steps=[s.name for s in ctx.preprocessing.steps] if ctx.preprocessing else [],
                error="" if success else ctx.last_error,
            ))
        except Exception as e:
            logger.warning("Could not record outcome in pattern memory: %s", e)
