"""CLI entry point for the auto-ML orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from auto_ml_orchestrator.config import Settings, load_settings
from auto_ml_orchestrator.context import OrchestrationOptions
from auto_ml_orchestrator.errors import OrchestrationError
from auto_ml_orchestrator.events import EventChannel, HitlRequested
from auto_ml_orchestrator.memory import JsonPatternMemory
from auto_ml_orchestrator.orchestrator import Collaborators, Orchestrator
from auto_ml_orchestrator.policy import CheckpointPolicy, HitlAnswer
from auto_ml_orchestrator.recommend import LLMRecommender, build_chat_model
from auto_ml_orchestrator.rules.engine import ProgressiveRuleDiscovery
from auto_ml_orchestrator.rules.models import PreprocessingRule
from auto_ml_orchestrator.serde import to_jsonable
from auto_ml_orchestrator.session import OrchestrationSession
from auto_ml_orchestrator.session_store import SessionStore
from auto_ml_orchestrator.state import SessionStatus, display_name
from auto_ml_orchestrator.utils import read_dataset

logger = logging.getLogger(__name__)


# ── Console interaction ───────────────────────────────────────────


def console_handler(request: HitlRequested) -> HitlAnswer:
    """Print a review request and read the chosen option from stdin."""
    print("\n" + str(request.context.get("summary", request.checkpoint_name)))
    print(f"\n{request.question}")
    default = request.default_option()
    by_key = {}
    for option in request.options:
        marker = " (default)" if option.id == default else ""
        key = f"[{option.shortcut}] " if option.shortcut else ""
        print(f"  {key}{option.id:<14} {option.description}{marker}")
        by_key[option.id] = option.id
        if option.shortcut:
            by_key[option.shortcut] = option.id
    print()
    while True:
        raw = input("Your choice: ").strip()
        if not raw:
            choice, comment = default, ""
            break
        head, _, comment = raw.partition(" ")
        choice = by_key.get(head.lower())
        if choice:
            break
        print(f"Unknown option {head!r}; choose one of: {', '.join(o.id for o in request.options)}")
    print(f"\n→ Continuing with: {choice!r}\n")
    return HitlAnswer(option_id=choice, comment=comment.strip())


def console_rule_decider(rule: PreprocessingRule) -> str | None:
    """Ask about one rule that needs a decision; empty input defers it."""
    conf = rule.confidence
    print(f"\nRule needs a decision: {rule.id}")
    print(f"  {rule.description} ({rule.affected_rows} rows, confidence {conf.overall:.0%} {conf.level})")
    if rule.examples:
        print(f"  Examples: {', '.join(map(str, rule.examples[:5]))}")
    if rule.suggested_action:
        print(f"  Suggested: {rule.suggested_action}")
    raw = input("Apply this rule? [y]es / [n]o / Enter to decide at review: ").strip().lower()
    if not raw:
        return None
    return "reject" if raw in ("n", "no", "reject") else "approve"


async def _print_events(channel: EventChannel) -> None:
    async for event in channel:
        if event.kind == "phase_started":
            print(f"\n── Phase {event.phase_number}: {event.phase_name} ──  {event.description}", flush=True)
        elif event.kind == "agent_completed" and not event.success:
            print(f"   {event.agent_name} failed after {event.duration:.1f}s", flush=True)
        elif event.kind == "hitl_response" and event.is_auto_approval:
            print(f"   {event.checkpoint_id}: auto-approved ({event.comment})", flush=True)
        elif event.kind == "failed":
            print(f"\nSession failed at {display_name(event.state)}: {event.error}", file=sys.stderr, flush=True)
        elif event.kind == "cancelled":
            print(f"\nSession cancelled: {event.reason}", flush=True)


# ── Wiring ────────────────────────────────────────────────────────


def _build_orchestrator(settings: Settings, args, channel: EventChannel | None = None) -> Orchestrator:
    memory = JsonPatternMemory(settings.home)
    recommender = None
    if getattr(args, "use_llm", False):
        missing = []
        if not settings.api_base:
            missing.append("openAI_endpoint")
        if not settings.api_key:
            missing.append("auth_key")
        if not settings.agent_model:
            missing.append("agent_LLM")
        if missing:
            print("Error: Missing agent LLM configuration in .env:", file=sys.stderr)
            for m in missing:
                print(f"  {m}", file=sys.stderr)
            sys.exit(1)
        recommender = LLMRecommender(build_chat_model(settings.api_base, settings.api_key, settings.agent_model))

    interactive = not getattr(args, "no_input", True)
    return Orchestrator(
        store=SessionStore(settings.home),
        policy=CheckpointPolicy(settings.policy),
        collaborators=Collaborators.defaults(
            memory=memory, recommender=recommender, random_seed=getattr(args, "seed", 42),
        ),
        memory=memory,
        discovery=ProgressiveRuleDiscovery(
            exception_tolerance=settings.exception_tolerance, seed=getattr(args, "seed", 42),
        ),
        channel=channel,
        rule_decider=console_rule_decider if interactive and getattr(args, "ask_rules", False) else None,
    )


async def _drive(channel: EventChannel, coro) -> OrchestrationSession:
    printer = asyncio.create_task(_print_events(channel))
    try:
        return await coro
    finally:
        channel.close()
        await printer


def _report(session: OrchestrationSession) -> int:
    ctx = session.context
    print("\n" + "=" * 60)
    if session.status == SessionStatus.COMPLETED:
        print("Session Complete!")
        print("=" * 60)
        if ctx.training:
            t = ctx.training
            print(f"Best model:       {t.best_model_name}")
            print(f"{t.primary_metric_name + ':':<18}{t.primary_metric_value:.4f}")
        if ctx.evaluation:
            for name, value in ctx.evaluation.test_metrics.items():
                print(f"  test {name + ':':<14}{value:.4f}")
        if ctx.deployment:
            print(f"Model {ctx.deployment.mode + ':':<11}{ctx.deployment.location}")
    elif session.status == SessionStatus.PAUSED:
        print(f"Session paused at {display_name(ctx.current_state)}")
        print("=" * 60)
        print(f"Resume with:  auto-ml-orchestrator resume {session.session_id}")
    elif session.status == SessionStatus.FAILED:
        print(f"Session failed at {display_name(ctx.failed_at_state or ctx.current_state)}")
        print("=" * 60)
        print(f"Error:        {ctx.last_error}")
        print(f"Retry with:   auto-ml-orchestrator resume {session.session_id}")
    else:
        print(f"Session {session.status.value}")
        print("=" * 60)
    print(f"Session ID:       {session.session_id}")
    print(f"Elapsed:          {ctx.elapsed().total_seconds():.1f}s")
    print("=" * 60)
    return 1 if session.status == SessionStatus.FAILED else 0


# ── Subcommands ───────────────────────────────────────────────────


def cmd_run(args, settings: Settings) -> int:
    csv_path = Path(args.csv).resolve()
    if not csv_path.exists():
        print(f"Error: CSV file not found: {csv_path}", file=sys.stderr)
        return 1

    options = OrchestrationOptions(
        target_column=args.target,
        task_type=args.task_type,
        max_training_time=args.max_training_time or settings.max_training_time,
        auto_approval_threshold=args.threshold if args.threshold is not None else settings.auto_approval_threshold,
        auto_approve_high_confidence=not args.always_ask,
        skip_hitl=args.skip_hitl or settings.skip_hitl,
        output_dir=str(Path(args.output).resolve()) if args.output else "",
        use_llm=args.use_llm,
        random_seed=args.seed,
    )

    print("=" * 60)
    print("Auto-ML Orchestrator")
    print("=" * 60)
    print(f"CSV:          {csv_path}")
    print(f"Target:       {options.target_column or '(auto-detect)'}")
    print(f"Task type:    {options.task_type or '(auto-detect)'}")
    print(f"Review:       {'skipped' if options.skip_hitl else ('paused' if args.no_input else 'interactive')}")
    print(f"Recommender:  {'LLM (' + settings.agent_model + ')' if args.use_llm else 'heuristic'}")
    print("=" * 60)

    channel = EventChannel()
    orchestrator = _build_orchestrator(settings, args, channel)
    handler = None if args.no_input else console_handler
    session = asyncio.run(_drive(channel, orchestrator.run(str(csv_path), options, handler=handler)))
    return _report(session)


def cmd_resume(args, settings: Settings) -> int:
    channel = EventChannel()
    orchestrator = _build_orchestrator(settings, args, channel)
    handler = None if args.no_input else console_handler
    session = asyncio.run(_drive(channel, orchestrator.resume(args.session_id, handler=handler)))
    return _report(session)


def cmd_list(args, settings: Settings) -> int:
    store = SessionStore(settings.home)
    summaries = store.list_resumable() if args.resumable else store.list()
    if not summaries:
        print("No sessions found.")
        return 0
    print(f"{'SESSION':<22} {'STATUS':<10} {'STATE':<28} {'PROGRESS':>8}  UPDATED")
    for s in summaries:
        print(
            f"{s.session_id:<22} {s.status.value:<10} {display_name(s.state):<28} "
            f"{s.progress:>7}%  {s.updated_at:%Y-%m-%d %H:%M}"
        )
    return 0


def cmd_show(args, settings: Settings) -> int:
    store = SessionStore(settings.home)
    session = store.load(args.session_id)
    if session is None:
        print(f"Error: Session not found: {args.session_id}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(session.to_dict(), indent=2))
        return 0

    s = session.summary()
    print("=" * 60)
    print(f"Session {s.session_id}")
    print("=" * 60)
    print(f"Data:         {s.data_path}")
    print(f"State:        {display_name(s.state)} ({s.progress}%)")
    print(f"Status:       {s.status.value}{' (resumable)' if s.can_resume or session.can_recover() else ''}")
    print(f"Created:      {s.created_at:%Y-%m-%d %H:%M:%S}")
    print(f"Updated:      {s.updated_at:%Y-%m-%d %H:%M:%S}")
    if s.last_error:
        print(f"Last error:   {s.last_error}")
    print("\nHistory:")
    for t in session.state_history:
        print(f"  {t.timestamp:%H:%M:%S}  {t.from_state.value} → {t.to_state.value}  {t.reason}")
    if session.checkpoints:
        print("\nCheckpoints:")
        for cp in session.checkpoints:
            print(f"  {cp.checkpoint_id}  {cp.label}")
    decisions = store.load_decisions(session.session_id)
    if decisions:
        print("\nDecisions:")
        for d in decisions:
            comment = f"  ({d.comment})" if d.comment else ""
            print(f"  {d.timestamp:%H:%M:%S}  {d.checkpoint_id}: {d.option_id}{comment}")
    print("=" * 60)
    return 0


def cmd_discover(args, settings: Settings) -> int:
    df = read_dataset(args.csv)
    if args.target and args.target in df.columns:
        df = df.drop(columns=[args.target])
    engine = ProgressiveRuleDiscovery(exception_tolerance=settings.exception_tolerance, seed=args.seed)
    result = engine.discover(df)

    if args.json:
        print(json.dumps({
            "converged": result.converged,
            "converged_at_stage": result.converged_at_stage,
            "last_stage": result.last_stage,
            "confidence": round(result.confidence, 4),
            "rules": [r.to_record() for r in result.rules],
            "pending_decisions": [r.signature() for r in result.pending_decisions],
            "exception_report": result.exception_report,
            "stages": to_jsonable([
                {"stage": s.stage_number, "name": s.stage_name, "rows": s.sample_size,
                 "rules": len(s.signatures), "new": s.new_rules, "converged": s.converged}
                for s in result.stages
            ]),
        }, indent=2))
        return 0

    print("=" * 60)
    print(f"Rule discovery: {Path(args.csv).name} ({result.total_rows} rows)")
    print("=" * 60)
    for s in result.stages:
        flag = "  ✓ converged" if s.converged else ""
        print(f"Stage {s.stage_number} {s.stage_name:<22} {s.sample_size:>8} rows  "
              f"{len(s.signatures):>3} rules ({s.new_rules} new){flag}")
    print()
    if not result.rules:
        print("No preprocessing rules needed.")
    for rule in result.rules:
        status = "auto" if not rule.requires_hitl else ("approved" if rule.approved else "needs decision")
        print(f"[{rule.priority:>2}] {rule.id}")
        print(f"     {rule.description}; {rule.affected_rows} rows; "
              f"confidence {rule.confidence.overall:.0%} ({rule.confidence.level}); {status}")
    if result.exception_report:
        print("\nDeactivated rules:")
        for item in result.exception_report:
            print(f"  {item['rule_id']}: {item['reason']}")
    print("=" * 60)
    print(f"Overall confidence: {result.confidence:.0%}")
    return 0


def cmd_delete(args, settings: Settings) -> int:
    if SessionStore(settings.home).delete(args.session_id):
        print(f"Deleted session {args.session_id}")
        return 0
    print(f"Error: Session not found: {args.session_id}", file=sys.stderr)
    return 1


def cmd_cleanup(args, settings: Settings) -> int:
    days = args.days if args.days is not None else settings.retention_days
    removed = SessionStore(settings.home).cleanup(days)
    print(f"Removed {len(removed)} finished session(s) older than {days} days")
    for session_id in removed:
        print(f"  {session_id}")
    return 0


# ── Parser ────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Auto-ML Orchestrator — Drive a CSV dataset to a deployed model with human review checkpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  # Interactive run (auto-detect target)
  auto-ml-orchestrator run data/churn.csv

  # Unattended run that pauses at the first checkpoint needing a human
  auto-ml-orchestrator run data/churn.csv --target churned --no-input
  auto-ml-orchestrator resume orc-20240101-a1b2c3

  # Rule discovery only
  auto-ml-orchestrator discover data/churn.csv
""",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--policy", default="", help="YAML file with checkpoint thresholds (env: MLOOP_POLICY_FILE)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Start a new session")
    p.add_argument("csv", help="Path to the raw CSV file")
    p.add_argument("--target", default="", help="Target column name (auto-detected if empty)")
    p.add_argument("--task-type", default="", choices=["", "binary", "multiclass", "regression"],
                   help="Task type (inferred if empty)")
    p.add_argument("--output", default="", help="Output directory (default: .mloop/outputs/<session id>)")
    p.add_argument("--threshold", type=float, default=None,
                   help="Auto-approval confidence threshold (env: MLOOP_AUTO_APPROVAL_THRESHOLD)")
    p.add_argument("--max-training-time", type=int, default=0,
                   help="Training time budget in seconds (env: MLOOP_MAX_TRAINING_TIME)")
    p.add_argument("--always-ask", action="store_true", help="Never auto-approve checkpoints")
    p.add_argument("--skip-hitl", action="store_true", help="Auto-approve every checkpoint")
    p.add_argument("--no-input", action="store_true", help="Pause instead of prompting at checkpoints")
    p.add_argument("--ask-rules", action="store_true", help="Ask about each rule that needs a decision")
    p.add_argument("--use-llm", action="store_true", help="Use the agent LLM for model recommendation")
    p.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("resume", help="Resume a paused session or retry a failed one")
    p.add_argument("session_id")
    p.add_argument("--no-input", action="store_true", help="Pause instead of prompting at checkpoints")
    p.add_argument("--ask-rules", action="store_true", help="Ask about each rule that needs a decision")
    p.add_argument("--use-llm", action="store_true", help="Use the agent LLM for model recommendation")
    p.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("list", help="List sessions")
    p.add_argument("--resumable", action="store_true", help="Only sessions that can be resumed")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="Show one session")
    p.add_argument("session_id")
    p.add_argument("--json", action="store_true", help="Print the raw session record")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("discover", help="Run progressive rule discovery on a CSV")
    p.add_argument("csv", help="Path to the CSV file")
    p.add_argument("--target", default="", help="Column to leave out of discovery")
    p.add_argument("--seed", type=int, default=42, help="Sampling seed (default: 42)")
    p.add_argument("--json", action="store_true", help="Print the result as JSON")
    p.set_defaults(func=cmd_discover)

    p = sub.add_parser("delete", help="Delete a session and its files")
    p.add_argument("session_id")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("cleanup", help="Delete finished sessions older than N days")
    p.add_argument("--days", type=int, default=None, help="Age cutoff (env: MLOOP_RETENTION_DAYS, default 30)")
    p.set_defaults(func=cmd_cleanup)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # ── Setup logging ──────────────────────────────────────────
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        settings = load_settings(args.policy or None)
        return args.func(args, settings)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 130
    except (OrchestrationError, FileNotFoundError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
