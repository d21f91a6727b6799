"""Runtime settings from ``.env`` / environment variables and an optional YAML policy file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from auto_ml_orchestrator.policy import PolicyConfig
from auto_ml_orchestrator.rules.confidence import EXCEPTION_TOLERANCE

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    home: str = "."
    """Base directory holding ``.mloop/`` (sessions, memory, outputs)."""

    auto_approval_threshold: float = 0.85
    skip_hitl: bool = False
    max_training_time: int = 300
    retention_days: int = 30

    # OpenAI-compatible agent LLM (only used with --use-llm)
    api_base: str = ""
    api_key: str = ""
    agent_model: str = ""

    policy: PolicyConfig = field(default_factory=PolicyConfig)
    exception_tolerance: float = EXCEPTION_TOLERANCE

    @property
    def llm_configured(self) -> bool:
        return bool(self.api_base and self.api_key and self.agent_model)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def load_policy_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML policy file.

    Example::

        thresholds:
          data-analysis-review: 0.9
          training-review: null      # always ask
        rules:
          exception_tolerance: 0.02
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_path}")
    with open(policy_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Policy file {policy_path} must contain a mapping")
    return data


def load_settings(policy_file: str | None = None) -> Settings:
    """Build :class:`Settings` from ``.env``, the environment and *policy_file*."""
    load_dotenv()

    endpoint = os.getenv("openAI_endpoint", "")
    settings = Settings(
        home=os.getenv("MLOOP_HOME", "."),
        auto_approval_threshold=_env_float("MLOOP_AUTO_APPROVAL_THRESHOLD", 0.85),
        skip_hitl=os.getenv("MLOOP_SKIP_HITL", "").strip().lower() in _TRUE,
        max_training_time=_env_int("MLOOP_MAX_TRAINING_TIME", 300),
        retention_days=_env_int("MLOOP_RETENTION_DAYS", 30),
        api_base=f"http://{endpoint}/v1" if endpoint and "://" not in endpoint else endpoint,
        api_key=os.getenv("auth_key", ""),
        agent_model=os.getenv("agent_LLM", ""),
    )

    policy_file = policy_file or os.getenv("MLOOP_POLICY_FILE", "")
    if policy_file:
        data = load_policy_file(policy_file)
        settings.policy = PolicyConfig.from_dict(data)
        rules = data.get("rules") or {}
        if "exception_tolerance" in rules:
            settings.exception_tolerance = float(rules["exception_tolerance"])
        logger.info("Loaded checkpoint policy from %s", policy_file)
    return settings
