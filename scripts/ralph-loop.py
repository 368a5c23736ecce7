#!/usr/bin/env python3
"""
Ralph Loop for coding agents
Runs a coding agent against a working directory, iteration after iteration,
until the task is verified complete, the budget runs out, or a failure
pattern says the session must stop.

Usage:
    python scripts/ralph-loop.py "TASK" [--cwd DIR] [--max-iterations N] [--validate]
    python scripts/ralph-loop.py --task-file specs/feature.md --require-exit-signal

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import hashlib
import json
import math
import os
import re
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

import yaml

# Project layout (relative to the loop working directory)
RALPH_DIR = ".ralph"
CONFIG_PATH = ".ralph/config.yaml"
ACTIVITY_LOG_PATH = ".ralph/activity.md"
ITERATION_LOG_DIR = ".ralph/logs"
COST_REPORT_NAME = "cost-report.json"
STOP_SEMAPHORE_PATH = ".ralph/.stop"
PLAN_FILE_NAME = "IMPLEMENTATION_PLAN.md"
AGENTS_FILE_NAME = "AGENTS.md"

# Iteration budget
MIN_AUTO_ITERATIONS = 3
MAX_AUTO_ITERATIONS = 25
MAX_ESTIMATED_ITERATIONS = 15  # cap when estimating from task text instead of a plan
FALLBACK_AUTO_ITERATIONS = 7
MIN_ITERATION_BUFFER = 2
ITERATION_BUFFER_RATIO = 0.3
DEFAULT_MAX_TURNS = 10
INTER_ITERATION_DELAY_SECONDS = 1
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 60
MAX_FEEDBACK_ROUNDS = 3  # feedback blocks carried into the next prompt

# Completion signals
DEFAULT_COMPLETION_PROMISE = "<promise>COMPLETE</promise>"
EXIT_SIGNAL_PATTERN = re.compile(r"EXIT_SIGNAL:\s*true", re.IGNORECASE)
PROMISE_TAG_PATTERN = re.compile(r"<promise>COMPLETE</promise>", re.IGNORECASE)

# Exit reasons reported in LoopResult.exit_reason
EXIT_COMPLETED = "completed"
EXIT_FILE_SIGNAL = "file_signal"
EXIT_MAX_ITERATIONS = "max_iterations"
EXIT_CIRCUIT_OPEN = "circuit_open"
EXIT_BUDGET_EXCEEDED = "budget_exceeded"
EXIT_RATE_LIMITED = "rate_limited"
EXIT_BLOCKED = "blocked"
EXIT_CANCELLED = "cancelled"
SUCCESS_EXIT_REASONS = (EXIT_COMPLETED, EXIT_FILE_SIGNAL)

# Process exit codes for the CLI
EXIT_CODE_SUCCESS = 0
EXIT_CODE_FAILURE = 1
EXIT_CODE_MAX_ITERATIONS = 2
EXIT_CODE_CIRCUIT_OPEN = 3
EXIT_CODE_BUDGET_EXCEEDED = 4
EXIT_CODE_AGENT_UNAVAILABLE = 5
EXIT_CODE_RATE_LIMITED = 6
EXIT_CODE_CANCELLED = 130
EXIT_CODES = {
    EXIT_COMPLETED: EXIT_CODE_SUCCESS,
    EXIT_FILE_SIGNAL: EXIT_CODE_SUCCESS,
    EXIT_MAX_ITERATIONS: EXIT_CODE_MAX_ITERATIONS,
    EXIT_CIRCUIT_OPEN: EXIT_CODE_CIRCUIT_OPEN,
    EXIT_BUDGET_EXCEEDED: EXIT_CODE_BUDGET_EXCEEDED,
    EXIT_RATE_LIMITED: EXIT_CODE_RATE_LIMITED,
    EXIT_BLOCKED: EXIT_CODE_FAILURE,
    EXIT_CANCELLED: EXIT_CODE_CANCELLED,
}

# Global verbose flag
VERBOSE = False

# Environment variables to strip from child agent processes
# CLAUDECODE is set by Claude Code to detect nested sessions; we must remove it
# so the loop can spawn Claude from within a Claude Code session.
STRIPPED_ENV_VARS = ["CLAUDECODE"]


def build_child_env() -> dict[str, str]:
    """Build a clean environment for spawning agent child processes."""
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    return env


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", flush=True)


class PreconditionError(Exception):
    """Raised before the first iteration when no usable agent is available."""


class LoopCancelled(Exception):
    """Raised when the loop is cancelled from outside.

    Carries the partial LoopResult so callers can still report progress.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_MAX_SAME_ERROR_COUNT = 5
DEFAULT_CIRCUIT_BREAKER_COOLDOWN = 30  # seconds before a tripped breaker half-opens
DEFAULT_MAX_CALLS_PER_MINUTE = 10
DEFAULT_MAX_CALLS_PER_HOUR = 100
DEFAULT_RATE_WARNING_THRESHOLD = 0.8
VALIDATION_CATEGORIES = ("build", "lint", "test")


def load_loop_config(config_path: Union[str, Path] = CONFIG_PATH) -> dict:
    """Load project-level loop config from .ralph/config.yaml.

    Returns the parsed dict, or an empty dict if the file doesn't exist.
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
        return config if isinstance(config, dict) else {}
    except (IOError, yaml.YAMLError):
        return {}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for tripping the circuit breaker."""
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    max_same_error_count: int = DEFAULT_MAX_SAME_ERROR_COUNT
    cooldown_seconds: float = DEFAULT_CIRCUIT_BREAKER_COOLDOWN


@dataclass(frozen=True)
class RateLimiterConfig:
    """Sliding-window call caps for agent invocations."""
    max_calls_per_minute: int = DEFAULT_MAX_CALLS_PER_MINUTE
    max_calls_per_hour: int = DEFAULT_MAX_CALLS_PER_HOUR
    warning_threshold: float = DEFAULT_RATE_WARNING_THRESHOLD

    def __post_init__(self):
        for name in ("max_calls_per_minute", "max_calls_per_hour"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1 (got {getattr(self, name)})")


@dataclass(frozen=True)
class CostTrackerConfig:
    """Pricing model and budget for a loop session.

    A max_cost of 0.0 (the default) disables budget enforcement entirely.
    """
    model: str = "default"
    max_iterations: Optional[int] = None
    max_cost: float = 0.0


@dataclass(frozen=True)
class ValidationCommand:
    """A project-health command run after each iteration."""
    name: str
    command: str
    category: str = "test"


@dataclass(frozen=True)
class LoopConfig:
    """Every knob the iteration loop reads, resolved once at loop start.

    max_iterations of None means "compute from the implementation plan".
    """
    max_iterations: Optional[int] = None
    validate: bool = False
    commit: bool = False
    push: bool = False
    pr: bool = False
    pr_title: str = ""
    auto_approve: bool = True
    max_turns: int = DEFAULT_MAX_TURNS
    completion_promise: str = ""
    require_exit_signal: bool = False
    min_completion_indicators: int = 1
    rate_limiter: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    rate_limit_wait_seconds: float = DEFAULT_RATE_LIMIT_WAIT_SECONDS
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    track_cost: bool = True
    model: str = ""
    max_cost: float = 0.0
    track_progress: bool = True
    check_file_completion: bool = False
    validation_commands: tuple = ()


def infer_validation_category(name: str) -> str:
    """Map a command name like 'typecheck' or 'unit-test' onto a category."""
    lowered = name.lower()
    if "lint" in lowered or "format" in lowered:
        return "lint"
    if "test" in lowered or "spec" in lowered:
        return "test"
    return "build"


def parse_validation_commands(entries) -> list[ValidationCommand]:
    """Parse the validation_commands list from the YAML config.

    Accepts either mappings ({name, command, category}) or plain command
    strings. Malformed entries are skipped with a warning.
    """
    commands: list[ValidationCommand] = []
    if not isinstance(entries, list):
        return commands
    for entry in entries:
        if isinstance(entry, str) and entry.strip():
            name = entry.split()[-1] if len(entry.split()) > 1 else entry.strip()
            commands.append(ValidationCommand(
                name=name, command=entry.strip(), category=infer_validation_category(name),
            ))
        elif isinstance(entry, dict) and entry.get("command"):
            name = str(entry.get("name") or entry["command"])
            category = entry.get("category") or infer_validation_category(name)
            if category not in VALIDATION_CATEGORIES:
                print(f"[CONFIG] Unknown validation category '{category}' for {name}, using 'build'")
                category = "build"
            commands.append(ValidationCommand(name=name, command=str(entry["command"]), category=category))
        else:
            print(f"[CONFIG] Ignoring malformed validation command: {entry!r}")
    return commands


def build_loop_config(file_config: Optional[dict] = None, **overrides) -> LoopConfig:
    """Resolve a LoopConfig from YAML config and CLI overrides.

    Priority: CLI overrides (non-None values) > YAML file > defaults.
    Raises ValueError for values that cannot be used, such as a rate cap
    below one call.
    """
    merged = dict(file_config or {})
    merged.update({key: value for key, value in overrides.items() if value is not None})

    circuit_breaker = CircuitBreakerConfig(
        max_consecutive_failures=int(merged.get("max_consecutive_failures", DEFAULT_MAX_CONSECUTIVE_FAILURES)),
        max_same_error_count=int(merged.get("max_same_error_count", DEFAULT_MAX_SAME_ERROR_COUNT)),
        cooldown_seconds=float(merged.get("circuit_breaker_cooldown", DEFAULT_CIRCUIT_BREAKER_COOLDOWN)),
    )
    rate_limiter = RateLimiterConfig(
        max_calls_per_minute=int(merged.get("rate_limit_per_minute", DEFAULT_MAX_CALLS_PER_MINUTE)),
        max_calls_per_hour=int(merged.get("rate_limit_per_hour", DEFAULT_MAX_CALLS_PER_HOUR)),
        warning_threshold=float(merged.get("rate_limit_warning", DEFAULT_RATE_WARNING_THRESHOLD)),
    )
    max_iterations = merged.get("max_iterations")
    return LoopConfig(
        max_iterations=int(max_iterations) if max_iterations else None,
        validate=bool(merged.get("validate", False)),
        commit=bool(merged.get("commit", False)),
        push=bool(merged.get("push", False)),
        pr=bool(merged.get("pr", False)),
        pr_title=str(merged.get("pr_title", "")),
        auto_approve=bool(merged.get("auto_approve", True)),
        max_turns=int(merged.get("max_turns", DEFAULT_MAX_TURNS)),
        completion_promise=str(merged.get("completion_promise", "")),
        require_exit_signal=bool(merged.get("require_exit_signal", False)),
        min_completion_indicators=int(merged.get("min_completion_indicators", 1)),
        rate_limiter=rate_limiter,
        rate_limit_wait_seconds=float(merged.get("rate_limit_wait", DEFAULT_RATE_LIMIT_WAIT_SECONDS)),
        circuit_breaker=circuit_breaker,
        track_cost=bool(merged.get("track_cost", True)),
        model=str(merged.get("model", "")),
        max_cost=float(merged.get("max_cost", 0.0)),
        track_progress=bool(merged.get("track_progress", True)),
        check_file_completion=bool(merged.get("check_file_completion", False)),
        validation_commands=tuple(parse_validation_commands(merged.get("validation_commands", []))),
    )


# =============================================================================
# COST TRACKER
# =============================================================================

PROSE_CHARS_PER_TOKEN = 4.0
CODE_CHARS_PER_TOKEN = 3.5
CODE_INDICATOR_PATTERN = re.compile(
    r"```|function|const |let |var |import |export |class |def |async |await "
)
CODE_PUNCTUATION = frozenset("{}();[]<>=")
CODE_PUNCTUATION_DENSITY = 0.05
TOKENS_PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens for one model tier."""
    name: str
    input_per_million: float
    output_per_million: float
    cache_write_per_million: Optional[float] = None  # 1.25x input where published
    cache_read_per_million: Optional[float] = None   # 0.1x input where published


# Approximate list prices; unknown models fall back to "default".
MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-3-opus": ModelPricing("Claude 3 Opus", 15.0, 75.0, 18.75, 1.5),
    "claude-3-sonnet": ModelPricing("Claude 3.5 Sonnet", 3.0, 15.0, 3.75, 0.3),
    "claude-3-haiku": ModelPricing("Claude 3.5 Haiku", 0.25, 1.25, 0.3125, 0.025),
    "opus": ModelPricing("Claude Opus", 15.0, 75.0, 18.75, 1.5),
    "sonnet": ModelPricing("Claude Sonnet", 3.0, 15.0, 3.75, 0.3),
    "haiku": ModelPricing("Claude Haiku", 0.8, 4.0, 1.0, 0.08),
    "gpt-4": ModelPricing("GPT-4", 30.0, 60.0),
    "gpt-4-turbo": ModelPricing("GPT-4 Turbo", 10.0, 30.0),
    "default": ModelPricing("Default", 3.0, 15.0),
}
MODEL_ALIASES = ("opus", "sonnet", "haiku")


def get_model_pricing(model: str) -> ModelPricing:
    """Look up pricing by exact key, then by tier alias, then the default tier."""
    key = (model or "").lower()
    if key in MODEL_PRICING:
        return MODEL_PRICING[key]
    for alias in MODEL_ALIASES:
        if alias in key:
            return MODEL_PRICING[alias]
    return MODEL_PRICING["default"]


@dataclass
class TokenUsage:
    """Token usage reported by the agent for a single invocation."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost_usd: float = 0.0
    num_turns: int = 0


def parse_token_usage(result_data: dict) -> TokenUsage:
    """Extract token usage from a Claude CLI result JSON object.

    Returns a TokenUsage populated from the result data, with zeros for
    missing fields.
    """
    usage = result_data.get("usage") or {}
    return TokenUsage(
        input_tokens=usage.get("input_tokens", 0) or 0,
        output_tokens=usage.get("output_tokens", 0) or 0,
        cache_creation_tokens=usage.get("cache_creation_input_tokens", 0) or 0,
        cache_read_tokens=usage.get("cache_read_input_tokens", 0) or 0,
        total_cost_usd=result_data.get("total_cost_usd", 0.0) or 0.0,
        num_turns=result_data.get("num_turns", 0) or 0,
    )


@dataclass
class TokenEstimate:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CostEstimate:
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0


@dataclass
class CacheMetrics:
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cache_savings: float = 0.0  # USD saved by cache reads vs full-price input


@dataclass
class IterationCost:
    iteration: int
    tokens: TokenEstimate
    cost: CostEstimate
    cache: Optional[CacheMetrics] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class CostStats:
    total_iterations: int
    total_tokens: TokenEstimate
    total_cost: CostEstimate
    avg_tokens_per_iteration: TokenEstimate
    avg_cost_per_iteration: CostEstimate
    projected_cost: Optional[CostEstimate] = None
    total_cache_savings: float = 0.0
    iterations: list = field(default_factory=list)


@dataclass
class BudgetStatus:
    """Returned by CostTracker.is_over_budget() once the ceiling is reached."""
    max_cost: float
    current_cost: float


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Roughly 4 characters per token for prose; code packs more tokens per
    character, so text that looks like code uses 3.5.
    """
    if not text:
        return 0
    punctuation = sum(1 for ch in text if ch in CODE_PUNCTUATION)
    looks_like_code = (
        CODE_INDICATOR_PATTERN.search(text) is not None
        or punctuation / len(text) > CODE_PUNCTUATION_DENSITY
    )
    chars_per_token = CODE_CHARS_PER_TOKEN if looks_like_code else PROSE_CHARS_PER_TOKEN
    return math.ceil(len(text) / chars_per_token)


def calculate_cost(tokens: TokenEstimate, pricing: ModelPricing) -> CostEstimate:
    """Price a token estimate with the given model tier."""
    input_cost = tokens.input_tokens / TOKENS_PER_MILLION * pricing.input_per_million
    output_cost = tokens.output_tokens / TOKENS_PER_MILLION * pricing.output_per_million
    return CostEstimate(input_cost=input_cost, output_cost=output_cost, total_cost=input_cost + output_cost)


def format_cost(cost: float) -> str:
    """Format a USD amount, switching to cents below one cent."""
    if cost < 0.01:
        return f"{cost * 100:.2f}¢"
    if cost < 1:
        return f"${cost:.3f}"
    return f"${cost:.2f}"


def format_tokens(tokens: int) -> str:
    """Format a token count with K/M suffixes."""
    if tokens < 1000:
        return str(tokens)
    if tokens < 1_000_000:
        return f"{tokens / 1000:.1f}K"
    return f"{tokens / 1_000_000:.2f}M"


class CostTracker:
    """Accumulates estimated token usage and cost across loop iterations.

    Totals only ever grow within a session; reset() starts over.
    """

    def __init__(self, config: Optional[CostTrackerConfig] = None) -> None:
        self.config = config or CostTrackerConfig()
        self.pricing = get_model_pricing(self.config.model)
        self.iterations: list[IterationCost] = []

    def _append(self, tokens: TokenEstimate, cache: Optional[CacheMetrics] = None) -> IterationCost:
        iteration_cost = IterationCost(
            iteration=len(self.iterations) + 1,
            tokens=tokens,
            cost=calculate_cost(tokens, self.pricing),
            cache=cache,
        )
        self.iterations.append(iteration_cost)
        return iteration_cost

    def record_iteration(self, input_text: str, output_text: str) -> IterationCost:
        """Record an iteration using the character-count heuristic."""
        tokens = TokenEstimate(
            input_tokens=estimate_tokens(input_text),
            output_tokens=estimate_tokens(output_text),
        )
        return self._append(tokens)

    def record_iteration_with_usage(self, usage: TokenUsage) -> IterationCost:
        """Record an iteration with exact usage reported by the agent.

        Reported token counts replace the heuristic. Cache savings are what
        the cache-read tokens would have cost at the full input rate minus
        what they cost at the cache-read rate.
        """
        tokens = TokenEstimate(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)
        cache = None
        if usage.cache_creation_tokens or usage.cache_read_tokens:
            full_price = usage.cache_read_tokens / TOKENS_PER_MILLION * self.pricing.input_per_million
            if self.pricing.cache_read_per_million is not None:
                cached_price = usage.cache_read_tokens / TOKENS_PER_MILLION * self.pricing.cache_read_per_million
            else:
                cached_price = full_price
            cache = CacheMetrics(
                cache_creation_tokens=usage.cache_creation_tokens,
                cache_read_tokens=usage.cache_read_tokens,
                cache_savings=full_price - cached_price,
            )
        return self._append(tokens, cache)

    def get_total_cost(self) -> float:
        return sum(entry.cost.total_cost for entry in self.iterations)

    def get_stats(self) -> CostStats:
        """Totals, per-iteration averages and, once three iterations are in,
        a linear projection over the remaining iteration budget."""
        count = len(self.iterations)
        if count == 0:
            return CostStats(
                total_iterations=0,
                total_tokens=TokenEstimate(),
                total_cost=CostEstimate(),
                avg_tokens_per_iteration=TokenEstimate(),
                avg_cost_per_iteration=CostEstimate(),
            )

        total_tokens = TokenEstimate(
            input_tokens=sum(entry.tokens.input_tokens for entry in self.iterations),
            output_tokens=sum(entry.tokens.output_tokens for entry in self.iterations),
        )
        total_cost = CostEstimate(
            input_cost=sum(entry.cost.input_cost for entry in self.iterations),
            output_cost=sum(entry.cost.output_cost for entry in self.iterations),
            total_cost=self.get_total_cost(),
        )
        avg_tokens = TokenEstimate(
            input_tokens=round(total_tokens.input_tokens / count),
            output_tokens=round(total_tokens.output_tokens / count),
        )
        avg_cost = CostEstimate(
            input_cost=total_cost.input_cost / count,
            output_cost=total_cost.output_cost / count,
            total_cost=total_cost.total_cost / count,
        )

        projected = None
        if self.config.max_iterations and count >= 3:
            remaining = self.config.max_iterations - count
            if remaining > 0:
                projected = CostEstimate(
                    input_cost=total_cost.input_cost + avg_cost.input_cost * remaining,
                    output_cost=total_cost.output_cost + avg_cost.output_cost * remaining,
                    total_cost=total_cost.total_cost + avg_cost.total_cost * remaining,
                )

        return CostStats(
            total_iterations=count,
            total_tokens=total_tokens,
            total_cost=total_cost,
            avg_tokens_per_iteration=avg_tokens,
            avg_cost_per_iteration=avg_cost,
            projected_cost=projected,
            total_cache_savings=sum(entry.cache.cache_savings for entry in self.iterations if entry.cache),
            iterations=list(self.iterations),
        )

    def is_over_budget(self) -> Optional[BudgetStatus]:
        """Return a BudgetStatus once accumulated cost reaches max_cost, else None."""
        if not self.config.max_cost or self.config.max_cost <= 0:
            return None
        total = self.get_total_cost()
        if total >= self.config.max_cost:
            return BudgetStatus(max_cost=self.config.max_cost, current_cost=total)
        return None

    def get_last_iteration_cost(self) -> Optional[IterationCost]:
        return self.iterations[-1] if self.iterations else None

    def reset(self) -> None:
        self.iterations = []

    def format_stats(self) -> str:
        """Format stats for console display."""
        stats = self.get_stats()
        if stats.total_iterations == 0:
            return "No iterations recorded"
        lines = [
            f"Tokens: {format_tokens(stats.total_tokens.total_tokens)} "
            f"({format_tokens(stats.total_tokens.input_tokens)} in / "
            f"{format_tokens(stats.total_tokens.output_tokens)} out)",
            f"Cost: {format_cost(stats.total_cost.total_cost)} "
            f"({format_cost(stats.avg_cost_per_iteration.total_cost)}/iteration avg)",
        ]
        if stats.total_cache_savings > 0:
            lines.append(f"Cache savings: {format_cost(stats.total_cache_savings)}")
        if stats.projected_cost:
            lines.append(f"Projected max cost: {format_cost(stats.projected_cost.total_cost)}")
        return "\n".join(lines)

    def format_summary(self) -> str:
        """Format a markdown cost table for the activity log."""
        stats = self.get_stats()
        if stats.total_iterations == 0:
            return ""
        lines = [
            "## Cost Summary",
            "",
            "| Metric | Value |",
            "|--------|-------|",
            f"| Total Iterations | {stats.total_iterations} |",
            f"| Total Tokens | {format_tokens(stats.total_tokens.total_tokens)} |",
            f"| Input Tokens | {format_tokens(stats.total_tokens.input_tokens)} |",
            f"| Output Tokens | {format_tokens(stats.total_tokens.output_tokens)} |",
            f"| Total Cost | {format_cost(stats.total_cost.total_cost)} |",
            f"| Avg Cost/Iteration | {format_cost(stats.avg_cost_per_iteration.total_cost)} |",
        ]
        if stats.total_cache_savings > 0:
            lines.append(f"| Cache Savings | {format_cost(stats.total_cache_savings)} |")
        if stats.projected_cost:
            lines.append(f"| Projected Max Cost | {format_cost(stats.projected_cost.total_cost)} |")
        return "\n".join(lines) + "\n"

    def write_report(self, report_path: Union[str, Path]) -> Optional[Path]:
        """Write a JSON cost report with per-iteration breakdowns.

        Returns the report path, or None if nothing was recorded.
        """
        if not self.iterations:
            return None
        stats = self.get_stats()
        report = {
            "model": self.config.model,
            "pricing": self.pricing.name,
            "completed_at": datetime.now().isoformat(),
            "total": {
                "cost_usd": stats.total_cost.total_cost,
                "input_tokens": stats.total_tokens.input_tokens,
                "output_tokens": stats.total_tokens.output_tokens,
                "cache_savings_usd": stats.total_cache_savings,
            },
            "projected_cost_usd": stats.projected_cost.total_cost if stats.projected_cost else None,
            "iterations": [
                {
                    "iteration": entry.iteration,
                    "timestamp": entry.timestamp.isoformat(),
                    "input_tokens": entry.tokens.input_tokens,
                    "output_tokens": entry.tokens.output_tokens,
                    "cost_usd": entry.cost.total_cost,
                    "cache_read_tokens": entry.cache.cache_read_tokens if entry.cache else 0,
                    "cache_creation_tokens": entry.cache.cache_creation_tokens if entry.cache else 0,
                }
                for entry in self.iterations
            ],
        }
        path = Path(report_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(report, f, indent=2)
        return path


# =============================================================================
# RATE LIMITER
# =============================================================================

MINUTE_SECONDS = 60
HOUR_SECONDS = 60 * 60
RATE_WAIT_BUFFER_SECONDS = 0.1
MAX_RATE_POLL_SECONDS = 5


@dataclass
class RateLimiterState:
    call_timestamps: list
    config: RateLimiterConfig


@dataclass
class RateLimiterStats:
    calls_this_minute: int
    calls_this_hour: int
    minute_limit: int
    hour_limit: int
    is_warning: bool
    is_blocked: bool
    next_available_at: Optional[float] = None


class RateLimiter:
    """Sliding-window admission control over one-minute and one-hour windows.

    Keeps raw call timestamps and prunes anything older than an hour on every
    operation. Not safe for concurrent mutation: share one instance only
    between loops that run one after another.
    """

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._sleep = sleep
        self.call_timestamps: list[float] = []

    def _cleanup(self) -> None:
        cutoff = self._clock() - HOUR_SECONDS
        self.call_timestamps = [ts for ts in self.call_timestamps if ts > cutoff]

    def _calls_in_window(self, window_seconds: float) -> list[float]:
        window_start = self._clock() - window_seconds
        return [ts for ts in self.call_timestamps if ts > window_start]

    def can_make_call(self) -> bool:
        """Check whether a call is allowed right now (does not record it)."""
        self._cleanup()
        return (
            len(self._calls_in_window(MINUTE_SECONDS)) < self.config.max_calls_per_minute
            and len(self._calls_in_window(HOUR_SECONDS)) < self.config.max_calls_per_hour
        )

    def record_call(self) -> None:
        self.call_timestamps.append(self._clock())
        self._cleanup()

    def try_acquire(self) -> bool:
        """Check then record. Only safe with a single caller per limiter."""
        if not self.can_make_call():
            return False
        self.record_call()
        return True

    def get_wait_time(self) -> float:
        """Seconds until the oldest blocking call leaves its window (0 if not blocked)."""
        self._cleanup()
        now = self._clock()
        minute_calls = self._calls_in_window(MINUTE_SECONDS)
        if len(minute_calls) >= self.config.max_calls_per_minute:
            return min(minute_calls) + MINUTE_SECONDS - now + RATE_WAIT_BUFFER_SECONDS
        hour_calls = self._calls_in_window(HOUR_SECONDS)
        if len(hour_calls) >= self.config.max_calls_per_hour:
            return min(hour_calls) + HOUR_SECONDS - now + RATE_WAIT_BUFFER_SECONDS
        return 0.0

    def wait_and_acquire(
        self,
        max_wait_seconds: float = 5 * MINUTE_SECONDS,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Poll in steps of at most five seconds until a call is acquired.

        Returns False if max_wait_seconds elapses first, or as soon as
        should_stop() returns True between polls.
        """
        start = self._clock()
        while True:
            if self.try_acquire():
                return True
            remaining = max_wait_seconds - (self._clock() - start)
            if remaining <= 0:
                return False
            if should_stop is not None and should_stop():
                return False
            delay = min(max(self.get_wait_time(), RATE_WAIT_BUFFER_SECONDS), MAX_RATE_POLL_SECONDS, remaining)
            verbose_log(f"Rate limited, sleeping {delay:.1f}s", "RATE LIMIT")
            self._sleep(delay)

    def get_stats(self) -> RateLimiterStats:
        self._cleanup()
        minute_count = len(self._calls_in_window(MINUTE_SECONDS))
        hour_count = len(self._calls_in_window(HOUR_SECONDS))
        threshold = self.config.warning_threshold
        is_warning = (
            minute_count / self.config.max_calls_per_minute >= threshold
            or hour_count / self.config.max_calls_per_hour >= threshold
        )
        wait_time = self.get_wait_time()
        return RateLimiterStats(
            calls_this_minute=minute_count,
            calls_this_hour=hour_count,
            minute_limit=self.config.max_calls_per_minute,
            hour_limit=self.config.max_calls_per_hour,
            is_warning=is_warning,
            is_blocked=not self.can_make_call(),
            next_available_at=self._clock() + wait_time if wait_time > 0 else None,
        )

    def format_stats(self) -> str:
        stats = self.get_stats()
        parts = [
            f"Minute: {stats.calls_this_minute}/{stats.minute_limit} "
            f"({round(stats.calls_this_minute / stats.minute_limit * 100)}%)",
            f"Hour: {stats.calls_this_hour}/{stats.hour_limit} "
            f"({round(stats.calls_this_hour / stats.hour_limit * 100)}%)",
        ]
        if stats.is_blocked and stats.next_available_at:
            parts.append(f"Blocked - retry in {math.ceil(stats.next_available_at - self._clock())}s")
        elif stats.is_warning:
            parts.append("Warning: Approaching rate limit")
        return " | ".join(parts)

    def get_state(self) -> RateLimiterState:
        self._cleanup()
        return RateLimiterState(call_timestamps=list(self.call_timestamps), config=self.config)

    def reset(self) -> None:
        self.call_timestamps = []

    def update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

MAX_NORMALIZED_ERROR_LENGTH = 500
ERROR_HASH_LENGTH = 8
LAST_ERROR_EXCERPT_LENGTH = 300

# Applied in order. Timestamps go first: "14:07:39" inside a timestamp would
# otherwise be mangled by the :line:col rule.
ERROR_NORMALIZATION_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"), "<TS>"),
    (re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"), "<UUID>"),
    (re.compile(r"0x[0-9a-fA-F]+"), "<HEX>"),
    (re.compile(r"at\s+\S+\s+\(\S+:\d+:\d+\)"), "<FRAME>"),
    (re.compile(r'File "[^"]+", line \d+'), "<FRAME>"),
    (re.compile(r":\d+(?::\d+)?\b"), ":<N>"),
    (re.compile(r"(?<![\w.~])(?:[A-Za-z]:\\|/)(?:[^\s:/\\'\"()<>]+[/\\])+[^\s:/\\'\"()<>]*"), "<PATH>"),
]


def normalize_error(error_text: str) -> str:
    """Strip volatile substrings so one logical error maps to one bucket."""
    normalized = error_text or ""
    for pattern, replacement in ERROR_NORMALIZATION_RULES:
        normalized = pattern.sub(replacement, normalized)
    normalized = re.sub(r"\s+", " ", normalized.lower()).strip()
    return normalized[:MAX_NORMALIZED_ERROR_LENGTH]


def hash_error(error_text: str) -> str:
    return hashlib.md5(normalize_error(error_text).encode("utf-8")).hexdigest()[:ERROR_HASH_LENGTH]


@dataclass
class CircuitBreakerState:
    consecutive_failures: int = 0
    total_failures: int = 0
    error_history: dict = field(default_factory=dict)  # error hash -> count
    is_open: bool = False
    opened_at: Optional[float] = None
    cooldown_seconds: float = DEFAULT_CIRCUIT_BREAKER_COOLDOWN
    last_error: str = ""


class CircuitBreaker:
    """Stops the loop when failures pile up.

    Trips on too many consecutive failures, or on the same normalized error
    recurring too often even with successes in between. A tripped breaker
    half-opens once the cooldown has passed; reset() clears everything.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitBreakerState(cooldown_seconds=self.config.cooldown_seconds)

    def record_success(self) -> None:
        """Reset consecutive failures. Error history is kept so a flapping
        error can still trip the breaker."""
        self.state.consecutive_failures = 0

    def record_failure(self, error_text: str = "") -> bool:
        """Record a failed iteration. Returns True if the breaker tripped."""
        self.state.consecutive_failures += 1
        self.state.total_failures += 1
        self.state.last_error = (error_text or "").strip()[:LAST_ERROR_EXCERPT_LENGTH]

        error_hash = hash_error(error_text)
        self.state.error_history[error_hash] = self.state.error_history.get(error_hash, 0) + 1
        verbose_log(
            f"Failure recorded: hash={error_hash} count={self.state.error_history[error_hash]} "
            f"consecutive={self.state.consecutive_failures}",
            "CIRCUIT BREAKER",
        )

        if self._should_trip():
            self.state.is_open = True
            self.state.opened_at = self._clock()
            print(f"\n[CIRCUIT BREAKER] Tripped: {self.get_trip_reason()}", flush=True)
            return True
        return False

    def _should_trip(self) -> bool:
        if self.state.consecutive_failures >= self.config.max_consecutive_failures:
            return True
        return any(count >= self.config.max_same_error_count for count in self.state.error_history.values())

    def is_tripped(self) -> bool:
        """True while open and inside the cooldown window."""
        if not self.state.is_open:
            return False
        if self.state.opened_at is not None:
            elapsed = self._clock() - self.state.opened_at
            if elapsed >= self.config.cooldown_seconds:
                print(f"[CIRCUIT BREAKER] Cooldown elapsed ({self.config.cooldown_seconds:.0f}s), allowing one retry")
                self.state.is_open = False
                return False
        return True

    def get_trip_reason(self) -> Optional[str]:
        if not self.state.is_open:
            return None
        if self.state.consecutive_failures >= self.config.max_consecutive_failures:
            return (
                f"{self.state.consecutive_failures} consecutive failures "
                f"(threshold: {self.config.max_consecutive_failures})"
            )
        max_count = max(self.state.error_history.values(), default=0)
        if max_count >= self.config.max_same_error_count:
            return f"Same error repeated {max_count} times (threshold: {self.config.max_same_error_count})"
        return "Circuit breaker tripped"

    def reset(self) -> None:
        self.state = CircuitBreakerState(cooldown_seconds=self.config.cooldown_seconds)

    def get_state(self) -> CircuitBreakerState:
        return replace(self.state, error_history=dict(self.state.error_history))

    def get_stats(self) -> dict:
        return {
            "consecutive_failures": self.state.consecutive_failures,
            "total_failures": self.state.total_failures,
            "unique_errors": len(self.state.error_history),
            "is_open": self.state.is_open,
        }


# =============================================================================
# VALIDATION RUNNER
# =============================================================================

VALIDATION_TIMEOUT_SECONDS = 5 * 60
MAX_VALIDATION_EXCERPT = 2000
COMPRESSED_FEEDBACK_LIMIT = 2000
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
AGENTS_FILE_COMMAND_NAMES = ("build", "lint", "test")
PACKAGE_JSON_SCRIPTS = ("build", "typecheck", "lint", "test")
LOCKFILE_PACKAGE_MANAGERS = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
]
NPM_PLACEHOLDER_TEST = "no test specified"  # what `npm init` writes
PYTHON_PROJECT_FILES = ("pyproject.toml", "setup.py", "setup.cfg")
CATEGORY_ORDER = {"build": 0, "lint": 1, "test": 2}


@dataclass
class CommandOutput:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@dataclass
class ValidationResult:
    name: str
    command: str
    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: int = 0
    category: str = "test"


@dataclass
class HealthCheck:
    """Result of a standalone health check over the project."""
    mode: str
    results: list
    feedback: str
    blocking: bool


def run_shell_command(command: str, cwd: str, timeout: float = VALIDATION_TIMEOUT_SECONDS) -> CommandOutput:
    """Run a validation command through the shell.

    A timeout is reported as exit code 124 and a launch failure as 127 so the
    caller always gets a CommandOutput back.
    """
    verbose_log(f"Running: {command} (cwd={cwd})", "VALIDATION")
    try:
        proc = subprocess.run(
            command, shell=True, cwd=cwd, capture_output=True, text=True,
            timeout=timeout, env=build_child_env(),
        )
        return CommandOutput(exit_code=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode("utf-8", "replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        return CommandOutput(exit_code=124, stdout=stdout, stderr=f"Command timed out after {timeout:.0f}s")
    except OSError as e:
        return CommandOutput(exit_code=127, stderr=f"Failed to run command: {e}")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text or "")


def build_error_excerpt(output: CommandOutput, limit: int = MAX_VALIDATION_EXCERPT) -> str:
    """Tail of the combined command output with ANSI codes stripped.

    Never empty: a silent failure still reports its exit code.
    """
    combined = strip_ansi("\n".join(part for part in (output.stdout, output.stderr) if part)).strip()
    if not combined:
        return f"Command failed with exit code {output.exit_code} and produced no output"
    if len(combined) > limit:
        return "..." + combined[-limit:]
    return combined


def detect_package_manager(cwd: Union[str, Path]) -> str:
    base = Path(cwd)
    for lockfile, manager in LOCKFILE_PACKAGE_MANAGERS:
        if (base / lockfile).exists():
            return manager
    return "npm"


def package_run_command(manager: str, script: str) -> str:
    if manager == "yarn":
        return f"yarn {script}"
    return f"{manager} run {script}"


def _commands_from_agents_file(base: Path) -> list[ValidationCommand]:
    agents_file = base / AGENTS_FILE_NAME
    if not agents_file.exists():
        return []
    try:
        content = agents_file.read_text()
    except OSError:
        return []
    commands = []
    for name in AGENTS_FILE_COMMAND_NAMES:
        match = re.search(rf"[-*]\s*\*?\*?{name}\*?\*?[:\s]+`([^`]+)`", content, re.IGNORECASE)
        if match:
            commands.append(ValidationCommand(name=name, command=match.group(1).strip(), category=name))
    return commands


def _commands_from_package_json(base: Path) -> list[ValidationCommand]:
    package_file = base / "package.json"
    if not package_file.exists():
        return []
    try:
        with open(package_file, "r") as f:
            scripts = (json.load(f) or {}).get("scripts") or {}
    except (IOError, json.JSONDecodeError):
        return []
    manager = detect_package_manager(base)
    commands = []
    for script in PACKAGE_JSON_SCRIPTS:
        if script == "test" and NPM_PLACEHOLDER_TEST in str(scripts.get(script, "")):
            continue
        if script in scripts:
            commands.append(ValidationCommand(
                name=script,
                command=package_run_command(manager, script),
                category=infer_validation_category(script),
            ))
    return commands


def _ruff_configured(base: Path) -> bool:
    if (base / "ruff.toml").exists() or (base / ".ruff.toml").exists():
        return True
    pyproject = base / "pyproject.toml"
    try:
        return pyproject.exists() and "[tool.ruff" in pyproject.read_text()
    except OSError:
        return False


def _commands_from_python_project(base: Path) -> list[ValidationCommand]:
    if not any((base / name).exists() for name in PYTHON_PROJECT_FILES):
        return []
    commands = []
    if _ruff_configured(base):
        commands.append(ValidationCommand(name="lint", command="ruff check .", category="lint"))
    if (base / "tests").is_dir():
        commands.append(ValidationCommand(name="test", command="python -m pytest", category="test"))
    return commands


def detect_validation_commands(
    cwd: Union[str, Path], configured: tuple = ()
) -> list[ValidationCommand]:
    """Work out which health commands apply to a project.

    Sources in priority order: explicit config, AGENTS.md bullets,
    package.json scripts, then Python project conventions. The first source
    that yields anything wins. Commands come back ordered build, lint, test.
    """
    if configured:
        commands = list(configured)
    else:
        base = Path(cwd)
        commands = []
        for source in (_commands_from_agents_file, _commands_from_package_json, _commands_from_python_project):
            commands = source(base)
            if commands:
                break
    return sorted(commands, key=lambda c: CATEGORY_ORDER.get(c.category, len(CATEGORY_ORDER)))


def run_validation(
    command: ValidationCommand,
    cwd: str,
    run_command: Callable[..., CommandOutput] = run_shell_command,
) -> ValidationResult:
    output = run_command(command.command, cwd)
    success = output.exit_code == 0
    return ValidationResult(
        name=command.name,
        command=command.command,
        success=success,
        output=strip_ansi(output.stdout),
        error=None if success else build_error_excerpt(output),
        exit_code=output.exit_code,
        category=command.category,
    )


def run_all_validations(
    commands: list,
    cwd: str,
    stop_on_failure: bool = True,
    run_command: Callable[..., CommandOutput] = run_shell_command,
) -> list[ValidationResult]:
    """Run each command in order; stop after the first failure unless
    stop_on_failure is False."""
    results = []
    for command in commands:
        print(f"[VALIDATION] Running {command.name}: {command.command}", flush=True)
        result = run_validation(command, cwd, run_command)
        status = "passed" if result.success else f"FAILED (exit {result.exit_code})"
        print(f"[VALIDATION] {command.name} {status}", flush=True)
        results.append(result)
        if not result.success and stop_on_failure:
            break
    return results


def format_validation_feedback(results: list[ValidationResult]) -> str:
    """Turn failed validations into feedback for the next agent prompt."""
    failed = [r for r in results if not r.success]
    if not failed:
        return ""
    lines = ["## Validation Failed", ""]
    for result in failed:
        lines.append(f"### {result.name} (`{result.command}`)")
        lines.append("```")
        lines.append(result.error or "Unknown error")
        lines.append("```")
        lines.append("")
    lines.append("Please fix the above issues before continuing.")
    return "\n".join(lines)


def compress_validation_feedback(feedback: str, limit: int = COMPRESSED_FEEDBACK_LIMIT) -> str:
    """Shrink feedback carried across several iterations.

    Drops blank lines inside code fences and keeps the head and tail so the
    first error and the summary line both survive.
    """
    if len(feedback) <= limit:
        return feedback
    lines = [line for line in feedback.splitlines() if line.strip()]
    compact = "\n".join(lines)
    if len(compact) <= limit:
        return compact
    half = (limit - 20) // 2
    return compact[:half] + "\n... (truncated) ...\n" + compact[-half:]


class ValidationRunner:
    """Runs the project's health commands after each iteration."""

    def __init__(
        self,
        cwd: str,
        commands: Optional[list] = None,
        run_command: Callable[..., CommandOutput] = run_shell_command,
        stop_on_failure: bool = True,
    ) -> None:
        self.cwd = cwd
        self.commands = list(commands) if commands is not None else detect_validation_commands(cwd)
        self.run_command = run_command
        self.stop_on_failure = stop_on_failure

    def run(self) -> list[ValidationResult]:
        return run_all_validations(self.commands, self.cwd, self.stop_on_failure, self.run_command)

    def feedback(self, results: list[ValidationResult]) -> str:
        return format_validation_feedback(results)


def select_validation_commands(
    cwd: str, mode: str = "scan", custom_command: str = ""
) -> tuple[str, list[ValidationCommand]]:
    """Pick commands for a standalone health check.

    Modes:
      custom   - run custom_command as a single build step.
      activity - re-run only the validations that failed in the most recent
                 failing iteration of the activity log; falls back to scan.
      scan     - everything detect_validation_commands finds.
    Returns the effective mode and the command list.
    """
    if mode == "custom" and custom_command:
        return "custom", [ValidationCommand(name="custom", command=custom_command, category="build")]
    detected = detect_validation_commands(cwd)
    if mode == "activity":
        failed_names = parse_last_failed_validations(cwd)
        if failed_names:
            selected = [c for c in detected if any(c.name in name or name in c.name for name in failed_names)]
            if selected:
                return "activity", selected
        print("[VALIDATION] No failed validations in activity log, scanning project")
    return "scan", detected


def run_health_check(
    cwd: str,
    mode: str = "scan",
    custom_command: str = "",
    run_command: Callable[..., CommandOutput] = run_shell_command,
) -> HealthCheck:
    """Run a standalone health check outside the loop.

    Custom commands run in full; scanned commands stop at the first failure.
    blocking is True when any command failed.
    """
    effective_mode, commands = select_validation_commands(cwd, mode, custom_command)
    runner = ValidationRunner(cwd, commands, run_command=run_command, stop_on_failure=effective_mode != "custom")
    results = runner.run()
    return HealthCheck(
        mode=effective_mode,
        results=results,
        feedback=format_validation_feedback(results),
        blocking=any(not r.success for r in results),
    )


# =============================================================================
# ACTIVITY LOG
# =============================================================================

ACTIVITY_LOG_HEADER = """# Ralph Activity Log

This file tracks the progress of the Ralph autonomous coding loop.

## Task
{task}

## Iterations

"""
STATUS_BADGES = {
    "started": "🔄 Started",
    "completed": "✅ Completed",
    "failed": "❌ Failed",
    "blocked": "🚫 Blocked",
    "validation_failed": "⚠️ Validation Failed",
    "partial": "🔁 In Progress",
}
ACTIVITY_SUMMARY_LENGTH = 200
ITERATION_SECTION_PATTERN = re.compile(r"^### Iteration", re.MULTILINE)
FAILED_VALIDATION_LINE = re.compile(r"^- ❌\s+(.+?)\s*$", re.MULTILINE)


@dataclass
class ActivityEntry:
    iteration: int
    status: str
    summary: str
    duration_seconds: float = 0.0
    cost: Optional[CostEstimate] = None
    tokens: Optional[TokenEstimate] = None
    validation_results: list = field(default_factory=list)
    commit: str = ""
    timestamp: datetime = field(default_factory=datetime.now)


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


class ActivityLog:
    """Markdown progress log at .ralph/activity.md, one section per iteration."""

    def __init__(self, cwd: str, task: str = "") -> None:
        self.path = Path(cwd) / ACTIVITY_LOG_PATH
        self.task = task

    def initialize(self) -> None:
        """Create the log with its header unless it already exists."""
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        first_line = (self.task or "").strip().splitlines()[0] if (self.task or "").strip() else "(no task)"
        self.path.write_text(ACTIVITY_LOG_HEADER.format(task=first_line[:ACTIVITY_SUMMARY_LENGTH]))

    def append(self, entry: ActivityEntry) -> None:
        self.initialize()
        lines = [
            f"### Iteration {entry.iteration}",
            f"- **Status**: {STATUS_BADGES.get(entry.status, entry.status)}",
            f"- **Time**: {entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
            f"- **Duration**: {format_duration(entry.duration_seconds)}",
        ]
        if entry.tokens is not None:
            lines.append(
                f"- **Tokens**: {format_tokens(entry.tokens.total_tokens)} "
                f"({format_tokens(entry.tokens.input_tokens)} in / {format_tokens(entry.tokens.output_tokens)} out)"
            )
        if entry.cost is not None:
            lines.append(f"- **Cost**: {format_cost(entry.cost.total_cost)}")
        if entry.commit:
            lines.append(f"- **Commit**: {entry.commit}")
        summary = " ".join((entry.summary or "").split())[:ACTIVITY_SUMMARY_LENGTH]
        if summary:
            lines.append(f"- **Summary**: {summary}")
        if entry.validation_results:
            lines.append("")
            lines.append("**Validation:**")
            for result in entry.validation_results:
                mark = "✅" if result.success else "❌"
                lines.append(f"- {mark} {result.name}")
        lines.extend(["", ""])
        with open(self.path, "a") as f:
            f.write("\n".join(lines))

    def append_summary(self, text: str) -> None:
        if not text:
            return
        self.initialize()
        with open(self.path, "a") as f:
            f.write("\n" + text + "\n")


def parse_last_failed_validations(cwd: Union[str, Path]) -> list[str]:
    """Names of the validations that failed in the latest failing iteration."""
    path = Path(cwd) / ACTIVITY_LOG_PATH
    try:
        content = path.read_text()
    except OSError:
        return []
    blocks = ITERATION_SECTION_PATTERN.split(content)[1:]
    for block in reversed(blocks):
        if "Validation Failed" in block:
            return FAILED_VALIDATION_LINE.findall(block)
    return []


# =============================================================================
# STEP / COMPLETION DETECTOR
# =============================================================================

@dataclass
class ToolUse:
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class TextBlock:
    text: str


@dataclass
class SystemEvent:
    subtype: str = ""


@dataclass
class ResultEvent:
    text: str = ""
    usage: Optional[TokenUsage] = None
    is_error: bool = False


@dataclass
class Unrecognized:
    raw: object = None


AgentEvent = Union[ToolUse, TextBlock, SystemEvent, ResultEvent, Unrecognized]

STEP_STARTING = "Starting up..."
STEP_THINKING = "Thinking..."
STEP_PROCESSING = "Processing..."
STEP_FINISHING = "Finishing up..."
STEP_RUNNING_COMMAND = "Running command..."
BASH_DESCRIPTION_LIMIT = 30

# Ordered: the first matching entry labels the command.
COMMAND_STEPS: list[tuple[tuple[str, ...], str]] = [
    (("npm install", "pnpm install", "yarn install", "yarn add", "bun install", "pip install", "uv add",
      "poetry add"), "Installing dependencies..."),
    (("npm init", "npm create", "pnpm create", "bun init", "bun create"), "Initializing project..."),
    (("git commit",), "Committing changes..."),
    (("git add",), "Staging files..."),
    (("vitest", "jest", "npm test", "pnpm test", "bun test", "yarn test", "pytest", "go test",
      "cargo test"), "Running tests..."),
    (("eslint", "biome", "prettier", "ruff", "flake8", "run lint"), "Linting code..."),
    (("run build", "pnpm build", "yarn build", "tsc", "cargo build", "go build"), "Building project..."),
    (("run dev", "pnpm dev", "yarn dev"), "Starting dev server..."),
    (("mkdir",), "Creating directories..."),
]
TEST_FILE_PATTERN = re.compile(r"(\.test\.|\.spec\.|(^|/)test_[^/]*\.py$|_test\.(py|go)$)")


def _events_from_message(message: dict) -> AgentEvent:
    for block in message.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use":
            return ToolUse(name=str(block.get("name", "")), input=block.get("input") or {})
        if block.get("type") == "text" and block.get("text"):
            return TextBlock(text=block["text"])
    return Unrecognized(raw=message)


def parse_agent_event(line: str) -> AgentEvent:
    """Classify one line of agent stdout.

    Understands the stream-json format (assistant/user/system/result
    records, content_block_start) and flat records carrying a tool name.
    Anything else, including non-JSON lines, is Unrecognized.
    """
    line = (line or "").strip()
    if not line.startswith("{"):
        return Unrecognized(raw=line)
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return Unrecognized(raw=line)
    if not isinstance(data, dict):
        return Unrecognized(raw=data)

    msg_type = data.get("type")
    if msg_type == "assistant":
        return _events_from_message(data.get("message") or {})
    if msg_type == "user":
        return SystemEvent(subtype="tool_result")
    if msg_type == "system":
        return SystemEvent(subtype=str(data.get("subtype", "")))
    if msg_type == "result":
        return ResultEvent(
            text=str(data.get("result") or ""),
            usage=parse_token_usage(data),
            is_error=bool(data.get("is_error", False)),
        )
    if msg_type == "content_block_start":
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            return ToolUse(name=str(block.get("name", "")), input=block.get("input") or {})
        if block.get("type") == "text":
            return TextBlock(text=str(block.get("text", "")))
    tool_name = data.get("tool") or data.get("tool_name")
    if tool_name:
        return ToolUse(name=str(tool_name), input=data.get("input") or data)
    if data.get("command"):
        return ToolUse(name="bash", input={"command": data["command"]})
    return Unrecognized(raw=data)


def classify_command(command: str) -> Optional[str]:
    lowered = (command or "").lower()
    for needles, label in COMMAND_STEPS:
        if any(needle in lowered for needle in needles):
            return label
    return None


def describe_tool_use(name: str, tool_input: dict) -> str:
    """Human-readable progress label for a tool invocation."""
    tool = name.lower()
    if tool in ("read", "view"):
        path = str(tool_input.get("file_path") or tool_input.get("path") or "")
        return f"Reading {Path(path).name}..." if path else "Reading file..."
    if tool in ("glob", "ls", "list"):
        return "Searching files..."
    if tool in ("grep", "search"):
        return "Searching code..."
    if tool in ("write", "edit", "multiedit", "notebookedit"):
        path = str(tool_input.get("file_path") or tool_input.get("path") or "")
        if path and TEST_FILE_PATTERN.search(path):
            return "Writing tests..."
        return f"Writing {Path(path).name}..." if path else "Writing file..."
    if tool == "bash":
        label = classify_command(str(tool_input.get("command", "")))
        if label:
            return label
        description = str(tool_input.get("description", "")).strip()
        if description:
            return description[:BASH_DESCRIPTION_LIMIT] + "..."
        return STEP_RUNNING_COMMAND
    if tool in ("task", "agent"):
        return "Running subagent..."
    if tool in ("webfetch", "websearch"):
        return "Fetching from web..."
    if tool == "todowrite":
        return "Updating task list..."
    return f"Using {name}..."


def detect_step(line: str) -> Optional[str]:
    """Progress label for one line of agent output, or None to keep the
    current label."""
    event = parse_agent_event(line)
    if isinstance(event, ToolUse):
        return describe_tool_use(event.name, event.input)
    if isinstance(event, TextBlock):
        return STEP_THINKING
    if isinstance(event, SystemEvent):
        return STEP_STARTING if event.subtype == "init" else STEP_PROCESSING
    if isinstance(event, ResultEvent):
        return STEP_FINISHING
    return None


def extract_text(line: str) -> str:
    """Assistant or result text carried by one output line ("" if none)."""
    event = parse_agent_event(line)
    if isinstance(event, (TextBlock, ResultEvent)):
        return event.text
    return ""


@dataclass
class ResponseAnalysis:
    completion_score: float = 0.0
    stuck_score: float = 0.0
    progress_score: float = 0.0
    has_explicit_exit: bool = False
    confidence: str = "low"
    completion_indicators: list = field(default_factory=list)
    stuck_indicators: list = field(default_factory=list)


# (pattern, weight) tables; scores are capped at 1.0.
COMPLETION_PATTERNS: list[tuple[re.Pattern, float]] = [
    (re.compile(r"all (?:tasks?|items?|work) (?:are |is )?(?:now )?(?:complete|completed|done|finished)", re.I), 0.9),
    (re.compile(r"(?:task|implementation|feature|work) (?:is )?(?:now )?(?:complete|completed|finished)", re.I), 0.8),
    (re.compile(r"successfully (?:implemented|completed|finished|built)", re.I), 0.7),
    (re.compile(r"everything (?:is )?(?:working|complete|done)", re.I), 0.7),
    (re.compile(r"(?:all )?tests (?:are )?(?:now )?passing", re.I), 0.5),
    (re.compile(r"nothing (?:left|more|else) to (?:do|implement)", re.I), 0.8),
    (re.compile(r"\bi'?m done\b|\bwe'?re done\b", re.I), 0.6),
    (re.compile(r"ready for (?:review|deployment|production)", re.I), 0.5),
]
STUCK_PATTERNS: list[tuple[re.Pattern, float]] = [
    (re.compile(r"\bi(?:'m| am) (?:stuck|blocked)\b", re.I), 0.9),
    (re.compile(r"cannot (?:proceed|continue)", re.I), 0.8),
    (re.compile(r"unable to (?:proceed|continue|complete)", re.I), 0.8),
    (re.compile(r"need (?:human|manual|your) (?:help|input|intervention)", re.I), 0.8),
    (re.compile(r"(?:missing|no) (?:required )?(?:credentials|api key|permissions?)", re.I), 0.6),
    (re.compile(r"keep (?:getting|hitting) the same error", re.I), 0.7),
    (re.compile(r"(?:don'?t|do not) know how to", re.I), 0.5),
]
PROGRESS_PATTERNS: list[tuple[re.Pattern, float]] = [
    (re.compile(r"\b(?:created|added|implemented|updated|fixed|wrote|refactored)\b", re.I), 0.3),
    (re.compile(r"\bnext,? i(?:'ll| will)\b", re.I), 0.3),
    (re.compile(r"\b(?:moving on|continuing) (?:to|with)\b", re.I), 0.3),
    (re.compile(r"\bstep \d+\b", re.I), 0.2),
]
# Plain markers, matched case-insensitively.
BLOCKED_MARKERS = ("<promise>BLOCKED</promise>", "<TASK_BLOCKED>", "TASK BLOCKED", "RALPH_BLOCKED")
LEGACY_COMPLETION_MARKERS = (
    "<TASK_DONE>",
    "<TASK_COMPLETE>",
    "TASK COMPLETED",
    "RALPH_COMPLETE",
    "All tasks completed",
    "Successfully completed",
)
SEMANTIC_THRESHOLD = 0.7


def _score(text: str, patterns: list) -> tuple[float, list]:
    score = 0.0
    matched = []
    for pattern, weight in patterns:
        if pattern.search(text):
            score += weight
            matched.append(pattern.pattern)
    return min(score, 1.0), matched


def _has_marker(text: str, markers: tuple) -> bool:
    upper = text.upper()
    return any(marker.upper() in upper for marker in markers)


def analyze_response(text: str) -> ResponseAnalysis:
    """Weighted phrase scoring of an agent response."""
    completion, completion_indicators = _score(text, COMPLETION_PATTERNS)
    stuck, stuck_indicators = _score(text, STUCK_PATTERNS)
    progress, _ = _score(text, PROGRESS_PATTERNS)
    has_exit = bool(EXIT_SIGNAL_PATTERN.search(text) or PROMISE_TAG_PATTERN.search(text))
    top = max(completion, stuck)
    if has_exit or top >= 0.8:
        confidence = "high"
    elif top >= 0.5:
        confidence = "medium"
    else:
        confidence = "low"
    return ResponseAnalysis(
        completion_score=completion,
        stuck_score=stuck,
        progress_score=progress,
        has_explicit_exit=has_exit,
        confidence=confidence,
        completion_indicators=completion_indicators,
        stuck_indicators=stuck_indicators,
    )


def detect_completion(
    output: str,
    completion_promise: str = "",
    require_exit_signal: bool = False,
    min_completion_indicators: int = 1,
) -> str:
    """Decide whether an iteration's output means done, blocked or continue.

    With require_exit_signal, only the exact completion promise (or the
    default promise tag when none is configured) counts as done; natural
    language like "I'm finished" keeps the loop going. Otherwise a phrase
    score of at least 0.7 also needs min_completion_indicators distinct
    completion phrases before it counts.
    """
    output = output or ""
    if completion_promise and completion_promise in output:
        return "done"
    if require_exit_signal:
        if not completion_promise and DEFAULT_COMPLETION_PROMISE in output:
            return "done"
    elif PROMISE_TAG_PATTERN.search(output) or EXIT_SIGNAL_PATTERN.search(output):
        return "done"

    analysis = analyze_response(output)
    if analysis.stuck_score >= SEMANTIC_THRESHOLD and analysis.confidence != "low":
        return "blocked"
    if _has_marker(output, BLOCKED_MARKERS):
        return "blocked"
    if require_exit_signal:
        return "continue"

    if (analysis.completion_score >= SEMANTIC_THRESHOLD
            and len(analysis.completion_indicators) >= min_completion_indicators):
        return "done"
    if _has_marker(output, LEGACY_COMPLETION_MARKERS):
        return "done"
    return "continue"


CHECKBOX_PATTERN = re.compile(r"^\s*[-*]\s*\[([ xX])\]\s*(.+)$", re.MULTILINE)
DONE_MARKER_FILES = ("RALPH_COMPLETE", ".ralph-done")


def check_file_completion(cwd: Union[str, Path]) -> Optional[str]:
    """Completion signalled through files rather than output.

    Returns a reason string, or None if no file marks the task complete.
    """
    base = Path(cwd)
    for name in DONE_MARKER_FILES:
        if (base / name).exists():
            return f"{name} file present"
    plan = base / PLAN_FILE_NAME
    if plan.exists():
        try:
            boxes = CHECKBOX_PATTERN.findall(plan.read_text())
        except OSError:
            return None
        if boxes and all(mark.lower() == "x" for mark, _ in boxes):
            return f"All {len(boxes)} tasks in {PLAN_FILE_NAME} checked"
    return None


# =============================================================================
# IMPLEMENTATION PLAN TASKS
# =============================================================================

PLAN_HEADER_PATTERN = re.compile(r"^#{2,4}\s*(?:Phase|Task)\s*\d+\s*[:.\-]?\s*(.*)$", re.IGNORECASE | re.MULTILINE)
HEADING_PATTERN = re.compile(r"^#{2,3}\s+\S", re.MULTILINE)
LIST_ITEM_PATTERN = re.compile(r"^\s*(?:[-*]|\d+\.)\s+\S", re.MULTILINE)


@dataclass
class PlanTask:
    name: str
    completed: bool
    index: int
    subtasks: list = field(default_factory=list)


@dataclass
class TaskCount:
    total: int = 0
    completed: int = 0
    pending: int = 0
    tasks: list = field(default_factory=list)


def parse_plan_tasks(cwd: Union[str, Path]) -> TaskCount:
    """Count tasks in IMPLEMENTATION_PLAN.md.

    "### Task N:" / "### Phase N:" headers group checkbox subtasks; a header
    is complete when all of its subtasks are. Plans without such headers are
    read as a flat checkbox list.
    """
    plan = Path(cwd) / PLAN_FILE_NAME
    try:
        content = plan.read_text()
    except OSError:
        return TaskCount()

    tasks: list[PlanTask] = []
    headers = list(PLAN_HEADER_PATTERN.finditer(content))
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(content)
        body = content[header.end():end]
        subtasks = [{"name": text.strip(), "completed": mark.lower() == "x"}
                    for mark, text in CHECKBOX_PATTERN.findall(body)]
        completed = bool(subtasks) and all(sub["completed"] for sub in subtasks)
        tasks.append(PlanTask(name=header.group(1).strip() or f"Task {i + 1}",
                              completed=completed, index=i, subtasks=subtasks))

    if not tasks:
        for i, (mark, text) in enumerate(CHECKBOX_PATTERN.findall(content)):
            tasks.append(PlanTask(name=text.strip(), completed=mark.lower() == "x", index=i))

    completed_count = sum(1 for t in tasks if t.completed)
    return TaskCount(total=len(tasks), completed=completed_count,
                     pending=len(tasks) - completed_count, tasks=tasks)


def estimate_tasks_from_content(content: str) -> int:
    """Rough task count for a task description without a plan."""
    checkboxes = CHECKBOX_PATTERN.findall(content or "")
    if checkboxes:
        return len(checkboxes)
    headings = len(HEADING_PATTERN.findall(content or ""))
    items = len(LIST_ITEM_PATTERN.findall(content or ""))
    return max(headings, math.ceil(items / 4))


def calculate_optimal_iterations(cwd: Union[str, Path], task_content: str = "") -> tuple[int, str]:
    """Iteration budget derived from the plan, or from the task text.

    Returns (iterations, reason).
    """
    count = parse_plan_tasks(cwd)
    if count.total == 0:
        estimated = estimate_tasks_from_content(task_content)
        if estimated > 0:
            iterations = max(MIN_AUTO_ITERATIONS, min(MAX_ESTIMATED_ITERATIONS, estimated + MIN_ITERATION_BUFFER))
            return iterations, f"Estimated {estimated} tasks from task description"
        return FALLBACK_AUTO_ITERATIONS, "No implementation plan found, using default"
    if count.pending == 0:
        return MIN_AUTO_ITERATIONS, "All plan tasks already completed"
    buffer = max(MIN_ITERATION_BUFFER, math.ceil(count.pending * ITERATION_BUFFER_RATIO))
    iterations = max(MIN_AUTO_ITERATIONS, min(MAX_AUTO_ITERATIONS, count.pending + buffer))
    return iterations, f"{count.pending} pending tasks + {buffer} buffer"


# =============================================================================
# AGENTS
# =============================================================================

AGENT_PROBE_TIMEOUT_SECONDS = 10
THREAD_JOIN_TIMEOUT_SECONDS = 5
CANCEL_POLL_SECONDS = 0.2
AGENT_DEFINITIONS: dict[str, dict[str, str]] = {
    "claude-code": {"name": "Claude Code", "command": "claude"},
    "cursor": {"name": "Cursor", "command": "cursor-agent"},
    "codex": {"name": "Codex", "command": "codex"},
    "opencode": {"name": "OpenCode", "command": "opencode"},
}
AGENT_PREFERENCE = ("claude-code", "cursor", "codex", "opencode")


@dataclass
class Agent:
    type: str
    name: str
    command: str
    available: bool = False


@dataclass
class AgentResult:
    exit_code: int
    output_text: str
    raw_output: str = ""
    stderr: str = ""
    usage: Optional[TokenUsage] = None
    duration_seconds: float = 0.0
    cancelled: bool = False


def check_agent_available(command: str) -> bool:
    """Probe an agent CLI with --version."""
    if not shutil.which(command):
        return False
    try:
        proc = subprocess.run(
            [command, "--version"], capture_output=True, text=True,
            timeout=AGENT_PROBE_TIMEOUT_SECONDS, env=build_child_env(),
        )
    except (OSError, subprocess.SubprocessError) as e:
        verbose_log(f"{command} --version failed: {e}", "AGENT")
        return False
    return proc.returncode == 0


def detect_available_agents() -> list[Agent]:
    agents = []
    for agent_type in AGENT_PREFERENCE:
        definition = AGENT_DEFINITIONS[agent_type]
        agents.append(Agent(
            type=agent_type,
            name=definition["name"],
            command=definition["command"],
            available=check_agent_available(definition["command"]),
        ))
    return agents


def detect_best_agent() -> Optional[Agent]:
    """First installed agent in preference order, or None."""
    for agent in detect_available_agents():
        if agent.available:
            return agent
    return None


def resolve_agent(agent_type: Optional[str] = None) -> Agent:
    """Return the requested agent, or the first available one.

    Raises PreconditionError when the agent is unknown or not installed.
    """
    if agent_type:
        definition = AGENT_DEFINITIONS.get(agent_type)
        if definition is None:
            raise PreconditionError(
                f"Unknown agent '{agent_type}'. Known agents: {', '.join(AGENT_PREFERENCE)}"
            )
        agent = Agent(type=agent_type, name=definition["name"], command=definition["command"])
        agent.available = check_agent_available(agent.command)
        if not agent.available:
            raise PreconditionError(f"{agent.name} is not available (is '{agent.command}' installed?)")
        return agent
    agent = detect_best_agent()
    if agent is not None:
        return agent
    raise PreconditionError("No coding agent found. Install one of: " + ", ".join(
        AGENT_DEFINITIONS[a]["command"] for a in AGENT_PREFERENCE))


def build_agent_command(
    agent: Agent,
    prompt: str,
    auto_approve: bool = True,
    max_turns: int = DEFAULT_MAX_TURNS,
    model: str = "",
) -> list[str]:
    """Argument vector for one non-interactive agent invocation."""
    if agent.type == "claude-code":
        cmd = [agent.command, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if auto_approve:
            cmd.append("--dangerously-skip-permissions")
        if max_turns:
            cmd.extend(["--max-turns", str(max_turns)])
        if model:
            cmd.extend(["--model", model])
        return cmd
    if agent.type == "cursor":
        cmd = [agent.command, "-p", prompt, "--output-format", "stream-json"]
        if auto_approve:
            cmd.append("--force")
        if model:
            cmd.extend(["--model", model])
        return cmd
    if agent.type == "codex":
        cmd = [agent.command, "exec"]
        if auto_approve:
            cmd.append("--full-auto")
        if model:
            cmd.extend(["--model", model])
        cmd.append(prompt)
        return cmd
    if agent.type == "opencode":
        cmd = [agent.command, "run"]
        if model:
            cmd.extend(["--model", model])
        cmd.append(prompt)
        return cmd
    raise PreconditionError(f"Don't know how to run agent type '{agent.type}'")


class OutputCollector:
    """Collects output lines from an agent process."""

    def __init__(self):
        self.lines: list[str] = []

    def add_line(self, line: str) -> None:
        self.lines.append(line)

    def get_output(self) -> str:
        return "".join(self.lines)


def stream_output(pipe, prefix: str, collector: OutputCollector, show_full: bool) -> None:
    """Stream output from a subprocess pipe line by line."""
    try:
        for line in iter(pipe.readline, ""):
            if line:
                collector.add_line(line)
                if show_full:
                    print(f"[AGENT {prefix}] {line.rstrip()}", flush=True)
    except (OSError, ValueError) as e:
        verbose_log(f"Error streaming {prefix}: {e}", "ERROR")


class AgentRunner:
    """Runs one agent invocation as a child process and collects its output.

    Stdout is read line by line in the calling thread so each line can be
    fed to a progress callback; stderr drains on a helper thread. A watcher
    thread kills the child as soon as cancel_event is set, even while the
    child is silent.
    """

    def __init__(
        self,
        agent: Agent,
        model: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.agent = agent
        self.model = model
        self.cancel_event = cancel_event

    def invoke(
        self,
        prompt: str,
        cwd: str,
        auto_approve: bool = True,
        max_turns: int = DEFAULT_MAX_TURNS,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> AgentResult:
        start_time = time.time()
        cmd = build_agent_command(self.agent, prompt, auto_approve, max_turns, self.model)
        verbose_log(f"Command: {self.agent.command} ... <prompt> ({len(prompt)} chars)", "AGENT")
        verbose_log(f"Working directory: {cwd}", "AGENT")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd,
                env=build_child_env(),
            )
        except OSError as e:
            message = f"Failed to launch {self.agent.command}: {e}"
            print(f"[AGENT] {message}", flush=True)
            return AgentResult(exit_code=-1, output_text=message, stderr=message,
                               duration_seconds=time.time() - start_time)

        stdout_collector = OutputCollector()
        stderr_collector = OutputCollector()
        stderr_thread = threading.Thread(
            target=stream_output,
            args=(process.stderr, "ERR", stderr_collector, VERBOSE),
            daemon=True,
        )
        stderr_thread.start()

        finished = threading.Event()
        killed = threading.Event()
        if self.cancel_event is not None:
            threading.Thread(
                target=self._kill_on_cancel,
                args=(process, finished, killed),
                daemon=True,
            ).start()

        text_parts: list[str] = []
        result_text = ""
        usage: Optional[TokenUsage] = None
        saw_json = False
        for line in iter(process.stdout.readline, ""):
            stdout_collector.add_line(line)
            stripped = line.rstrip("\n")
            if on_line is not None:
                on_line(stripped)
            event = parse_agent_event(stripped)
            if not isinstance(event, Unrecognized):
                saw_json = True
            if isinstance(event, TextBlock):
                text_parts.append(event.text)
            elif isinstance(event, ResultEvent):
                result_text = event.text
                usage = event.usage

        returncode = process.wait()
        finished.set()
        stderr_thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
        raw_output = stdout_collector.get_output()
        stderr = stderr_collector.get_output()

        if saw_json:
            output_text = "\n".join(text_parts)
            if result_text and result_text not in output_text:
                output_text = (output_text + "\n" + result_text).strip()
        else:
            output_text = raw_output

        return AgentResult(
            exit_code=returncode,
            output_text=output_text,
            raw_output=raw_output,
            stderr=stderr,
            usage=usage,
            duration_seconds=time.time() - start_time,
            cancelled=killed.is_set(),
        )

    def _kill_on_cancel(self, process, finished: threading.Event, killed: threading.Event) -> None:
        while not finished.is_set():
            if self.cancel_event.wait(CANCEL_POLL_SECONDS):
                if finished.is_set():
                    return
                print(f"\n[AGENT] Cancellation requested, stopping {self.agent.name}", flush=True)
                killed.set()
                process.kill()
                return


# =============================================================================
# GIT
# =============================================================================

PR_URL_PATTERN = re.compile(r"https://github\.com/\S+/pull/\d+")
COMMIT_SUMMARY_LENGTH = 50
COMMIT_SUMMARY_KEYWORDS = ("created", "added", "updated", "implemented", "fixed")


class GitError(Exception):
    """A git or gh command failed."""


class GitRepo:
    """Thin wrapper over the git and gh CLIs for one working directory."""

    def __init__(self, cwd: Union[str, Path]) -> None:
        self.cwd = str(cwd)

    def _run(self, cmd: list[str], check: bool = True) -> subprocess.CompletedProcess:
        verbose_log(" ".join(cmd[:4]), "GIT")
        try:
            proc = subprocess.run(cmd, cwd=self.cwd, capture_output=True, text=True)
        except OSError as e:
            raise GitError(f"{cmd[0]} could not be run: {e}") from e
        if check and proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            raise GitError(f"{' '.join(cmd[:3])} failed: {detail}")
        return proc

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self._run(["git", *args], check=check)

    def is_git_repo(self) -> bool:
        try:
            return self._git("rev-parse", "--is-inside-work-tree", check=False).returncode == 0
        except GitError:
            return False

    def has_uncommitted_changes(self) -> bool:
        try:
            return bool(self._git("status", "--porcelain").stdout.strip())
        except GitError:
            return False

    def commit(self, message: str) -> None:
        self._git("add", "-A")
        self._git("commit", "-m", message)
        print(f"[GIT] Committed: {message.splitlines()[0]}", flush=True)

    def push(self, branch: Optional[str] = None) -> None:
        if branch:
            self._git("push", "-u", "origin", branch)
        else:
            self._git("push")
        print(f"[GIT] Pushed {branch or 'current branch'}", flush=True)

    def get_current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def branch_exists(self, name: str) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False).returncode == 0

    def create_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)

    def checkout(self, name: str) -> None:
        self._git("checkout", name)

    def create_pull_request(self, title: str, body: str, base: Optional[str] = None) -> str:
        """Open a pull request with gh. Returns the PR URL."""
        cmd = ["gh", "pr", "create", "--title", title, "--body", body]
        if base:
            cmd.extend(["--base", base])
        proc = self._run(cmd)
        match = PR_URL_PATTERN.search(proc.stdout or "")
        url = match.group(0) if match else (proc.stdout or "").strip()
        print(f"[GIT] Pull request: {url}", flush=True)
        return url


def summarize_changes(output: str) -> str:
    """One-line commit summary taken from the agent's own words."""
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    for line in lines:
        if any(keyword in line.lower() for keyword in COMMIT_SUMMARY_KEYWORDS):
            return line[:COMMIT_SUMMARY_LENGTH]
    if lines:
        return lines[0][:COMMIT_SUMMARY_LENGTH]
    return "Update from ralph loop"


# =============================================================================
# ITERATION CONTROLLER
# =============================================================================

ITERATION_WARNING_RATIOS = (0.8, 0.9)
FAILURE_CONTEXT_LENGTH = 1500
STEP_CHANGE_PREFIX = "[STEP]"


@dataclass
class IterationRecord:
    iteration: int
    input_text: str
    output_text: str
    status: str
    agent_exit_code: int = 0
    tokens: Optional[TokenEstimate] = None
    cost: Optional[CostEstimate] = None
    cache: Optional[CacheMetrics] = None
    validation: list = field(default_factory=list)
    duration_seconds: float = 0.0
    exit_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class LoopOptions:
    task: str
    cwd: str
    agent: Agent
    config: LoopConfig = field(default_factory=LoopConfig)


@dataclass
class LoopState:
    task: str
    cwd: str
    agent: Agent
    max_iterations: int
    completion_promise: str = ""
    require_exit_signal: bool = False
    current_iteration: int = 0
    accumulated_cost: float = 0.0
    status: str = "running"
    feedback_history: list = field(default_factory=list)  # (iteration, feedback)
    commits: list = field(default_factory=list)
    records: list = field(default_factory=list)
    circuit_breaker: Optional[CircuitBreakerState] = None
    rate_limiter: Optional[RateLimiterState] = None


@dataclass
class LoopResult:
    success: bool
    iterations: int
    exit_reason: str
    cost_summary: Optional[CostStats] = None
    commits: list = field(default_factory=list)
    error: Optional[str] = None
    stats: dict = field(default_factory=dict)
    records: list = field(default_factory=list)
    pr_url: str = ""


def exit_code_for(result: LoopResult) -> int:
    return EXIT_CODES.get(result.exit_reason, EXIT_CODE_FAILURE)


def describe_exit(result: LoopResult) -> str:
    """One-line, user-facing explanation of why the loop stopped."""
    reason = result.exit_reason
    if reason == EXIT_COMPLETED:
        return f"Task completed in {result.iterations} iteration(s)"
    if reason == EXIT_FILE_SIGNAL:
        return f"Task marked complete on disk: {result.error or 'completion file found'}"
    if reason == EXIT_MAX_ITERATIONS:
        return (f"Reached the iteration limit ({result.iterations}) without a completion signal. "
                "Re-run with a higher --max-iterations or check the activity log.")
    if reason == EXIT_CIRCUIT_OPEN:
        return f"Stopped by circuit breaker: {result.error}"
    if reason == EXIT_BUDGET_EXCEEDED:
        return f"Stopped: {result.error}"
    if reason == EXIT_RATE_LIMITED:
        return f"Stopped: {result.error}"
    if reason == EXIT_BLOCKED:
        return "Agent reported it is blocked and needs help. See the activity log for details."
    if reason == EXIT_CANCELLED:
        return f"Cancelled after {result.iterations} iteration(s)"
    return f"Stopped: {result.error or reason}"


def check_stop_requested(cwd: str) -> bool:
    """Check if a graceful stop has been requested via semaphore file.

    To request a stop:  touch .ralph/.stop
    The file is auto-cleaned when the loop starts.
    """
    if os.path.exists(os.path.join(cwd, STOP_SEMAPHORE_PATH)):
        verbose_log("Stop semaphore detected", "STOP")
        return True
    return False


def clear_stop_semaphore(cwd: str) -> None:
    """Remove the stop semaphore file if it exists (called on startup)."""
    path = os.path.join(cwd, STOP_SEMAPHORE_PATH)
    if os.path.exists(path):
        os.remove(path)
        print(f"[Cleared stale stop semaphore: {path}]")


def build_iteration_prompt(
    task: str,
    iteration: int,
    max_iterations: int,
    feedback_history: list,
    completion_promise: str = "",
) -> str:
    """Prompt for one iteration: the task, loop context, and feedback from
    the most recent failed rounds."""
    signal = completion_promise or DEFAULT_COMPLETION_PROMISE
    sections = [
        task.strip(),
        "",
        "## Loop Context",
        f"This is iteration {iteration} of at most {max_iterations}. "
        "Earlier iterations may already have done part of this work; check the "
        "current state of the repository before making changes.",
        "",
        "When the task is completely finished and verified, end your response with:",
        signal,
    ]
    recent = feedback_history[-MAX_FEEDBACK_ROUNDS:]
    if recent:
        sections.extend(["", "## Feedback From Previous Iterations"])
        for round_number, feedback in recent:
            sections.extend(["", f"### After iteration {round_number}",
                             compress_validation_feedback(feedback)])
    return "\n".join(sections)


def write_iteration_log(cwd: str, iteration: int, result: AgentResult) -> Path:
    """Save raw agent output for one iteration."""
    log_dir = Path(cwd) / ITERATION_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"iteration-{iteration}-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"
    with open(log_file, "w") as f:
        f.write(f"=== Agent Iteration {iteration} ===\n")
        f.write(f"Timestamp: {datetime.now().isoformat()}\n")
        f.write(f"Duration: {result.duration_seconds:.1f}s\n")
        f.write(f"Return code: {result.exit_code}\n")
        if result.usage:
            f.write(f"Tokens: {result.usage.input_tokens} input / {result.usage.output_tokens} output / "
                    f"{result.usage.cache_read_tokens} cache_read / "
                    f"{result.usage.cache_creation_tokens} cache_create\n")
        f.write("\n=== STDOUT ===\n")
        f.write(result.raw_output)
        f.write("\n=== STDERR ===\n")
        f.write(result.stderr)
    verbose_log(f"Log saved to: {log_file}", "LOOP")
    return log_file


def _progress_printer() -> Callable[[str], None]:
    """on_line callback that prints the step label when it changes."""
    current = {"step": ""}

    def on_line(line: str) -> None:
        step = detect_step(line)
        if step and step != current["step"]:
            current["step"] = step
            print(f"  {STEP_CHANGE_PREFIX} {step}", flush=True)

    return on_line


def _cancel_requested(cancel_event: Optional[threading.Event], cwd: str) -> bool:
    return (cancel_event is not None and cancel_event.is_set()) or check_stop_requested(cwd)


def _admit(
    rate_limiter: RateLimiter,
    max_wait_seconds: float,
    should_stop: Optional[Callable[[], bool]] = None,
) -> bool:
    if rate_limiter.try_acquire():
        if rate_limiter.get_stats().is_warning:
            print(f"[RATE LIMIT] Approaching limit: {rate_limiter.format_stats()}", flush=True)
        return True
    print(f"[RATE LIMIT] {rate_limiter.format_stats()}", flush=True)
    print(f"[RATE LIMIT] Waiting up to {max_wait_seconds:.0f}s for a free slot...", flush=True)
    return rate_limiter.wait_and_acquire(max_wait_seconds, should_stop)


def _iteration_status(completion: str, exit_code: int, validation_passed: bool) -> str:
    if not validation_passed:
        return "validation_failed"
    if exit_code != 0:
        return "failed"
    if completion == "done":
        return "completed"
    if completion == "blocked":
        return "blocked"
    return "partial"


def _failure_text(result: AgentResult, validation_results: list) -> str:
    """Error text fed to the circuit breaker and the next prompt."""
    failed = [r for r in validation_results if not r.success]
    if failed:
        return "\n".join(f"{r.name}: {r.error}" for r in failed)
    detail = (result.stderr or result.output_text or "").strip()
    return f"Agent exited with code {result.exit_code}: {detail[-FAILURE_CONTEXT_LENGTH:]}"


def _build_result(
    state: LoopState,
    exit_reason: str,
    error: Optional[str],
    cost_tracker: Optional[CostTracker],
    circuit_breaker: CircuitBreaker,
    rate_limiter: RateLimiter,
    start_time: float,
) -> LoopResult:
    state.status = exit_reason
    state.circuit_breaker = circuit_breaker.get_state()
    state.rate_limiter = rate_limiter.get_state()
    return LoopResult(
        success=exit_reason in SUCCESS_EXIT_REASONS,
        iterations=state.current_iteration,
        exit_reason=exit_reason,
        cost_summary=cost_tracker.get_stats() if cost_tracker else None,
        commits=list(state.commits),
        error=error,
        stats={
            "duration_seconds": time.time() - start_time,
            "max_iterations": state.max_iterations,
            "circuit_breaker": circuit_breaker.get_stats(),
            "rate_limiter": rate_limiter.format_stats(),
            "total_cost_usd": state.accumulated_cost,
        },
        records=list(state.records),
    )


def run_loop(
    options: LoopOptions,
    runner=None,
    validator=None,
    git=None,
    rate_limiter: Optional[RateLimiter] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
    cost_tracker: Optional[CostTracker] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> LoopResult:
    """Run the agent until the task completes or a stop condition fires.

    Collaborators default to real implementations built from options.config;
    pass fakes to drive the loop without subprocesses. Every stop condition
    comes back as LoopResult.exit_reason. Only PreconditionError (no usable
    agent) and LoopCancelled escape.
    """
    config = options.config
    agent = options.agent
    cwd = str(options.cwd)
    if agent is None or not agent.available:
        name = agent.name if agent else "agent"
        raise PreconditionError(f"{name} is not available")

    if config.max_iterations:
        max_iterations = config.max_iterations
    else:
        max_iterations, reason = calculate_optimal_iterations(cwd, options.task)
        print(f"[LOOP] Auto iteration budget: {max_iterations} ({reason})")

    clear_stop_semaphore(cwd)
    circuit_breaker = circuit_breaker or CircuitBreaker(config.circuit_breaker)
    rate_limiter = rate_limiter or RateLimiter(config.rate_limiter)
    if cost_tracker is None and config.track_cost:
        cost_tracker = CostTracker(CostTrackerConfig(
            model=config.model or "default", max_iterations=max_iterations, max_cost=config.max_cost,
        ))
    runner = runner or AgentRunner(agent, model=config.model, cancel_event=cancel_event)
    if not config.validate:
        validator = None
    elif validator is None:
        commands = detect_validation_commands(cwd, config.validation_commands)
        if commands:
            validator = ValidationRunner(cwd, commands)
        else:
            print("[VALIDATION] No validation commands detected, skipping validation")
    if git is None and (config.commit or config.push or config.pr):
        git = GitRepo(cwd)
    activity_log = ActivityLog(cwd, options.task) if config.track_progress else None

    state = LoopState(
        task=options.task,
        cwd=cwd,
        agent=agent,
        max_iterations=max_iterations,
        completion_promise=config.completion_promise,
        require_exit_signal=config.require_exit_signal,
    )
    start_time = time.time()
    exit_reason = EXIT_MAX_ITERATIONS
    error: Optional[str] = None

    def cancel() -> LoopCancelled:
        if state.records:
            state.records[-1].exit_reason = EXIT_CANCELLED
        result = _build_result(state, EXIT_CANCELLED, "Cancelled", cost_tracker,
                               circuit_breaker, rate_limiter, start_time)
        return LoopCancelled("Loop cancelled", result)

    print(f"\n=== Ralph Loop: {agent.name} ===")
    print(f"Working directory: {cwd}")
    print(f"Max iterations: {max_iterations}")
    print(f"Graceful stop: touch {os.path.join(cwd, STOP_SEMAPHORE_PATH)}")
    if activity_log is not None:
        activity_log.initialize()

    try:
        for iteration in range(1, max_iterations + 1):
            if _cancel_requested(cancel_event, cwd):
                raise cancel()

            # Admission
            if circuit_breaker.is_tripped():
                exit_reason = EXIT_CIRCUIT_OPEN
                error = circuit_breaker.get_trip_reason()
                if circuit_breaker.state.last_error:
                    error = f"{error}. Last error: {circuit_breaker.state.last_error}"
                break
            if not _admit(rate_limiter, config.rate_limit_wait_seconds,
                          lambda: _cancel_requested(cancel_event, cwd)):
                if _cancel_requested(cancel_event, cwd):
                    raise cancel()
                exit_reason = EXIT_RATE_LIMITED
                error = f"Rate limit still exhausted after waiting {config.rate_limit_wait_seconds:.0f}s"
                break
            if config.check_file_completion:
                file_reason = check_file_completion(cwd)
                if file_reason:
                    exit_reason = EXIT_FILE_SIGNAL
                    error = file_reason
                    break

            for ratio in ITERATION_WARNING_RATIOS:
                if iteration == math.ceil(max_iterations * ratio) and iteration < max_iterations:
                    print(f"[LOOP] Warning: {round(ratio * 100)}% of the iteration budget used "
                          f"({iteration}/{max_iterations})", flush=True)

            # Invoking
            state.current_iteration = iteration
            prompt = build_iteration_prompt(
                options.task, iteration, max_iterations, state.feedback_history, config.completion_promise,
            )
            print(f"\n[LOOP] Iteration {iteration}/{max_iterations}: running {agent.name}...", flush=True)
            agent_result = runner.invoke(
                prompt, cwd,
                auto_approve=config.auto_approve,
                max_turns=config.max_turns,
                on_line=_progress_printer(),
            )
            if agent_result.raw_output or agent_result.stderr:
                write_iteration_log(cwd, iteration, agent_result)
            if agent_result.cancelled:
                raise cancel()
            print(f"[LOOP] Agent finished in {format_duration(agent_result.duration_seconds)} "
                  f"(exit {agent_result.exit_code})", flush=True)

            # Cost
            iteration_cost = None
            if cost_tracker is not None:
                if agent_result.usage is not None and (agent_result.usage.input_tokens or agent_result.usage.output_tokens):
                    iteration_cost = cost_tracker.record_iteration_with_usage(agent_result.usage)
                else:
                    iteration_cost = cost_tracker.record_iteration(prompt, agent_result.output_text)
                state.accumulated_cost = cost_tracker.get_total_cost()
                print(f"[COST] Iteration: {format_cost(iteration_cost.cost.total_cost)} | "
                      f"Total: {format_cost(state.accumulated_cost)}", flush=True)

            # Validation backpressure
            validation_results: list = []
            if validator is not None and agent_result.exit_code == 0:
                validation_results = validator.run()
            validation_passed = all(r.success for r in validation_results)

            # Auto-commit
            commit_message = ""
            if config.commit and git is not None and agent_result.exit_code == 0 and validation_passed:
                if git.has_uncommitted_changes():
                    commit_message = f"feat: {summarize_changes(agent_result.output_text)}"
                    try:
                        git.commit(commit_message)
                        state.commits.append(commit_message)
                    except GitError as e:
                        print(f"[GIT] Commit failed: {e}", flush=True)
                        commit_message = ""

            completion = detect_completion(
                agent_result.output_text, config.completion_promise, config.require_exit_signal,
                config.min_completion_indicators,
            )
            status = _iteration_status(completion, agent_result.exit_code, validation_passed)
            record = IterationRecord(
                iteration=iteration,
                input_text=prompt,
                output_text=agent_result.output_text,
                status=status,
                agent_exit_code=agent_result.exit_code,
                tokens=iteration_cost.tokens if iteration_cost else None,
                cost=iteration_cost.cost if iteration_cost else None,
                cache=iteration_cost.cache if iteration_cost else None,
                validation=validation_results,
                duration_seconds=agent_result.duration_seconds,
            )
            state.records.append(record)
            if activity_log is not None:
                activity_log.append(ActivityEntry(
                    iteration=iteration,
                    status=status,
                    summary=summarize_changes(agent_result.output_text) if agent_result.output_text else "",
                    duration_seconds=agent_result.duration_seconds,
                    cost=record.cost,
                    tokens=record.tokens,
                    validation_results=validation_results,
                    commit=commit_message,
                ))

            # Deciding
            if _cancel_requested(cancel_event, cwd):
                raise cancel()
            if completion == "done" and validation_passed and agent_result.exit_code == 0:
                exit_reason = EXIT_COMPLETED
                record.exit_reason = exit_reason
                break
            if completion == "blocked":
                exit_reason = EXIT_BLOCKED
                error = "Agent reported it is blocked"
                record.exit_reason = exit_reason
                break
            if iteration >= max_iterations:
                exit_reason = EXIT_MAX_ITERATIONS
                error = f"Reached max iterations ({max_iterations})"
                record.exit_reason = exit_reason
                break
            if cost_tracker is not None:
                budget = cost_tracker.is_over_budget()
                if budget is not None:
                    exit_reason = EXIT_BUDGET_EXCEEDED
                    error = (f"Cost budget exceeded: {format_cost(budget.current_cost)} "
                             f"of {format_cost(budget.max_cost)}")
                    record.exit_reason = exit_reason
                    break

            if agent_result.exit_code == 0 and validation_passed:
                circuit_breaker.record_success()
            else:
                failure = _failure_text(agent_result, validation_results)
                circuit_breaker.record_failure(failure)
                if validation_results:
                    state.feedback_history.append((iteration, format_validation_feedback(validation_results)))
                else:
                    state.feedback_history.append((iteration, f"## Agent Error\n\n{failure}"))
                print(f"[LOOP] Iteration {iteration} failed; feedback carried into the next prompt", flush=True)
            sleep(INTER_ITERATION_DELAY_SECONDS)
    except KeyboardInterrupt:
        raise cancel()

    result = _build_result(state, exit_reason, error, cost_tracker, circuit_breaker, rate_limiter, start_time)

    if result.success and git is not None and state.commits and (config.push or config.pr):
        try:
            git.push(git.get_current_branch())
            if config.pr:
                title = config.pr_title or f"Ralph: {options.task.strip().splitlines()[0][:60]}"
                body = "\n".join(["## Summary", "", options.task.strip(), "", "## Commits", ""]
                                 + [f"- {c}" for c in state.commits])
                result.pr_url = git.create_pull_request(title, body)
        except GitError as e:
            print(f"[GIT] {e}", flush=True)

    if cost_tracker is not None:
        cost_tracker.write_report(Path(cwd) / ITERATION_LOG_DIR / COST_REPORT_NAME)
        if activity_log is not None:
            activity_log.append_summary(cost_tracker.format_summary())
        print(f"\n[COST] {cost_tracker.format_stats()}")

    print(f"\n=== Ralph Loop finished: {describe_exit(result)} ===", flush=True)
    return result


# =============================================================================
# CLI
# =============================================================================

def read_task(args: argparse.Namespace) -> str:
    if args.task_file:
        with open(args.task_file, "r") as f:
            return f.read()
    return args.task or ""


def main():
    parser = argparse.ArgumentParser(
        description="Run a coding agent in a loop until the task is done"
    )
    parser.add_argument("task", nargs="?", default="", help="Task description")
    parser.add_argument("--task-file", type=str, help="Read the task description from a file")
    parser.add_argument("--cwd", type=str, default=".", help="Project directory (default: .)")
    parser.add_argument("--config", type=str, default=None, help=f"Config file (default: <cwd>/{CONFIG_PATH})")
    parser.add_argument("--agent", type=str, choices=list(AGENT_DEFINITIONS), help="Agent to run")
    parser.add_argument("--model", type=str, default=None, help="Model passed to the agent and used for pricing")
    parser.add_argument("--max-iterations", type=int, default=None, help="Iteration limit (default: from plan)")
    parser.add_argument("--max-turns", type=int, default=None, help="Agent turns per iteration")
    parser.add_argument("--validate", action="store_true", default=None, help="Run build/lint/test after each iteration")
    parser.add_argument("--commit", action="store_true", default=None, help="Commit after each passing iteration")
    parser.add_argument("--push", action="store_true", default=None, help="Push commits when the loop succeeds")
    parser.add_argument("--pr", action="store_true", default=None, help="Open a pull request when the loop succeeds")
    parser.add_argument("--pr-title", type=str, default=None, help="Pull request title")
    parser.add_argument("--completion-promise", type=str, default=None, help="Exact string that marks completion")
    parser.add_argument("--require-exit-signal", action="store_true", default=None,
                        help="Only the completion promise ends the loop")
    parser.add_argument("--check-file-completion", action="store_true", default=None,
                        help="Also stop when RALPH_COMPLETE or a fully checked plan appears")
    parser.add_argument("--rate-limit", type=int, default=None, dest="rate_limit_per_hour",
                        help="Max agent calls per hour")
    parser.add_argument("--max-failures", type=int, default=None, dest="max_consecutive_failures",
                        help="Consecutive failures before the circuit breaker trips")
    parser.add_argument("--max-same-error", type=int, default=None, dest="max_same_error_count",
                        help="Repeats of one error before the circuit breaker trips")
    parser.add_argument("--max-cost", type=float, default=None, help="Stop once estimated cost reaches this USD amount")
    parser.add_argument("--no-cost", action="store_true", help="Disable cost tracking")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    global VERBOSE
    VERBOSE = args.verbose

    try:
        task = read_task(args)
    except IOError as e:
        print(f"Error reading task file: {e}")
        sys.exit(EXIT_CODE_FAILURE)
    if not task.strip():
        parser.error("a task description or --task-file is required")

    cwd = os.path.abspath(args.cwd)
    file_config = load_loop_config(args.config or os.path.join(cwd, CONFIG_PATH))
    verbose_log(f"Loaded config keys: {sorted(file_config)}", "CONFIG")
    try:
        config = build_loop_config(
            file_config,
            max_iterations=args.max_iterations,
            max_turns=args.max_turns,
            validate=args.validate,
            commit=args.commit,
            push=args.push,
            pr=args.pr,
            pr_title=args.pr_title,
            completion_promise=args.completion_promise,
            require_exit_signal=args.require_exit_signal,
            check_file_completion=args.check_file_completion,
            rate_limit_per_hour=args.rate_limit_per_hour,
            max_consecutive_failures=args.max_consecutive_failures,
            max_same_error_count=args.max_same_error_count,
            max_cost=args.max_cost,
            model=args.model,
            track_cost=False if args.no_cost else None,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(EXIT_CODE_FAILURE)

    try:
        agent = resolve_agent(args.agent or file_config.get("agent"))
        result = run_loop(LoopOptions(task=task, cwd=cwd, agent=agent, config=config))
    except PreconditionError as e:
        print(f"Error: {e}")
        sys.exit(EXIT_CODE_AGENT_UNAVAILABLE)
    except LoopCancelled as e:
        iterations = e.result.iterations if e.result else 0
        print(f"\n=== Ralph Loop cancelled after {iterations} iteration(s) ===")
        sys.exit(EXIT_CODE_CANCELLED)

    if result.pr_url:
        print(f"Pull request: {result.pr_url}")
    sys.exit(exit_code_for(result))


if __name__ == "__main__":
    main()
