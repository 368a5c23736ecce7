# tests/test_iteration_loop.py
# Tests for run_loop driven by fake agent, validator and git collaborators.

import importlib.util
import json
import threading

import pytest

# ralph-loop.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "ralph_loop", "scripts/ralph-loop.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

Agent = mod.Agent
AgentResult = mod.AgentResult
CircuitBreakerConfig = mod.CircuitBreakerConfig
LoopCancelled = mod.LoopCancelled
LoopConfig = mod.LoopConfig
LoopOptions = mod.LoopOptions
PreconditionError = mod.PreconditionError
RateLimiter = mod.RateLimiter
RateLimiterConfig = mod.RateLimiterConfig
TokenUsage = mod.TokenUsage
ValidationResult = mod.ValidationResult
build_iteration_prompt = mod.build_iteration_prompt
estimate_tokens = mod.estimate_tokens
exit_code_for = mod.exit_code_for
run_loop = mod.run_loop

PROMISE = "<promise>COMPLETE</promise>"


def _ok(text, **kwargs):
    return AgentResult(exit_code=0, output_text=text, **kwargs)


def _fail(stderr="boom"):
    return AgentResult(exit_code=1, output_text="", stderr=stderr)


class FakeRunner:
    """Returns scripted AgentResults; the last one repeats."""

    def __init__(self, results, on_invoke=None):
        self.results = list(results)
        self.prompts = []
        self.on_invoke = on_invoke

    def invoke(self, prompt, cwd, auto_approve=True, max_turns=10, on_line=None):
        self.prompts.append(prompt)
        if on_line is not None:
            on_line(json.dumps({"type": "system", "subtype": "init"}))
        if self.on_invoke is not None:
            self.on_invoke(len(self.prompts))
        index = min(len(self.prompts), len(self.results)) - 1
        return self.results[index]


class FakeValidator:
    def __init__(self, rounds):
        self.rounds = list(rounds)
        self.calls = 0

    def run(self):
        self.calls += 1
        return self.rounds[min(self.calls, len(self.rounds)) - 1]


class FakeGit:
    def __init__(self, dirty=True):
        self.dirty = dirty
        self.commits = []
        self.pushed = []
        self.prs = []

    def has_uncommitted_changes(self):
        return self.dirty

    def commit(self, message):
        self.commits.append(message)

    def get_current_branch(self):
        return "main"

    def push(self, branch=None):
        self.pushed.append(branch)

    def create_pull_request(self, title, body, base=None):
        self.prs.append((title, base))
        return "https://github.com/acme/demo/pull/7"


def _agent(available=True):
    return Agent(type="claude-code", name="Fake Agent", command="fake", available=available)


def _run(tmp_path, runner, config=None, **kwargs):
    options = LoopOptions(task="Build the widget", cwd=str(tmp_path), agent=_agent(),
                          config=config or LoopConfig(max_iterations=5))
    return run_loop(options, runner=runner, sleep=lambda seconds: None, **kwargs)


def test_completes_when_promise_emitted(tmp_path):
    runner = FakeRunner([_ok(f"Implemented the widget. {PROMISE}")])
    result = _run(tmp_path, runner)
    assert result.success is True
    assert result.exit_reason == "completed"
    assert result.iterations == 1
    assert result.records[0].exit_reason == "completed"
    assert (tmp_path / ".ralph" / "activity.md").exists()
    assert (tmp_path / ".ralph" / "logs" / "cost-report.json").exists()
    assert exit_code_for(result) == 0


def test_circuit_opens_after_consecutive_failures(tmp_path):
    """Two failing iterations with a threshold of 2 stop before a third attempt."""
    runner = FakeRunner([_fail("fatal: cannot connect")])
    config = LoopConfig(max_iterations=5, circuit_breaker=CircuitBreakerConfig(max_consecutive_failures=2))
    result = _run(tmp_path, runner, config)
    assert result.exit_reason == "circuit_open"
    assert result.success is False
    assert result.iterations == 2
    assert len(runner.prompts) == 2
    assert "2 consecutive failures" in result.error
    assert exit_code_for(result) == 3


def test_require_exit_signal_continues_past_natural_language(tmp_path):
    runner = FakeRunner([_ok("I am finished with everything."), _ok(PROMISE)])
    config = LoopConfig(max_iterations=5, require_exit_signal=True)
    result = _run(tmp_path, runner, config)
    assert result.success is True
    assert result.iterations == 2
    assert result.records[0].status == "partial"


def test_validation_failure_blocks_completion_and_feeds_back(tmp_path):
    validator = FakeValidator([
        [ValidationResult(name="test", command="pytest", success=False, error="AssertionError: 1 != 2")],
        [ValidationResult(name="test", command="pytest", success=True)],
    ])
    runner = FakeRunner([_ok(PROMISE)])
    config = LoopConfig(max_iterations=5, validate=True)
    result = _run(tmp_path, runner, config, validator=validator)
    assert result.success is True
    assert result.iterations == 2
    assert validator.calls == 2
    assert result.records[0].status == "validation_failed"
    assert "## Validation Failed" not in runner.prompts[0]
    assert "## Validation Failed" in runner.prompts[1]
    assert "AssertionError: 1 != 2" in runner.prompts[1]


def test_validation_skipped_when_disabled(tmp_path):
    validator = FakeValidator([[ValidationResult(name="t", command="t", success=False)]])
    runner = FakeRunner([_ok(PROMISE)])
    result = _run(tmp_path, runner, LoopConfig(max_iterations=3, validate=False), validator=validator)
    assert result.success is True
    assert validator.calls == 0


def test_stops_at_max_iterations(tmp_path):
    runner = FakeRunner([_ok("Updated the parser, more to do.")])
    result = _run(tmp_path, runner, LoopConfig(max_iterations=3))
    assert result.exit_reason == "max_iterations"
    assert result.iterations == 3
    assert len(runner.prompts) == 3
    assert exit_code_for(result) == 2


def test_budget_exceeded_stops_loop(tmp_path):
    usage = TokenUsage(input_tokens=1_000_000, output_tokens=0)
    runner = FakeRunner([_ok("Working on it", usage=usage)])
    config = LoopConfig(max_iterations=5, model="sonnet", max_cost=1.0)
    result = _run(tmp_path, runner, config)
    assert result.exit_reason == "budget_exceeded"
    assert result.iterations == 1
    assert result.cost_summary.total_cost.total_cost == pytest.approx(3.0)
    assert exit_code_for(result) == 4


def test_cost_uses_heuristic_without_usage(tmp_path):
    runner = FakeRunner([_ok(f"done {PROMISE}")])
    result = _run(tmp_path, runner)
    record = result.records[0]
    assert record.tokens.input_tokens == estimate_tokens(runner.prompts[0])
    assert record.tokens.output_tokens == estimate_tokens(f"done {PROMISE}")


def test_unavailable_agent_raises_before_iterating(tmp_path):
    runner = FakeRunner([_ok(PROMISE)])
    options = LoopOptions(task="x", cwd=str(tmp_path), agent=_agent(available=False))
    with pytest.raises(PreconditionError):
        run_loop(options, runner=runner)
    assert runner.prompts == []


def test_cancellation_raises_with_partial_result(tmp_path):
    cancel_event = threading.Event()
    runner = FakeRunner([_ok("still working")], on_invoke=lambda n: cancel_event.set())
    with pytest.raises(LoopCancelled) as excinfo:
        _run(tmp_path, runner, cancel_event=cancel_event)
    partial = excinfo.value.result
    assert partial.exit_reason == "cancelled"
    assert partial.iterations == 1
    assert partial.records[0].exit_reason == "cancelled"


def test_stale_stop_file_cleared_at_start(tmp_path):
    stop_file = tmp_path / ".ralph" / ".stop"
    stop_file.parent.mkdir(parents=True)
    stop_file.write_text("")
    result = _run(tmp_path, FakeRunner([_ok(PROMISE)]))
    assert result.success is True
    assert not stop_file.exists()


def test_rate_limited_when_no_slot_frees_up(tmp_path):
    clock = {"now": 1000.0}

    def sleep(seconds):
        clock["now"] += seconds

    limiter = RateLimiter(RateLimiterConfig(max_calls_per_minute=1), clock=lambda: clock["now"], sleep=sleep)
    limiter.record_call()
    runner = FakeRunner([_ok(PROMISE)])
    config = LoopConfig(max_iterations=3, rate_limit_wait_seconds=10)
    result = _run(tmp_path, runner, config, rate_limiter=limiter)
    assert result.exit_reason == "rate_limited"
    assert result.iterations == 0
    assert runner.prompts == []
    assert exit_code_for(result) == 6


def test_blocked_agent_stops_loop(tmp_path):
    runner = FakeRunner([_ok("I'm stuck and cannot proceed without credentials.")])
    result = _run(tmp_path, runner)
    assert result.exit_reason == "blocked"
    assert result.iterations == 1
    assert exit_code_for(result) == 1


def test_file_signal_completes_before_invoking(tmp_path):
    (tmp_path / "RALPH_COMPLETE").write_text("")
    runner = FakeRunner([_ok("x")])
    result = _run(tmp_path, runner, LoopConfig(max_iterations=3, check_file_completion=True))
    assert result.success is True
    assert result.exit_reason == "file_signal"
    assert runner.prompts == []


def test_commits_each_passing_iteration_and_opens_pr(tmp_path):
    git = FakeGit(dirty=True)
    runner = FakeRunner([_ok("Added the widget module"), _ok(f"Updated docs {PROMISE}")])
    config = LoopConfig(max_iterations=5, commit=True, push=True, pr=True)
    result = _run(tmp_path, runner, config, git=git)
    assert result.success is True
    assert git.commits == ["feat: Added the widget module", f"feat: Updated docs {PROMISE}"[:56]]
    assert result.commits == git.commits
    assert git.pushed == ["main"]
    assert result.pr_url == "https://github.com/acme/demo/pull/7"


def test_no_commit_for_failed_iteration(tmp_path):
    git = FakeGit(dirty=True)
    runner = FakeRunner([_fail(), _ok(PROMISE)])
    result = _run(tmp_path, runner, LoopConfig(max_iterations=5, commit=True), git=git)
    assert result.success is True
    assert len(git.commits) == 1


def test_agent_error_feedback_reaches_next_prompt(tmp_path):
    runner = FakeRunner([_fail("ModuleNotFoundError: widget"), _ok(PROMISE)])
    _run(tmp_path, runner)
    assert "ModuleNotFoundError: widget" in runner.prompts[1]


def test_auto_iteration_budget_from_plan(tmp_path):
    (tmp_path / "IMPLEMENTATION_PLAN.md").write_text("- [ ] one\n- [ ] two\n")
    runner = FakeRunner([_ok("progress")])
    result = _run(tmp_path, runner, LoopConfig(max_iterations=None))
    assert result.exit_reason == "max_iterations"
    assert result.iterations == 4


def test_build_iteration_prompt_keeps_recent_feedback():
    history = [(i, f"feedback round {i}") for i in range(1, 6)]
    prompt = build_iteration_prompt("Do the thing", 6, 10, history)
    assert prompt.startswith("Do the thing")
    assert "iteration 6 of at most 10" in prompt
    assert PROMISE in prompt
    assert "feedback round 1" not in prompt
    assert "feedback round 2" not in prompt
    assert "feedback round 5" in prompt


def test_build_iteration_prompt_custom_promise():
    prompt = build_iteration_prompt("Task", 1, 3, [], completion_promise="SHIP_IT")
    assert "SHIP_IT" in prompt
    assert PROMISE not in prompt


def test_stop_file_interrupts_rate_limit_wait(tmp_path):
    clock = {"now": 1000.0}
    stop_file = tmp_path / ".ralph" / ".stop"

    def sleep(seconds):
        clock["now"] += seconds
        stop_file.parent.mkdir(parents=True, exist_ok=True)
        stop_file.write_text("")

    limiter = RateLimiter(RateLimiterConfig(max_calls_per_minute=1), clock=lambda: clock["now"], sleep=sleep)
    limiter.record_call()
    runner = FakeRunner([_ok(PROMISE)])
    config = LoopConfig(max_iterations=3, rate_limit_wait_seconds=600)
    with pytest.raises(LoopCancelled) as excinfo:
        _run(tmp_path, runner, config, rate_limiter=limiter)
    assert excinfo.value.result.exit_reason == "cancelled"
    assert runner.prompts == []
    assert clock["now"] - 1000.0 <= 5
