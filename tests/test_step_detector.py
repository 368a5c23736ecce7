# tests/test_step_detector.py
# Unit tests for agent event parsing, progress step labels, completion
# detection and implementation-plan task counting.

import importlib.util
import json

# ralph-loop.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "ralph_loop", "scripts/ralph-loop.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

ResultEvent = mod.ResultEvent
SystemEvent = mod.SystemEvent
TextBlock = mod.TextBlock
ToolUse = mod.ToolUse
Unrecognized = mod.Unrecognized
analyze_response = mod.analyze_response
calculate_optimal_iterations = mod.calculate_optimal_iterations
check_file_completion = mod.check_file_completion
detect_completion = mod.detect_completion
detect_step = mod.detect_step
estimate_tasks_from_content = mod.estimate_tasks_from_content
extract_text = mod.extract_text
parse_agent_event = mod.parse_agent_event
parse_plan_tasks = mod.parse_plan_tasks


def _tool_line(name, **tool_input):
    return json.dumps({
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": name, "input": tool_input}]},
    })


def _text_line(text):
    return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


# --- parse_agent_event ---


def test_parse_tool_use():
    event = parse_agent_event(_tool_line("Read", file_path="/repo/src/app.py"))
    assert isinstance(event, ToolUse)
    assert event.name == "Read"
    assert event.input["file_path"] == "/repo/src/app.py"


def test_parse_result_with_usage():
    line = json.dumps({
        "type": "result",
        "result": "Done. <promise>COMPLETE</promise>",
        "total_cost_usd": 0.05,
        "usage": {"input_tokens": 1200, "output_tokens": 300},
    })
    event = parse_agent_event(line)
    assert isinstance(event, ResultEvent)
    assert event.text.startswith("Done.")
    assert event.usage.input_tokens == 1200
    assert event.usage.output_tokens == 300


def test_parse_system_and_user_events():
    assert parse_agent_event('{"type": "system", "subtype": "init"}') == SystemEvent(subtype="init")
    assert parse_agent_event('{"type": "user", "message": {}}') == SystemEvent(subtype="tool_result")


def test_parse_unrecognized_lines():
    assert isinstance(parse_agent_event("plain text output"), Unrecognized)
    assert isinstance(parse_agent_event("{not json"), Unrecognized)
    assert isinstance(parse_agent_event('{"type": "ping"}'), Unrecognized)
    assert isinstance(parse_agent_event(""), Unrecognized)


# --- detect_step ---


def test_step_for_system_init():
    assert detect_step('{"type": "system", "subtype": "init"}') == "Starting up..."


def test_step_for_read_uses_file_name():
    assert detect_step(_tool_line("Read", file_path="/a/b/config.py")) == "Reading config.py..."


def test_step_for_search_tools():
    assert detect_step(_tool_line("Glob", pattern="**/*.py")) == "Searching files..."
    assert detect_step(_tool_line("Grep", pattern="TODO")) == "Searching code..."


def test_step_for_bash_commands():
    assert detect_step(_tool_line("Bash", command="npm install lodash")) == "Installing dependencies..."
    assert detect_step(_tool_line("Bash", command="git commit -m 'wip'")) == "Committing changes..."
    assert detect_step(_tool_line("Bash", command="git add -A")) == "Staging files..."
    assert detect_step(_tool_line("Bash", command="python -m pytest -q")) == "Running tests..."
    assert detect_step(_tool_line("Bash", command="npx eslint src")) == "Linting code..."
    assert detect_step(_tool_line("Bash", command="npm run build")) == "Building project..."
    assert detect_step(_tool_line("Bash", command="mkdir -p src/lib")) == "Creating directories..."


def test_step_for_unclassified_bash_uses_description():
    line = _tool_line("Bash", command="ls -la", description="List the files in the project root now")
    assert detect_step(line) == "List the files in the project ..."
    assert detect_step(_tool_line("Bash", command="ls -la")) == "Running command..."


def test_step_for_writes():
    assert detect_step(_tool_line("Write", file_path="tests/test_widget.py")) == "Writing tests..."
    assert detect_step(_tool_line("Edit", file_path="src/widget.test.ts")) == "Writing tests..."
    assert detect_step(_tool_line("Edit", file_path="src/widget.py")) == "Writing widget.py..."


def test_step_for_other_events():
    assert detect_step(_text_line("Let me look at this")) == "Thinking..."
    assert detect_step('{"type": "user", "message": {}}') == "Processing..."
    assert detect_step('{"type": "result", "result": "ok"}') == "Finishing up..."
    assert detect_step(_tool_line("Task", prompt="explore")) == "Running subagent..."
    assert detect_step(_tool_line("WebFetch", url="https://example.com")) == "Fetching from web..."
    assert detect_step(_tool_line("Frobnicate")) == "Using Frobnicate..."


def test_step_for_flat_and_block_start_formats():
    assert detect_step('{"tool": "grep", "pattern": "x"}') == "Searching code..."
    line = json.dumps({"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Glob"}})
    assert detect_step(line) == "Searching files..."


def test_step_none_for_noise():
    assert detect_step("random log line") is None
    assert detect_step('{"type": "ping"}') is None


def test_extract_text():
    assert extract_text(_text_line("hello")) == "hello"
    assert extract_text('{"type": "result", "result": "final answer"}') == "final answer"
    assert extract_text(_tool_line("Read", file_path="x")) == ""
    assert extract_text("not json") == ""


# --- completion ---


def test_promise_tag_means_done():
    assert detect_completion("All set. <promise>COMPLETE</promise>") == "done"


def test_require_exit_signal_ignores_natural_language():
    assert detect_completion("I am finished with everything", require_exit_signal=True) == "continue"
    assert detect_completion("All tasks are complete.", require_exit_signal=True) == "continue"
    assert detect_completion("ok <promise>COMPLETE</promise>", require_exit_signal=True) == "done"


def test_require_exit_signal_with_custom_promise():
    output = "done <promise>COMPLETE</promise>"
    assert detect_completion(output, completion_promise="SHIP_IT", require_exit_signal=True) == "continue"
    assert detect_completion("SHIP_IT", completion_promise="SHIP_IT", require_exit_signal=True) == "done"


def test_semantic_completion_without_exit_signal_requirement():
    assert detect_completion("All tasks are complete.") == "done"
    assert detect_completion("EXIT_SIGNAL: true") == "done"
    assert detect_completion("RALPH_COMPLETE") == "done"


def test_progress_keeps_going():
    assert detect_completion("Created the parser. Next, I'll add tests.") == "continue"
    assert detect_completion("") == "continue"


def test_stuck_output_is_blocked():
    output = "I'm stuck and cannot proceed without the API key."
    assert detect_completion(output) == "blocked"
    assert detect_completion(output, require_exit_signal=True) == "blocked"
    assert detect_completion("<promise>BLOCKED</promise>") == "blocked"


def test_analyze_response_confidence():
    assert analyze_response("hello").confidence == "low"
    assert analyze_response("All tasks are complete").confidence == "high"
    assert analyze_response("<promise>COMPLETE</promise>").has_explicit_exit is True
    assert analyze_response("Implemented the feature, tests are passing").completion_score > 0


# --- file completion ---


def test_file_completion_marker(tmp_path):
    assert check_file_completion(tmp_path) is None
    (tmp_path / "RALPH_COMPLETE").write_text("")
    assert "RALPH_COMPLETE" in check_file_completion(tmp_path)


def test_file_completion_plan_fully_checked(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text("- [x] one\n- [ ] two\n")
    assert check_file_completion(tmp_path) is None
    plan.write_text("- [x] one\n- [X] two\n")
    assert "2 tasks" in check_file_completion(tmp_path)


# --- plan tasks / iteration budget ---


HIERARCHICAL_PLAN = """# Plan

## Task 1: Setup
- [x] scaffold
- [x] config

## Task 2: Build
- [x] parser
- [ ] evaluator

### Phase 3: Ship
- [ ] release notes
"""


def test_parse_hierarchical_plan(tmp_path):
    (tmp_path / "IMPLEMENTATION_PLAN.md").write_text(HIERARCHICAL_PLAN)
    count = parse_plan_tasks(tmp_path)
    assert count.total == 3
    assert count.completed == 1
    assert count.pending == 2
    assert [t.name for t in count.tasks] == ["Setup", "Build", "Ship"]
    assert len(count.tasks[1].subtasks) == 2


def test_parse_flat_plan(tmp_path):
    (tmp_path / "IMPLEMENTATION_PLAN.md").write_text("- [x] one\n- [ ] two\n* [ ] three\n")
    count = parse_plan_tasks(tmp_path)
    assert (count.total, count.completed, count.pending) == (3, 1, 2)


def test_parse_missing_plan(tmp_path):
    assert parse_plan_tasks(tmp_path).total == 0


def test_estimate_tasks_from_content():
    assert estimate_tasks_from_content("- [ ] a\n- [ ] b\n") == 2
    assert estimate_tasks_from_content("## A\n## B\n- x\n- y\n- z\n- w\n- v\n") == 2
    assert estimate_tasks_from_content("- a\n" * 12) == 3
    assert estimate_tasks_from_content("") == 0


def test_optimal_iterations_without_plan(tmp_path):
    iterations, _ = calculate_optimal_iterations(tmp_path, "")
    assert iterations == 7
    iterations, _ = calculate_optimal_iterations(tmp_path, "- [ ] a\n" * 5)
    assert iterations == 7
    iterations, _ = calculate_optimal_iterations(tmp_path, "- [ ] a\n" * 20)
    assert iterations == 15


def test_optimal_iterations_from_plan(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text(HIERARCHICAL_PLAN)
    assert calculate_optimal_iterations(tmp_path)[0] == 4
    plan.write_text("- [x] done\n")
    assert calculate_optimal_iterations(tmp_path)[0] == 3
    plan.write_text("- [ ] todo\n" * 30)
    assert calculate_optimal_iterations(tmp_path)[0] == 25


def test_min_completion_indicators():
    output = "All tasks are complete."
    assert analyze_response(output).completion_indicators
    assert detect_completion(output, min_completion_indicators=2) == "continue"
    both = "All tasks are complete. Nothing left to do."
    assert len(analyze_response(both).completion_indicators) == 2
    assert detect_completion(both, min_completion_indicators=2) == "done"


def test_legacy_markers_case_insensitive():
    assert detect_completion("<task_done>") == "done"
    assert detect_completion("<TASK_BLOCKED> waiting on review") == "blocked"


def test_exit_signal_wins_over_stuck_phrases():
    output = "Earlier I was stuck, I'm blocked no longer.\nEXIT_SIGNAL: true"
    assert detect_completion(output) == "done"
    assert analyze_response(output).stuck_indicators
