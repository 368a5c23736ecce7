#!/usr/bin/env -S python3 -u
"""
Ralph Batch: run a list of issues through the Ralph loop, one after another.

Each task gets its own auto/<source>-<id> branch created from the previous
task's branch, so the resulting pull requests form a stack that can be
merged in order.

Usage:
    python scripts/ralph-batch.py tasks.yaml [--cwd DIR] [--no-pr] [--verbose]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional

import yaml

# Import the loop engine from ralph-loop.py (hyphenated filename needs importlib)
import importlib.util
_loop_spec = importlib.util.spec_from_file_location(
    "ralph_loop", str(Path(__file__).resolve().parent / "ralph-loop.py"))
_loop_mod = importlib.util.module_from_spec(_loop_spec)
_loop_spec.loader.exec_module(_loop_mod)
GitError = _loop_mod.GitError
GitRepo = _loop_mod.GitRepo
LoopCancelled = _loop_mod.LoopCancelled
LoopConfig = _loop_mod.LoopConfig
LoopOptions = _loop_mod.LoopOptions
LoopResult = _loop_mod.LoopResult
PreconditionError = _loop_mod.PreconditionError
build_loop_config = _loop_mod.build_loop_config
describe_exit = _loop_mod.describe_exit
format_cost = _loop_mod.format_cost
load_loop_config = _loop_mod.load_loop_config
resolve_agent = _loop_mod.resolve_agent
run_loop = _loop_mod.run_loop
verbose_log = _loop_mod.verbose_log

# ─── Configuration ────────────────────────────────────────────────────

BRANCH_PREFIX = "auto"
DEFAULT_BATCH_MAX_ITERATIONS = 15
CLAIM_TIMEOUT_SECONDS = 30
IN_PROGRESS_LABEL = "in-progress"
TASK_BODY_LIMIT = 4000
TITLE_LIMIT = 72

# Conventional-commit type keyed by issue label
LABEL_COMMIT_TYPES = [
    (("bug", "fix", "defect"), "fix"),
    (("docs", "documentation"), "docs"),
    (("refactor",), "refactor"),
    (("test", "testing"), "test"),
    (("chore", "maintenance"), "chore"),
]

# ─── Data Types ───────────────────────────────────────────────────────

@dataclass
class BatchTask:
    id: str
    title: str
    description: str = ""
    source: str = "github"
    project: str = ""
    labels: list = field(default_factory=list)
    url: str = ""


@dataclass
class TaskResult:
    task: BatchTask
    success: bool = False
    branch: str = ""
    base_branch: str = ""
    pr_url: str = ""
    error: Optional[str] = None
    iterations: int = 0
    cost: float = 0.0
    committed: bool = False


@dataclass
class BatchOptions:
    cwd: str
    agent: object
    loop_config: LoopConfig = field(default_factory=LoopConfig)
    commit: bool = True
    push: bool = True
    pr: bool = True
    max_iterations: Optional[int] = None  # overrides loop_config.max_iterations


# ─── Task Sources ─────────────────────────────────────────────────────

def load_batch_tasks(path: str) -> list[BatchTask]:
    """Load tasks from a YAML file.

    Expects a top-level "tasks" list (or a bare list) of mappings with at
    least id and title. Entries missing either are skipped with a warning.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    entries = data.get("tasks", []) if isinstance(data, dict) else data
    defaults = data if isinstance(data, dict) else {}
    tasks = []
    for entry in entries or []:
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("title"):
            print(f"[BATCH] Skipping malformed task entry: {entry!r}")
            continue
        tasks.append(BatchTask(
            id=str(entry["id"]),
            title=str(entry["title"]),
            description=str(entry.get("description", "") or ""),
            source=str(entry.get("source", defaults.get("source", "github"))),
            project=str(entry.get("project", defaults.get("project", ""))),
            labels=[str(label) for label in entry.get("labels", []) or []],
            url=str(entry.get("url", "") or ""),
        ))
    return tasks


def claim_task(task: BatchTask) -> None:
    """Mark a task as in progress in its tracker. Failures are only logged."""
    if task.source == "github" and task.project:
        cmd = ["gh", "issue", "edit", task.id, "-R", task.project, "--add-label", IN_PROGRESS_LABEL]
    elif task.source == "linear":
        cmd = ["linear", "issue", "update", task.id, "--state", "In Progress"]
    else:
        return
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=CLAIM_TIMEOUT_SECONDS)
        if proc.returncode != 0:
            verbose_log(f"Claim failed for {task.id}: {proc.stderr.strip()}", "BATCH")
    except (OSError, subprocess.SubprocessError) as e:
        verbose_log(f"Claim failed for {task.id}: {e}", "BATCH")


# ─── Prompt / Commit / PR Text ────────────────────────────────────────

def task_branch_name(task: BatchTask) -> str:
    return f"{BRANCH_PREFIX}/{task.source}-{task.id}"


def commit_type_for(task: BatchTask) -> str:
    """Conventional commit type from the labels, else the title's first word."""
    labels = [label.lower() for label in task.labels]
    for keywords, commit_type in LABEL_COMMIT_TYPES:
        if any(keyword in label for label in labels for keyword in keywords):
            return commit_type
    words = task.title.lower().split()
    first_word = words[0].rstrip(":") if words else ""
    for keywords, commit_type in LABEL_COMMIT_TYPES:
        if first_word in keywords:
            return commit_type
    return "feat"


def build_task_prompt(task: BatchTask) -> str:
    description = task.description.strip() or "(no description provided)"
    if len(description) > TASK_BODY_LIMIT:
        description = description[:TASK_BODY_LIMIT] + "\n... (truncated)"
    lines = [
        f"# Task: {task.title}",
        "",
        f"Source: {task.source} #{task.id}",
    ]
    if task.url:
        lines.append(f"URL: {task.url}")
    lines.extend([
        "",
        "## Description",
        "",
        description,
        "",
        "## Instructions",
        "",
        "1. Implement what the description asks for, keeping changes focused on this task.",
        "2. Add or update tests for the change.",
        "3. Make sure the project builds and its tests pass.",
        "4. Do not commit; the batch runner commits your work when the loop ends.",
    ])
    return "\n".join(lines)


def build_commit_message(task: BatchTask) -> str:
    subject = f"{commit_type_for(task)}: {task.title}"[:TITLE_LIMIT]
    reference = f"{task.project}#{task.id}" if task.project else f"{task.source}#{task.id}"
    return f"{subject}\n\nCloses {reference}"


def build_pr_body(task: BatchTask, result: TaskResult) -> str:
    lines = [
        "## Summary",
        "",
        f"Automated implementation of {task.source} #{task.id}: {task.title}",
        "",
    ]
    if task.url:
        lines.extend([f"Issue: {task.url}", ""])
    lines.extend([
        "## Loop",
        "",
        f"- Iterations: {result.iterations}",
        f"- Estimated cost: {format_cost(result.cost)}",
        f"- Outcome: {'completed' if result.success else 'incomplete, needs review'}",
    ])
    if result.base_branch.startswith(f"{BRANCH_PREFIX}/"):
        lines.extend([
            "",
            "## Merge Order",
            "",
            f"This branch is stacked on `{result.base_branch}`. Merge that pull request first, "
            "then retarget this one to the default branch.",
        ])
    return "\n".join(lines)


# ─── Executor ─────────────────────────────────────────────────────────

def _finish_task(task: BatchTask, result: TaskResult, loop_result: LoopResult,
                 options: BatchOptions, git) -> None:
    """Commit, push and open a PR for a task's branch once its loop ends."""
    if not options.commit or not git.has_uncommitted_changes():
        return
    git.commit(build_commit_message(task))
    result.committed = True
    if not options.push:
        return
    git.push(result.branch)
    if options.pr:
        title = f"{commit_type_for(task)}: {task.title}"[:TITLE_LIMIT]
        if not loop_result.success:
            title = f"WIP: {title}"[:TITLE_LIMIT]
        result.pr_url = git.create_pull_request(title, build_pr_body(task, result), base=result.base_branch)


def execute_task_batch(
    tasks: list[BatchTask],
    options: BatchOptions,
    git=None,
    claim: Callable[[BatchTask], None] = claim_task,
    loop_runner: Optional[Callable[..., LoopResult]] = None,
    on_task_start: Optional[Callable[[BatchTask, int], None]] = None,
    on_task_complete: Optional[Callable[[TaskResult], None]] = None,
    on_task_fail: Optional[Callable[[TaskResult], None]] = None,
) -> list[TaskResult]:
    """Run tasks sequentially on cascading branches.

    Task N's branch is cut from task N-1's branch (the first from the branch
    checked out at start), and its PR targets that branch. A failed task
    does not stop the batch. The original branch is checked out again at the
    end. Cancellation and a missing agent stop the whole batch.
    """
    git = git or GitRepo(options.cwd)
    loop_runner = loop_runner or run_loop
    loop_config = replace(
        options.loop_config, commit=False, push=False, pr=False,
        max_iterations=(options.max_iterations or options.loop_config.max_iterations
                        or DEFAULT_BATCH_MAX_ITERATIONS),
    )

    original_branch = git.get_current_branch()
    previous_branch = original_branch
    results: list[TaskResult] = []
    print(f"\n=== Ralph Batch: {len(tasks)} task(s) from {original_branch} ===")

    try:
        for index, task in enumerate(tasks):
            result = TaskResult(task=task, branch=task_branch_name(task), base_branch=previous_branch)
            print(f"\n[BATCH] Task {index + 1}/{len(tasks)}: {task.title} "
                  f"({result.branch} <- {previous_branch})", flush=True)
            if on_task_start:
                on_task_start(task, index)
            try:
                claim(task)
                if git.get_current_branch() != previous_branch:
                    git.checkout(previous_branch)
                if git.branch_exists(result.branch):
                    git.checkout(result.branch)
                else:
                    git.create_branch(result.branch)

                loop_result = loop_runner(LoopOptions(
                    task=build_task_prompt(task), cwd=options.cwd, agent=options.agent, config=loop_config,
                ))
                result.iterations = loop_result.iterations
                if loop_result.cost_summary is not None:
                    result.cost = loop_result.cost_summary.total_cost.total_cost
                result.success = loop_result.success
                if not loop_result.success:
                    result.error = describe_exit(loop_result)
                _finish_task(task, result, loop_result, options, git)
            except (LoopCancelled, PreconditionError):
                raise
            except (GitError, OSError, subprocess.SubprocessError) as e:
                result.success = False
                result.error = str(e)

            results.append(result)
            if result.success:
                print(f"[BATCH] Task {task.id} completed", flush=True)
                if on_task_complete:
                    on_task_complete(result)
            else:
                print(f"[BATCH] Task {task.id} failed: {result.error}", flush=True)
                if on_task_fail:
                    on_task_fail(result)

            if git.branch_exists(result.branch):
                previous_branch = result.branch
    finally:
        try:
            git.checkout(original_branch)
        except GitError as e:
            print(f"[BATCH] WARNING: could not return to {original_branch}: {e}", flush=True)

    return results


def format_batch_summary(results: list[TaskResult]) -> str:
    succeeded = sum(1 for r in results if r.success)
    lines = [
        f"Batch finished: {succeeded}/{len(results)} task(s) succeeded, "
        f"total cost {format_cost(sum(r.cost for r in results))}",
    ]
    for result in results:
        mark = "✓" if result.success else "✗"
        detail = result.pr_url or result.error or result.branch
        lines.append(f"  {mark} {result.task.source}#{result.task.id} {result.task.title} - {detail}")
    return "\n".join(lines)


# ─── CLI ──────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Run a batch of issues through the Ralph loop")
    parser.add_argument("tasks_file", help="YAML file listing the tasks")
    parser.add_argument("--cwd", type=str, default=".", help="Project directory (default: .)")
    parser.add_argument("--agent", type=str, default=None, help="Agent to run")
    parser.add_argument("--max-iterations", type=int, default=None,
                        help=f"Iteration limit per task (default: config, else {DEFAULT_BATCH_MAX_ITERATIONS})")
    parser.add_argument("--no-validate", action="store_true", help="Skip build/lint/test validation")
    parser.add_argument("--no-push", action="store_true", help="Commit locally without pushing")
    parser.add_argument("--no-pr", action="store_true", help="Push branches without opening pull requests")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    _loop_mod.VERBOSE = args.verbose

    try:
        tasks = load_batch_tasks(args.tasks_file)
    except (IOError, yaml.YAMLError) as e:
        print(f"Error loading tasks: {e}")
        sys.exit(1)
    if not tasks:
        print("No tasks to run")
        sys.exit(0)

    cwd = os.path.abspath(args.cwd)
    file_config = load_loop_config(os.path.join(cwd, _loop_mod.CONFIG_PATH))
    try:
        loop_config = build_loop_config(
            file_config,
            validate=False if args.no_validate else True,
            max_iterations=args.max_iterations,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        agent = resolve_agent(args.agent or file_config.get("agent"))
        results = execute_task_batch(tasks, BatchOptions(
            cwd=cwd,
            agent=agent,
            loop_config=loop_config,
            push=not args.no_push,
            pr=not args.no_pr and not args.no_push,
        ))
    except PreconditionError as e:
        print(f"Error: {e}")
        sys.exit(_loop_mod.EXIT_CODE_AGENT_UNAVAILABLE)
    except LoopCancelled:
        print("\n=== Ralph Batch cancelled ===")
        sys.exit(_loop_mod.EXIT_CODE_CANCELLED)

    print("\n" + format_batch_summary(results))
    sys.exit(0 if all(r.success for r in results) else 1)


if __name__ == "__main__":
    main()
