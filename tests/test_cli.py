from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import make_candidate

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def env(tmp_path):
    environ = dict(os.environ)
    environ["PYTHONPATH"] = str(REPO_ROOT / "src")
    environ["REFLECTION_GATE_HOME"] = str(tmp_path / "home")
    environ.pop("CLAUDE_SESSION_ID", None)
    environ.pop("CLAUDE_PROJECT_DIR", None)
    return environ


def _run(env, *args: str, stdin: str = "") -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "reflection_gate.cli", *args],
        input=stdin,
        text=True,
        capture_output=True,
        env=env,
        check=False,
    )


def _hook(env, event: str, payload: dict) -> subprocess.CompletedProcess:
    return _run(env, "hook", event, stdin=json.dumps(payload))


def _close_ticket(env, project, session_id="s1", diff_size=80):
    base = {"session_id": session_id, "cwd": str(project), "tool_input": {"command": "beads close bd-3"}}
    assert _hook(env, "pre-tool-use", base).returncode == 0
    assert _hook(env, "post-tool-use", {**base, "tool_response": "closed bd-3", "diff_size": diff_size}).returncode == 0


class TestHookCommand:
    def test_idle_stop_approves(self, env, project):
        proc = _hook(env, "stop", {"session_id": "s1", "cwd": str(project), "diff_size": 0})
        assert proc.returncode == 0
        assert json.loads(proc.stdout)["kind"] == "approve"

    def test_stop_blocks_after_close_then_forces(self, env, project):
        _close_ticket(env, project)
        payload = {"session_id": "s1", "cwd": str(project)}

        codes = [_hook(env, "stop", payload).returncode for _ in range(3)]
        assert codes == [2, 2, 2]
        blocked = _hook(env, "stop", payload)
        assert blocked.returncode == 3
        assert "Circuit breaker tripped" in blocked.stderr

    def test_block_reason_on_stderr(self, env, project):
        proc = _hook(env, "stop", {"session_id": "s1", "cwd": str(project), "diff_size": 500})
        assert proc.returncode == 2
        reason = json.loads(proc.stderr.strip().splitlines()[-1])
        assert reason["decision"] == "block"
        assert "reflection-gate reflect" in reason["reason"]

    def test_garbage_input_fails_open(self, env, project):
        proc = _run(env, "--cwd", str(project), "hook", "stop", stdin="<<garbage>>")
        assert proc.returncode == 0

    def test_unknown_hook_fails_open(self, env, project):
        proc = _hook(env, "teardown", {"session_id": "s1", "cwd": str(project)})
        assert proc.returncode == 0


class TestCommands:
    def test_reflect_unblocks_stop(self, env, project, tmp_path):
        _close_ticket(env, project)
        assert _hook(env, "stop", {"session_id": "s1", "cwd": str(project)}).returncode == 2

        payload_file = tmp_path / "reflection.json"
        payload_file.write_text(json.dumps({"candidates": [make_candidate()]}))
        proc = _run(env, "--cwd", str(project), "reflect", "--session-id", "s1", "--file", str(payload_file))
        assert proc.returncode == 0, proc.stderr
        assert json.loads(proc.stdout)["gate_status"] == "reflected"

        assert _hook(env, "stop", {"session_id": "s1", "cwd": str(project)}).returncode == 0

    def test_reflect_requires_session(self, env, project):
        proc = _run(env, "--cwd", str(project), "reflect", stdin="[]")
        assert proc.returncode == 1
        assert "No session id" in proc.stderr

    def test_reflect_rejection_exits_nonzero(self, env, project):
        _close_ticket(env, project)
        proc = _run(env, "--cwd", str(project), "reflect", "--session-id", "s1", stdin="{broken")
        assert proc.returncode == 1
        assert json.loads(proc.stdout)["success"] is False

    def test_skip(self, env, project):
        _close_ticket(env, project)
        proc = _run(env, "--cwd", str(project), "skip", "--session-id", "s1", "only", "a", "typo")
        assert proc.returncode == 0
        assert json.loads(proc.stdout)["reason"] == "only a typo"

    def test_stats(self, env, project):
        proc = _run(env, "--cwd", str(project), "stats")
        assert proc.returncode == 0
        assert json.loads(proc.stdout)["aggregates"]["total_learnings"] == 0

    def test_list_and_trace(self, env, project, tmp_path):
        _close_ticket(env, project)
        payload_file = tmp_path / "reflection.json"
        payload_file.write_text(json.dumps([make_candidate()]))
        assert _run(env, "--cwd", str(project), "reflect", "--session-id", "s1", "--file", str(payload_file)).returncode == 0

        listed = _run(env, "--cwd", str(project), "list", "--status", "all")
        assert listed.returncode == 0, listed.stderr
        assert [l["summary"] for l in json.loads(listed.stdout)] == [make_candidate()["summary"]]

        traced = _run(env, "--cwd", str(project), "trace", "--session-id", "s1")
        assert traced.returncode == 0
        assert json.loads(traced.stdout)["trace"][-1]["kind"] == "reflection_complete"

    def test_trace_unknown_session_exits_nonzero(self, env, project):
        proc = _run(env, "--cwd", str(project), "trace", "--session-id", "ghost")
        assert proc.returncode == 1
