"""
tests/test_hook_engine.py
──────────────────────────
Test suite for lifecycle/control_plane/hook_engine.py

What we are testing
────────────────────
Hooks for one event run one after another in ascending priority, each with
its own retry budget inside one shared deadline. A failing hook is reported,
never raised, and never stops the hooks after it.

Test groups
────────────
Group 1: Ordering and registration  — priorities, ties, config, templates
Group 2: Retries and deadlines      — backoff, exhaustion, shared deadline
Group 3: Dispatch outcomes          — best-effort, events, payload, no executor
Group 4: Type inference             — explicit / script / kubectl / url
Group 5: ScriptExecutor             — real /bin/sh one-liners
Group 6: KubectlExecutor            — argv construction, error wrapping
Group 7: WebhookExecutor            — JSON body, status codes, transport errors
"""

from __future__ import annotations

import os
import subprocess
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
import requests

from lifecycle.shared.errors import ConfigurationError
from lifecycle.shared.events import EventBus
from lifecycle.shared.models import HookAction, HookEvent, HooksConfig, HookType
from lifecycle.control_plane.hook_engine import (
    PREDEFINED_HOOKS,
    HookEngine,
    HookExecutionError,
    KubectlExecutor,
    ScriptExecutor,
    WebhookExecutor,
    resolve_hook_type,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _RecordingExecutor:
    """Records every call; the first fail_times calls raise."""

    def __init__(self, fail_times: int = 0, fail_scripts: Optional[set] = None) -> None:
        self.calls: List[str] = []
        self.payloads: List[Dict[str, Any]] = []
        self.timeouts: List[float] = []
        self.fail_times = fail_times
        self.fail_scripts = set(fail_scripts or ())

    def execute(self, action: HookAction, payload: Dict[str, Any], timeout_s: float) -> None:
        self.calls.append(action.script or action.command or action.url)
        self.payloads.append(dict(payload))
        self.timeouts.append(timeout_s)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise HookExecutionError("transient failure")
        if action.script in self.fail_scripts:
            raise HookExecutionError(f"{action.script} failed")


def _engine(executor: Optional[_RecordingExecutor] = None, clock: Optional[_FakeClock] = None,
            event_bus: Optional[EventBus] = None) -> HookEngine:
    clock = clock or _FakeClock()
    executor = executor or _RecordingExecutor()
    return HookEngine(
        event_bus=event_bus,
        executors={HookType.SCRIPT: executor, HookType.KUBECTL: executor, HookType.HTTP: executor},
        clock=clock,
        sleep=clock.sleep,
    )


class _FakeRunner:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.calls: List[tuple] = []
        self.error = error

    def run(self, argv: List[str], timeout_s: Optional[float] = None,
            env: Optional[Dict[str, str]] = None) -> str:
        self.calls.append((argv, timeout_s, env))
        if self.error is not None:
            raise self.error
        return ""


class _StubResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class _StubSession:
    def __init__(self, status_code: int = 200, error: Optional[Exception] = None) -> None:
        self.posts: List[Dict[str, Any]] = []
        self.status_code = status_code
        self.error = error

    def post(self, url: str, json: Any = None, headers: Any = None, timeout: Any = None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return _StubResponse(self.status_code)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Ordering and registration
# ─────────────────────────────────────────────────────────────────────────────

class TestOrderingAndRegistration:

    def test_ascending_priority(self) -> None:
        executor = _RecordingExecutor()
        engine = _engine(executor)
        for priority in (10, 1, 5):
            engine.register_hook(HookEvent.POST_NODE_CREATE,
                                 HookAction(script=f"p{priority}"), priority=priority)
        engine.trigger_hooks(HookEvent.POST_NODE_CREATE, {})
        assert executor.calls == ["p1", "p5", "p10"]

    def test_ties_keep_registration_order(self) -> None:
        executor = _RecordingExecutor()
        engine = _engine(executor)
        for name in ("first", "second", "third"):
            engine.register_hook(HookEvent.PRE_UPGRADE, HookAction(script=name), priority=3)
        engine.trigger_hooks(HookEvent.PRE_UPGRADE)
        assert executor.calls == ["first", "second", "third"]

    def test_hook_ids_name_the_event(self) -> None:
        engine = _engine()
        hook_id = engine.register_hook("scale_up", HookAction(script="x"))
        assert hook_id.startswith("scale_up-")
        assert [h.id for h in engine.get_hooks(HookEvent.SCALE_UP)] == [hook_id]

    def test_unregister(self) -> None:
        executor = _RecordingExecutor()
        engine = _engine(executor)
        kept = engine.register_hook(HookEvent.PRE_NODE_DELETE, HookAction(script="kept"))
        removed = engine.register_hook(HookEvent.PRE_NODE_DELETE, HookAction(script="removed"))
        assert engine.unregister_hook(removed) is True
        assert engine.unregister_hook(removed) is False
        assert engine.unregister_hook(kept, event=HookEvent.SCALE_DOWN) is False
        engine.trigger_hooks(HookEvent.PRE_NODE_DELETE)
        assert executor.calls == ["kept"]

    def test_register_from_config(self) -> None:
        config = HooksConfig(
            post_node_create=[HookAction(script="a"), HookAction(script="b")],
            pre_upgrade=[HookAction(command="kubectl get nodes")],
        )
        engine = _engine()
        ids = engine.register_hooks_from_config(config)
        assert len(ids) == 3
        assert [h.priority for h in engine.get_hooks(HookEvent.POST_NODE_CREATE)] == [0, 1]
        assert len(engine.get_hooks(HookEvent.PRE_UPGRADE)) == 1
        assert engine.register_hooks_from_config(None) == []

    def test_register_from_config_backup_and_scaling_events(self) -> None:
        config = HooksConfig.model_validate({
            "backup_complete": [{"url": "https://hooks.example.com/backup"}],
            "scale_up": [{"script": "warm-image-cache.sh"}],
            "scale_down": [{"command": "kubectl get nodes"}],
        })
        engine = _engine()
        assert len(engine.register_hooks_from_config(config)) == 3
        for event in (HookEvent.BACKUP_COMPLETE, HookEvent.SCALE_UP, HookEvent.SCALE_DOWN):
            assert len(engine.get_hooks(event)) == 1

    def test_register_template(self) -> None:
        engine = _engine()
        engine.register_template("apply-essential-manifests")
        hooks = engine.get_hooks(HookEvent.POST_CLUSTER_READY)
        assert hooks[0].action.command == "apply -f /manifests/essential/"
        assert hooks[0].action.type == HookType.KUBECTL

    def test_unknown_template(self) -> None:
        with pytest.raises(ConfigurationError):
            _engine().register_template("make-coffee")

    def test_template_names_are_unique(self) -> None:
        names = [t.name for t in PREDEFINED_HOOKS]
        assert len(names) == len(set(names)) == 5


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Retries and deadlines
# ─────────────────────────────────────────────────────────────────────────────

class TestRetriesAndDeadlines:

    def test_retry_until_success_with_linear_backoff(self) -> None:
        clock = _FakeClock()
        executor = _RecordingExecutor(fail_times=2)
        engine = _engine(executor, clock)
        engine.register_hook(HookEvent.SCALE_UP, HookAction(script="flaky", retry_count=3))
        [result] = engine.trigger_hooks(HookEvent.SCALE_UP)
        assert result.success is True
        assert result.attempts == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_retries_exhausted(self) -> None:
        executor = _RecordingExecutor(fail_times=10)
        engine = _engine(executor)
        engine.register_hook(HookEvent.SCALE_UP, HookAction(script="broken", retry_count=2))
        [result] = engine.trigger_hooks(HookEvent.SCALE_UP)
        assert result.success is False
        assert result.attempts == 2
        assert "hook failed after 2 attempt(s)" in result.error
        assert "transient failure" in result.error

    def test_zero_retry_count_means_one_attempt(self) -> None:
        executor = _RecordingExecutor(fail_times=10)
        engine = _engine(executor)
        engine.register_hook(HookEvent.SCALE_UP, HookAction(script="once"))
        [result] = engine.trigger_hooks(HookEvent.SCALE_UP)
        assert result.attempts == 1
        assert executor.calls == ["once"]

    def test_attempts_share_one_deadline(self) -> None:
        clock = _FakeClock()
        executor = _RecordingExecutor(fail_times=10)
        engine = _engine(executor, clock)
        engine.register_hook(HookEvent.SCALE_UP,
                             HookAction(script="slow", retry_count=5, timeout_s=2.5))
        [result] = engine.trigger_hooks(HookEvent.SCALE_UP)
        # sleeps: 1s, then only the 1.5s that remain
        assert clock.sleeps == [1.0, 1.5]
        assert executor.timeouts == [2.5, 1.5]
        assert result.attempts == 2
        assert result.success is False
        assert "timed out" in result.error

    def test_default_timeout_applies(self) -> None:
        executor = _RecordingExecutor()
        engine = _engine(executor)
        engine.register_hook(HookEvent.SCALE_UP, HookAction(script="x"))
        engine.trigger_hooks(HookEvent.SCALE_UP)
        assert executor.timeouts == [60.0]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Dispatch outcomes
# ─────────────────────────────────────────────────────────────────────────────

class TestDispatchOutcomes:

    def test_failure_does_not_stop_later_hooks(self) -> None:
        executor = _RecordingExecutor(fail_scripts={"bad"})
        engine = _engine(executor)
        engine.register_hook(HookEvent.POST_UPGRADE, HookAction(script="bad"), priority=1)
        engine.register_hook(HookEvent.POST_UPGRADE, HookAction(script="good"), priority=2)
        results = engine.trigger_hooks(HookEvent.POST_UPGRADE)
        assert [r.success for r in results] == [False, True]
        assert executor.calls == ["bad", "good"]

    def test_no_hooks(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe("hooks_triggered", seen.append)
        assert _engine(event_bus=bus).trigger_hooks(HookEvent.BACKUP_COMPLETE, {"x": 1}) == []
        assert bus.flush(timeout=2.0)
        bus.shutdown()
        assert seen == []

    def test_payload_reaches_executor(self) -> None:
        executor = _RecordingExecutor()
        engine = _engine(executor)
        engine.register_hook(HookEvent.POST_NODE_CREATE, HookAction(script="x"))
        engine.trigger_hooks("post_node_create", {"node_name": "w-1", "is_spot": True})
        assert executor.payloads == [{"node_name": "w-1", "is_spot": True}]

    def test_events(self) -> None:
        bus = EventBus()
        seen: List[str] = []
        for event_type in ("hooks_triggered", "hook_completed", "hook_failed"):
            bus.subscribe(event_type, lambda e: seen.append(e.type))
        engine = _engine(_RecordingExecutor(fail_scripts={"bad"}), event_bus=bus)
        engine.register_hook(HookEvent.SCALE_DOWN, HookAction(script="bad"))
        engine.register_hook(HookEvent.SCALE_DOWN, HookAction(script="good"))
        engine.trigger_hooks(HookEvent.SCALE_DOWN)
        assert bus.flush(timeout=2.0)
        bus.shutdown()
        assert sorted(seen) == ["hook_completed", "hook_failed", "hooks_triggered"]

    def test_missing_executor_reported(self) -> None:
        engine = HookEngine(executors={HookType.HTTP: None})
        engine.register_hook(HookEvent.POST_CLUSTER_READY, HookAction(url="http://example.invalid"))
        [result] = engine.trigger_hooks(HookEvent.POST_CLUSTER_READY)
        assert result.success is False
        assert result.attempts == 0
        assert "no executor for hook type: http" in result.error

    def test_custom_executor_registration(self) -> None:
        executor = _RecordingExecutor()
        engine = HookEngine()
        engine.register_executor("kubectl", executor)
        engine.register_hook(HookEvent.POST_CLUSTER_READY, HookAction(command="apply -f a.yaml"))
        [result] = engine.trigger_hooks(HookEvent.POST_CLUSTER_READY)
        assert result.success is True
        assert executor.calls == ["apply -f a.yaml"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Type inference
# ─────────────────────────────────────────────────────────────────────────────

class TestTypeInference:

    @pytest.mark.parametrize("action, expected", [
        (HookAction(type=HookType.HTTP, script="x.sh"), HookType.HTTP),
        (HookAction(script="x.sh", url="http://a"), HookType.SCRIPT),
        (HookAction(command="kubectl get pods"), HookType.KUBECTL),
        (HookAction(command="apply -f manifests/"), HookType.KUBECTL),
        (HookAction(url="https://hooks.example.com/x"), HookType.HTTP),
        (HookAction(command="echo hello"), HookType.SCRIPT),
        (HookAction(), HookType.SCRIPT),
    ])
    def test_resolution(self, action: HookAction, expected: HookType) -> None:
        assert resolve_hook_type(action) == expected


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: ScriptExecutor
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs /bin/sh")
class TestScriptExecutor:

    def test_payload_exported_as_env(self) -> None:
        executor = ScriptExecutor(shell="/bin/sh")
        executor.execute(HookAction(script='test "$HOOK_NODE_NAME" = w-1'), {"node_name": "w-1"}, 5.0)

    def test_action_env(self) -> None:
        executor = ScriptExecutor(shell="/bin/sh", default_env={"GREETING": "hi"})
        executor.execute(HookAction(script='test "$GREETING" = hello', env={"GREETING": "hello"}),
                         {}, 5.0)

    def test_non_zero_exit(self) -> None:
        with pytest.raises(HookExecutionError) as exc_info:
            ScriptExecutor(shell="/bin/sh").execute(
                HookAction(command="echo boom >&2; exit 3"), {}, 5.0
            )
        assert "status 3" in str(exc_info.value)
        assert "boom" in str(exc_info.value)

    def test_script_file(self, tmp_path) -> None:
        script = tmp_path / "hook.sh"
        script.write_text('test "$HOOK_EVENT" = post_upgrade\n')
        ScriptExecutor(shell="/bin/sh").execute(HookAction(script=str(script)),
                                                {"event": "post_upgrade"}, 5.0)

    def test_timeout(self) -> None:
        with pytest.raises(HookExecutionError) as exc_info:
            ScriptExecutor(shell="/bin/sh").execute(HookAction(script="sleep 2"), {}, 0.2)
        assert "timed out" in str(exc_info.value)

    def test_missing_shell(self) -> None:
        with pytest.raises(HookExecutionError):
            ScriptExecutor(shell="/nonexistent/shell").execute(HookAction(script="true"), {}, 5.0)

    def test_nothing_to_run(self) -> None:
        with pytest.raises(HookExecutionError):
            ScriptExecutor().execute(HookAction(), {}, 5.0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: KubectlExecutor
# ─────────────────────────────────────────────────────────────────────────────

class TestKubectlExecutor:

    def test_argv(self) -> None:
        executor = KubectlExecutor(kubeconfig="/k/config", context="prod", runner=_FakeRunner())
        argv = executor.build_argv("kubectl apply -f 'my dir/x.yaml'")
        assert argv == ["kubectl", "--kubeconfig", "/k/config", "--context", "prod",
                        "apply", "-f", "my dir/x.yaml"]

    def test_runner_receives_timeout_and_env(self) -> None:
        runner = _FakeRunner()
        executor = KubectlExecutor(runner=runner)
        executor.execute(HookAction(command="get nodes", env={"A": "1"}), {}, 12.0)
        executor.execute(HookAction(command="get pods"), {}, 3.0)
        assert runner.calls[0] == (["kubectl", "get", "nodes"], 12.0, {"A": "1"})
        assert runner.calls[1][2] is None

    def test_non_zero_exit_wrapped(self) -> None:
        error = subprocess.CalledProcessError(1, ["kubectl"], output="", stderr="not found")
        with pytest.raises(HookExecutionError) as exc_info:
            KubectlExecutor(runner=_FakeRunner(error)).execute(HookAction(command="get x"), {}, 5.0)
        assert "status 1" in str(exc_info.value)
        assert "not found" in str(exc_info.value)

    def test_timeout_wrapped(self) -> None:
        error = subprocess.TimeoutExpired(["kubectl"], 5.0)
        with pytest.raises(HookExecutionError):
            KubectlExecutor(runner=_FakeRunner(error)).execute(HookAction(command="get x"), {}, 5.0)

    def test_unparseable_command(self) -> None:
        with pytest.raises(HookExecutionError):
            KubectlExecutor(runner=_FakeRunner()).execute(
                HookAction(command='apply -f "unterminated'), {}, 5.0
            )

    def test_empty_command(self) -> None:
        with pytest.raises(HookExecutionError):
            KubectlExecutor(runner=_FakeRunner()).execute(HookAction(), {}, 5.0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 7: WebhookExecutor
# ─────────────────────────────────────────────────────────────────────────────

class TestWebhookExecutor:

    def test_posts_json(self) -> None:
        session = _StubSession()
        executor = WebhookExecutor(session=session, headers={"X-Token": "abc"})
        when = datetime(2024, 1, 2, 3, 4, 5)
        executor.execute(HookAction(url="https://hooks.example.com/x"),
                         {"node_name": "w-1", "at": when}, 7.0)
        post = session.posts[0]
        assert post["url"] == "https://hooks.example.com/x"
        assert post["json"] == {"node_name": "w-1", "at": str(when)}
        assert post["headers"] == {"Content-Type": "application/json", "X-Token": "abc"}
        assert post["timeout"] == 7.0

    def test_non_2xx_fails(self) -> None:
        with pytest.raises(HookExecutionError) as exc_info:
            WebhookExecutor(session=_StubSession(status_code=503)).execute(
                HookAction(url="https://a"), {}, 1.0
            )
        assert "503" in str(exc_info.value)

    def test_transport_error_wrapped(self) -> None:
        session = _StubSession(error=requests.ConnectionError("refused"))
        with pytest.raises(HookExecutionError):
            WebhookExecutor(session=session).execute(HookAction(url="https://a"), {}, 1.0)

    def test_missing_url(self) -> None:
        with pytest.raises(HookExecutionError):
            WebhookExecutor(session=_StubSession()).execute(HookAction(), {}, 1.0)
