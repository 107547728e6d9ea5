"""
lifecycle/control_plane/hook_engine.py
──────────────────────────────────────
HookEngine: priority-ordered, retryable side effects on lifecycle events.

What this is
─────────────
Operators attach hooks to named events (post_node_create, pre_upgrade, ...).
A hook is a HookAction: a script, a kubectl command or a webhook. When a
component reaches the event it calls trigger_hooks(event, payload).

Ordering
─────────
Hooks for one event run SEQUENTIALLY in ascending priority. Equal priorities
keep registration order. Priorities 10, 1, 5 always fire as 1, 5, 10.

Executor resolution
────────────────────
  action.type set                         → that executor
  action.script set                       → script
  action.command is a kubectl-like verb   → kubectl
  action.url set                          → http
  otherwise                               → script (runs action.command)

Timeouts and retries
─────────────────────
  • Each hook gets one deadline: action.timeout_s, or DEFAULT_HOOK_TIMEOUT_S
    (60s). All of its attempts share it; every attempt gets the time that
    remains.
  • attempts = max(1, action.retry_count). Between attempts the engine
    sleeps attempt × backoff_s (1s, 2s, ... by default).
  • A hook that fails every attempt is logged, announced as hook_failed and
    reported in the returned HookResult. It never aborts the remaining hooks:
    hooks are best-effort notifications, not a transaction.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import shlex
import subprocess
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Union

import requests
from pydantic import BaseModel

from lifecycle.shared.errors import ConfigurationError, LifecycleError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.interfaces import CommandRunner, HookExecutor
from lifecycle.shared.models import (
    HookAction,
    HookEvent,
    HookRegistration,
    HookResult,
    HooksConfig,
    HookType,
)
from lifecycle.control_plane.upgrade_strategies import SubprocessRunner

logger = logging.getLogger(__name__)

# ── Hook engine constants ─────────────────────────────────────────────────────

DEFAULT_HOOK_TIMEOUT_S: float = 60.0
"""Per-hook deadline when HookAction.timeout_s is 0."""

DEFAULT_RETRY_BACKOFF_S: float = 1.0
"""Linear backoff unit: sleep attempt × this between attempts."""

DEFAULT_SHELL: str = "/bin/bash"

KUBECTL_VERBS = frozenset({
    "kubectl", "apply", "get", "create", "delete", "patch", "label",
    "annotate", "rollout", "scale", "cordon", "uncordon", "drain", "taint",
})
"""First words that mark HookAction.command as a kubectl invocation."""


class HookExecutionError(LifecycleError):
    """One attempt of a hook failed. Retried by the engine."""


# ─────────────────────────────────────────────────────────────────────────────
# Executors
# ─────────────────────────────────────────────────────────────────────────────

class ScriptExecutor:
    """
    Runs action.script (or action.command) with a shell.

    A script that names an existing file is run as `shell <file>`, anything
    else as `shell -c <text>`. The environment is the current process env,
    then default_env, then action.env, then one HOOK_<KEY> variable per
    payload entry.
    """

    def __init__(
        self,
        shell: str = DEFAULT_SHELL,
        work_dir: Optional[str] = None,
        default_env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.shell = shell
        self.work_dir = work_dir
        self.default_env = dict(default_env or {})

    def execute(self, action: HookAction, payload: Mapping[str, Any], timeout_s: float) -> None:
        script = action.script or action.command
        if not script:
            raise HookExecutionError("no script or command specified")

        if os.path.isfile(script):
            argv = [self.shell, script]
        else:
            argv = [self.shell, "-c", script]

        env = dict(os.environ)
        env.update(self.default_env)
        env.update(action.env)
        for key, value in (payload or {}).items():
            env[f"HOOK_{key.upper()}"] = str(value)

        try:
            completed = subprocess.run(
                argv,
                cwd=self.work_dir,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise HookExecutionError(f"script timed out after {timeout_s:.1f}s") from exc
        except OSError as exc:
            raise HookExecutionError(f"script could not start: {exc}") from exc

        if completed.returncode != 0:
            output = (completed.stdout + completed.stderr).strip()
            raise HookExecutionError(
                f"script exited with status {completed.returncode}: {output}"
            )


class KubectlExecutor:
    """
    Runs action.command as kubectl arguments.

    The command is split with shlex; a leading "kubectl" is dropped so both
    "apply -f x.yaml" and "kubectl apply -f x.yaml" work.
    """

    def __init__(
        self,
        kubeconfig: str = "",
        context: str = "",
        runner: Optional[CommandRunner] = None,
        kubectl: str = "kubectl",
    ) -> None:
        self.kubeconfig = kubeconfig
        self.context = context
        self.kubectl = kubectl
        self._runner = runner if runner is not None else SubprocessRunner()

    def build_argv(self, command: str) -> List[str]:
        parts = shlex.split(command)
        if parts and parts[0] == "kubectl":
            parts = parts[1:]
        argv = [self.kubectl]
        if self.kubeconfig:
            argv += ["--kubeconfig", self.kubeconfig]
        if self.context:
            argv += ["--context", self.context]
        return argv + parts

    def execute(self, action: HookAction, payload: Mapping[str, Any], timeout_s: float) -> None:
        if not action.command:
            raise HookExecutionError("no kubectl command specified")
        try:
            argv = self.build_argv(action.command)
        except ValueError as exc:
            raise HookExecutionError(f"unparseable kubectl command: {exc}") from exc
        try:
            self._runner.run(argv, timeout_s, env=dict(action.env) or None)
        except subprocess.CalledProcessError as exc:
            output = ((exc.stdout or "") + (exc.stderr or "")).strip()
            raise HookExecutionError(f"kubectl exited with status {exc.returncode}: {output}") from exc
        except subprocess.TimeoutExpired as exc:
            raise HookExecutionError(f"kubectl timed out after {timeout_s:.1f}s") from exc
        except OSError as exc:
            raise HookExecutionError(f"kubectl could not start: {exc}") from exc


class WebhookExecutor:
    """POSTs the payload as JSON to action.url. Any non-2xx status fails."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self.headers = {"Content-Type": "application/json"}
        self.headers.update(headers or {})

    def execute(self, action: HookAction, payload: Mapping[str, Any], timeout_s: float) -> None:
        if not action.url:
            raise HookExecutionError("no URL specified for HTTP hook")
        # Payloads may carry enums / datetimes; stringify what json cannot encode.
        body = json.loads(json.dumps(dict(payload or {}), default=str))
        try:
            response = self._session.post(
                action.url, json=body, headers=self.headers, timeout=timeout_s
            )
        except requests.RequestException as exc:
            raise HookExecutionError(f"HTTP request failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise HookExecutionError(f"HTTP hook returned status {response.status_code}")


def is_kubectl_command(command: str) -> bool:
    words = command.split()
    return bool(words) and words[0] in KUBECTL_VERBS


def resolve_hook_type(action: HookAction) -> HookType:
    if action.type is not None:
        return action.type
    if action.script:
        return HookType.SCRIPT
    if action.command and is_kubectl_command(action.command):
        return HookType.KUBECTL
    if action.url:
        return HookType.HTTP
    return HookType.SCRIPT


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

class HookEngine:
    """
    Registry + dispatcher for lifecycle hooks.

    Usage:
        engine = HookEngine(event_bus=bus)
        engine.register_hook(HookEvent.POST_NODE_CREATE,
                             HookAction(script="echo $HOOK_NODE_NAME"), priority=5)
        results = engine.trigger_hooks(HookEvent.POST_NODE_CREATE, {"node_name": "w-1"})

    Thread safety:
        The hook table and executor table are guarded by one lock, held only
        while they are read or mutated. Hooks run outside it.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
        default_timeout_s: float = DEFAULT_HOOK_TIMEOUT_S,
        executors: Optional[Dict[HookType, HookExecutor]] = None,
        clock=time.monotonic,
        sleep=time.sleep,
    ) -> None:
        self._bus = event_bus
        self.backoff_s = backoff_s
        self.default_timeout_s = default_timeout_s
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.RLock()
        self._hooks: Dict[HookEvent, List[HookRegistration]] = {}
        self._sequence = itertools.count()
        self._executors: Dict[HookType, HookExecutor] = {
            HookType.SCRIPT: ScriptExecutor(),
            HookType.KUBECTL: KubectlExecutor(),
            HookType.HTTP: WebhookExecutor(),
        }
        if executors:
            self._executors.update(executors)

    # ── Registration ──────────────────────────────────────────────────────────

    def register_executor(self, hook_type: Union[HookType, str], executor: HookExecutor) -> None:
        with self._lock:
            self._executors[HookType(hook_type)] = executor

    def register_hook(
        self, event: Union[HookEvent, str], action: HookAction, priority: int = 0
    ) -> str:
        """Attach action to event. Returns the hook id."""
        event = HookEvent(event)
        with self._lock:
            sequence = next(self._sequence)
            registration = HookRegistration(
                id=f"{event.value}-{sequence}",
                event=event,
                action=action,
                priority=priority,
                sequence=sequence,
            )
            hooks = self._hooks.setdefault(event, [])
            hooks.append(registration)
            hooks.sort(key=lambda h: (h.priority, h.sequence))
        logger.debug("Hook %s registered (priority %d)", registration.id, priority)
        return registration.id

    def register_hooks_from_config(self, hooks_config: Optional[HooksConfig]) -> List[str]:
        """Register every configured action. List position becomes its priority."""
        if hooks_config is None:
            return []
        ids: List[str] = []
        for event in HookEvent:
            for index, action in enumerate(getattr(hooks_config, event.value)):
                ids.append(self.register_hook(event, action, priority=index))
        return ids

    def register_template(self, template_name: str, priority: int = 0) -> str:
        """Register one of PREDEFINED_HOOKS by name."""
        for template in PREDEFINED_HOOKS:
            if template.name == template_name:
                return self.register_hook(template.event, template.action, priority)
        raise ConfigurationError(f"unknown hook template {template_name!r}")

    def unregister_hook(self, hook_id: str, event: Optional[Union[HookEvent, str]] = None) -> bool:
        events = [HookEvent(event)] if event is not None else None
        with self._lock:
            for evt in events or list(self._hooks):
                hooks = self._hooks.get(evt, [])
                for i, registration in enumerate(hooks):
                    if registration.id == hook_id:
                        del hooks[i]
                        return True
        return False

    def get_hooks(self, event: Union[HookEvent, str]) -> List[HookRegistration]:
        with self._lock:
            return list(self._hooks.get(HookEvent(event), []))

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def trigger_hooks(
        self, event: Union[HookEvent, str], payload: Optional[Mapping[str, Any]] = None
    ) -> List[HookResult]:
        """
        Run every hook for event in priority order.

        Never raises for hook failures; inspect the returned results.
        """
        event = HookEvent(event)
        hooks = self.get_hooks(event)
        if not hooks:
            return []
        payload = dict(payload or {})
        emit_safely(self._bus, "hooks_triggered", "hook_engine",
                    event=event.value, hook_count=len(hooks))

        results: List[HookResult] = []
        for registration in hooks:
            result = self._run_hook(registration, payload)
            results.append(result)
            if result.success:
                emit_safely(self._bus, "hook_completed", "hook_engine",
                            event=event.value, hook_id=registration.id, attempts=result.attempts)
            else:
                logger.warning("Hook %s failed: %s", registration.id, result.error)
                emit_safely(self._bus, "hook_failed", "hook_engine",
                            event=event.value, hook_id=registration.id, error=result.error)
        return results

    def _run_hook(self, registration: HookRegistration, payload: Dict[str, Any]) -> HookResult:
        action = registration.action
        hook_type = resolve_hook_type(action)
        with self._lock:
            executor = self._executors.get(hook_type)
        if executor is None:
            return HookResult(
                hook_id=registration.id, event=registration.event, success=False,
                error=f"no executor for hook type: {hook_type.value}",
            )

        timeout_s = action.timeout_s or self.default_timeout_s
        deadline = self._clock() + timeout_s
        attempts = max(1, action.retry_count)
        last_error = ""
        made = 0
        for attempt in range(attempts):
            if attempt > 0:
                pause = min(attempt * self.backoff_s, max(0.0, deadline - self._clock()))
                if pause > 0:
                    self._sleep(pause)
            remaining = deadline - self._clock()
            if remaining <= 0:
                last_error = f"timed out after {timeout_s:.1f}s ({last_error or 'no attempt finished'})"
                break
            made += 1
            try:
                executor.execute(action, payload, remaining)
            except Exception as exc:
                last_error = str(exc)
                logger.debug("Hook %s attempt %d/%d failed: %s",
                             registration.id, attempt + 1, attempts, exc)
                continue
            return HookResult(
                hook_id=registration.id, event=registration.event, success=True, attempts=made
            )

        return HookResult(
            hook_id=registration.id,
            event=registration.event,
            success=False,
            attempts=made,
            error=f"hook failed after {made} attempt(s): {last_error}",
        )

    def __repr__(self) -> str:
        with self._lock:
            total = sum(len(h) for h in self._hooks.values())
        return f"HookEngine(hooks={total})"


# ─────────────────────────────────────────────────────────────────────────────
# Predefined templates
# ─────────────────────────────────────────────────────────────────────────────

class HookTemplate(BaseModel):
    name: str
    description: str
    event: HookEvent
    action: HookAction


PREDEFINED_HOOKS: List[HookTemplate] = [
    HookTemplate(
        name="install-monitoring-agent",
        description="Installs the monitoring agent on new nodes",
        event=HookEvent.POST_NODE_CREATE,
        action=HookAction(type=HookType.SCRIPT, script="/opt/scripts/install-monitoring.sh",
                          timeout_s=300),
    ),
    HookTemplate(
        name="configure-node-security",
        description="Applies node security settings on new nodes",
        event=HookEvent.POST_NODE_CREATE,
        action=HookAction(type=HookType.SCRIPT, script="/opt/scripts/configure-security.sh",
                          timeout_s=120),
    ),
    HookTemplate(
        name="notify-cluster-ready",
        description="Posts a notification webhook when the cluster is ready",
        event=HookEvent.POST_CLUSTER_READY,
        action=HookAction(type=HookType.HTTP, url="https://hooks.example.com/cluster-ready"),
    ),
    HookTemplate(
        name="backup-before-destroy",
        description="Takes a full backup before the cluster is destroyed",
        event=HookEvent.PRE_CLUSTER_DESTROY,
        action=HookAction(type=HookType.SCRIPT, script="/opt/scripts/full-backup.sh",
                          timeout_s=600),
    ),
    HookTemplate(
        name="apply-essential-manifests",
        description="Applies the essential Kubernetes manifests",
        event=HookEvent.POST_CLUSTER_READY,
        action=HookAction(type=HookType.KUBECTL, command="apply -f /manifests/essential/",
                          timeout_s=120),
    ),
]
