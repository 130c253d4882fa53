"""Flow execution with run persistence, catch handlers and pause/resume on events."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from .context import StepContext, collect_secrets, template_data
from .events import InMemoryEventBus, Subscription
from .model import Flow, Run, RunStatus, Step, StepRun, StepStatus
from .runner import AdapterRegistry, StepError, StepRunner

logger = logging.getLogger(__name__)

RESUME_TOPIC_PREFIX = "resume."
MATCH_KEY_TOKEN = "token"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _attach_outputs(error: BaseException, outputs: dict[str, Any] | None) -> None:
    try:
        error.outputs = outputs  # type: ignore[attr-defined]
    except AttributeError:
        logger.debug("could not attach outputs to %r", error)


class FlowPaused(Exception):
    """Raised when a run stops at an await_event step until a resume event arrives."""

    def __init__(self, step_id: str, token: str, run_id: uuid.UUID) -> None:
        super().__init__(f"step {step_id} is waiting for event")
        self.step_id = step_id
        self.token = token
        self.run_id = run_id
        self.outputs: dict[str, Any] | None = None


@dataclass
class PausedRun:
    """A run waiting at an await_event step."""

    flow: Flow
    step_index: int
    context: StepContext
    outputs: dict[str, Any]
    token: str
    run_id: uuid.UUID

    def _to_dict(self) -> dict[str, Any]:
        return {
            "flow": self.flow,
            "step_idx": self.step_index,
            "step_ctx": self.context,
            "outputs": self.outputs,
            "token": self.token,
            "run_id": str(self.run_id),
        }


class _MemoryStorage:
    """Keeps runs, step results and paused runs in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[uuid.UUID, Run] = {}
        self._steps: dict[uuid.UUID, list[StepRun]] = {}
        self._paused: dict[str, dict[str, Any]] = {}

    def save_run(self, run: Run) -> None:
        with self._lock:
            self._runs[run.id] = replace(run, steps=list(run.steps))

    def get_run(self, run_id: uuid.UUID) -> Run:
        with self._lock:
            try:
                run = self._runs[run_id]
            except KeyError:
                raise KeyError(f"run not found: {run_id}") from None
            return replace(run, steps=list(run.steps))

    def list_runs(self) -> list[Run]:
        with self._lock:
            return [replace(run, steps=list(run.steps)) for run in self._runs.values()]

    def save_step(self, step: StepRun) -> None:
        with self._lock:
            self._steps.setdefault(step.run_id, []).append(replace(step))

    def get_steps(self, run_id: uuid.UUID) -> list[StepRun]:
        with self._lock:
            return [replace(step) for step in self._steps.get(run_id, [])]

    def save_paused_run(self, token: str, data: dict[str, Any]) -> None:
        with self._lock:
            self._paused[token] = data

    def delete_paused_run(self, token: str) -> None:
        with self._lock:
            self._paused.pop(token, None)


class Engine:
    """Runs flows step by step, recording runs and pausing at await_event steps."""

    def __init__(
        self,
        adapters: AdapterRegistry | None = None,
        templater: Any = None,
        event_bus: Any = None,
        blob_store: Any = None,
        storage: Any = None,
    ) -> None:
        self.adapters = adapters if adapters is not None else AdapterRegistry()
        self.runner = StepRunner(self.adapters, templater)
        self.templater = self.runner.templater
        self.event_bus = event_bus if event_bus is not None else InMemoryEventBus()
        self.blob_store = blob_store
        self.storage = storage if storage is not None else _MemoryStorage()
        self._lock = threading.Lock()
        self._waiting: dict[str, PausedRun] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._completed: dict[str, dict[str, Any]] = {}

    # -- running flows -----------------------------------------------------

    def execute(self, flow: Flow | None, event: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        """Run a flow and return its step outputs.

        Raises FlowPaused at an await_event step and the step's error on failure;
        the raised exception carries the relevant outputs in its ``outputs``.
        """
        if flow is None:
            return None
        if not flow.steps:
            return {}
        event = dict(event or {})
        context = StepContext(event, flow.vars, collect_secrets(event))
        run = Run(
            flow_name=flow.name,
            event=dict(event),
            vars=dict(flow.vars or {}),
            status=RunStatus.RUNNING,
        )
        self.storage.save_run(run)
        try:
            outputs = self._execute_steps(flow, context, 0, run.id)
        except Exception as exc:
            status = RunStatus.WAITING if isinstance(exc, FlowPaused) else RunStatus.FAILED
            self._finish_run(run, status)
            if flow.catch:
                _attach_outputs(exc, self._run_catch(flow, event))
            raise
        self._finish_run(run, RunStatus.SUCCEEDED)
        return outputs

    def _finish_run(self, run: Run, status: RunStatus) -> None:
        self.storage.save_run(replace(run, status=status, ended_at=_now()))

    def _run_catch(self, flow: Flow, event: dict[str, Any]) -> dict[str, Any]:
        context = StepContext(event, flow.vars, collect_secrets(event))
        outputs: dict[str, Any] = {}
        for step in flow.catch:
            try:
                self.runner.execute_step(step, context, step.id)
            except Exception as exc:
                logger.error("catch step %s failed: %s", step.id, exc)
                continue
            try:
                outputs[step.id] = context.get_output(step.id)
            except KeyError:
                pass
        return outputs

    def _execute_steps(
        self, flow: Flow, context: StepContext, start: int, run_id: uuid.UUID
    ) -> dict[str, Any]:
        for index, step in enumerate(flow.steps[start:], start):
            if step.await_event is not None:
                self._pause(step, flow, context, index, run_id)
            try:
                self.runner.execute_step(step, context, step.id)
            except Exception as exc:
                self._persist_step(step, context, run_id, exc)
                _attach_outputs(exc, context.snapshot().outputs)
                raise
            self._persist_step(step, context, run_id, None)
        return context.snapshot().outputs

    def _persist_step(
        self,
        step: Step,
        context: StepContext,
        run_id: uuid.UUID,
        error: BaseException | None,
    ) -> None:
        try:
            output = context.get_output(step.id)
        except KeyError:
            output = None
        step_run = StepRun(
            run_id=run_id,
            step_name=step.id,
            status=StepStatus.FAILED if error is not None else StepStatus.SUCCEEDED,
            ended_at=_now(),
            outputs=output if isinstance(output, dict) else None,
            error=str(error) if error is not None else "",
        )
        try:
            self.storage.save_step(step_run)
        except Exception as exc:
            logger.error("failed to persist step %s: %s", step.id, exc)

    # -- pausing and resuming ------------------------------------------------

    def _pause(
        self, step: Step, flow: Flow, context: StepContext, index: int, run_id: uuid.UUID
    ) -> None:
        token = self._render_token(step, context)
        self._drop_existing(token)
        paused = PausedRun(
            flow=flow,
            step_index=index,
            context=context,
            outputs=context.snapshot().outputs,
            token=token,
            run_id=run_id,
        )
        with self._lock:
            self._waiting[token] = paused
        self.storage.save_paused_run(token, paused._to_dict())
        subscription = self.event_bus.subscribe(
            RESUME_TOPIC_PREFIX + token, lambda payload: self._on_resume(token, payload)
        )
        with self._lock:
            self._subscriptions[token] = subscription
        raise FlowPaused(step.id, token, run_id)

    def _render_token(self, step: Step, context: StepContext) -> str:
        match = step.await_event.match or {} if step.await_event else {}
        raw = match.get(MATCH_KEY_TOKEN)
        if not isinstance(raw, str) or not raw:
            raise StepError("await_event missing token in match")
        try:
            rendered = self.templater.render(raw, template_data(context.snapshot()))
        except ValueError as exc:
            raise StepError(f"failed to render token: {exc}") from exc
        return str(rendered)

    def _drop_existing(self, token: str) -> None:
        with self._lock:
            old = self._waiting.pop(token, None)
            subscription = self._subscriptions.pop(token, None)
        if subscription is not None:
            subscription.cancel()
        if old is None:
            return
        try:
            existing = self.storage.get_run(old.run_id)
        except KeyError:
            existing = None
        if existing is not None:
            self.storage.save_run(
                replace(existing, status=RunStatus.SKIPPED, ended_at=_now())
            )
        self.storage.delete_paused_run(token)

    def _on_resume(self, token: str, payload: Any) -> None:
        if isinstance(payload, dict):
            self.resume(token, payload)

    def resume(self, token: str, resume_event: Mapping[str, Any] | None) -> dict[str, Any] | None:
        """Continue the run paused under token; return all its outputs, or None if none waits."""
        with self._lock:
            paused = self._waiting.pop(token, None)
            subscription = self._subscriptions.pop(token, None) if paused else None
        if paused is None:
            return None
        if subscription is not None:
            subscription.cancel()
        self.storage.delete_paused_run(token)

        for key, value in (resume_event or {}).items():
            paused.context.set_event(key, value)

        error: Exception | None = None
        try:
            outputs = self._execute_steps(
                paused.flow, paused.context, paused.step_index + 1, paused.run_id
            )
        except Exception as exc:
            error = exc
            outputs = getattr(exc, "outputs", None)
            logger.error("resumed run %s stopped: %s", paused.run_id, exc)

        snapshot = paused.context.snapshot()
        merged = dict(snapshot.outputs)
        if outputs:
            merged.update(outputs)
        with self._lock:
            self._completed[token] = merged

        if error is None:
            status = RunStatus.SUCCEEDED
        elif isinstance(error, FlowPaused):
            status = RunStatus.WAITING
        else:
            status = RunStatus.FAILED
        try:
            started_at = self.storage.get_run(paused.run_id).started_at
        except KeyError:
            started_at = _now()
        self.storage.save_run(
            Run(
                id=paused.run_id,
                flow_name=paused.flow.name,
                event=snapshot.event,
                vars=snapshot.vars,
                status=status,
                started_at=started_at,
                ended_at=_now(),
            )
        )
        return merged

    def get_completed_outputs(self, token: str) -> dict[str, Any] | None:
        """Return and forget the outputs of the run resumed under token."""
        with self._lock:
            return self._completed.pop(token, None)

    # -- queries and cleanup -------------------------------------------------

    def list_runs(self) -> list[Run]:
        return self.storage.list_runs()

    def get_run(self, run_id: uuid.UUID) -> Run:
        """Return a run with its recorded steps; raise KeyError if unknown."""
        run = self.storage.get_run(run_id)
        try:
            run.steps = list(self.storage.get_steps(run_id))
        except KeyError:
            pass
        return run

    def close(self) -> None:
        """Stop listening for resume events and close every adapter."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.cancel()
        if self.adapters is not None:
            self.adapters.close_all()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()