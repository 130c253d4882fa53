"""Flow definitions, step specifications and run records."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import yaml


class RunStatus(str, Enum):
    """Lifecycle state of a flow run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    WAITING = "WAITING"
    SKIPPED = "SKIPPED"


class StepStatus(str, Enum):
    """Lifecycle state of a single step within a run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    WAITING = "WAITING"


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} must be a mapping, got {type(data).__name__}")
    return data


def _text(value: Any, what: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise TypeError(f"{what} must be a string, got {type(value).__name__}")


def _integer(value: Any, what: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{what} must be an integer, got {type(value).__name__}")
    return value


def _optional_dict(value: Any, what: str) -> dict[str, Any] | None:
    if value is None:
        return None
    return dict(_mapping(value, what))


def _step_list(value: Any, what: str) -> list[Step]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{what} must be a list, got {type(value).__name__}")
    return [Step.from_dict(item) for item in value]


@dataclass
class RetrySpec:
    """How often and how slowly a step is retried."""

    attempts: int = 0
    delay_sec: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> RetrySpec:
        data = _mapping(data, "retry")
        return cls(
            attempts=_integer(data.get("attempts"), "retry.attempts"),
            delay_sec=_integer(data.get("delay_sec"), "retry.delay_sec"),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {"attempts": self.attempts, "delay_sec": self.delay_sec}


@dataclass
class AwaitEventSpec:
    """An event a step waits for before the flow continues."""

    source: str = ""
    match: dict[str, Any] | None = None
    timeout: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> AwaitEventSpec:
        data = _mapping(data, "await_event")
        return cls(
            source=_text(data.get("source"), "await_event.source"),
            match=_optional_dict(data.get("match"), "await_event.match"),
            timeout=_text(data.get("timeout"), "await_event.timeout"),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source,
            "match": dict(self.match) if self.match is not None else None,
        }
        if self.timeout:
            out["timeout"] = self.timeout
        return out


@dataclass
class WaitSpec:
    """A fixed delay or a point in time to wait for."""

    seconds: int = 0
    until: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> WaitSpec:
        data = _mapping(data, "wait")
        return cls(
            seconds=_integer(data.get("seconds"), "wait.seconds"),
            until=_text(data.get("until"), "wait.until"),
        )

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.seconds:
            out["seconds"] = self.seconds
        if self.until:
            out["until"] = self.until
        return out


@dataclass
class Step:
    """One step of a flow, possibly holding nested steps."""

    id: str = ""
    use: str = ""
    with_: dict[str, Any] | None = None
    depends_on: list[str] = field(default_factory=list)
    parallel: bool = False
    if_: str = ""
    foreach: str = ""
    as_: str = ""
    do: list[Step] = field(default_factory=list)
    steps: list[Step] = field(default_factory=list)
    retry: RetrySpec | None = None
    await_event: AwaitEventSpec | None = None
    wait: WaitSpec | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Step:
        data = _mapping(data, "step")
        depends_on = data.get("depends_on")
        if depends_on is None:
            depends_on = []
        elif not isinstance(depends_on, list):
            raise TypeError("step.depends_on must be a list")
        retry = data.get("retry")
        await_event = data.get("await_event")
        wait = data.get("wait")
        return cls(
            id=_text(data.get("id"), "step.id"),
            use=_text(data.get("use"), "step.use"),
            with_=_optional_dict(data.get("with"), "step.with"),
            depends_on=[_text(dep, "step.depends_on") for dep in depends_on],
            parallel=bool(data.get("parallel", False)),
            if_=_text(data.get("if"), "step.if"),
            foreach=_text(data.get("foreach"), "step.foreach"),
            as_=_text(data.get("as"), "step.as"),
            do=_step_list(data.get("do"), "step.do"),
            steps=_step_list(data.get("steps"), "step.steps"),
            retry=RetrySpec.from_dict(retry) if retry is not None else None,
            await_event=(
                AwaitEventSpec.from_dict(await_event) if await_event is not None else None
            ),
            wait=WaitSpec.from_dict(wait) if wait is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        if self.use:
            out["use"] = self.use
        if self.with_:
            out["with"] = dict(self.with_)
        if self.depends_on:
            out["depends_on"] = list(self.depends_on)
        if self.parallel:
            out["parallel"] = True
        if self.if_:
            out["if"] = self.if_
        if self.foreach:
            out["foreach"] = self.foreach
        if self.as_:
            out["as"] = self.as_
        if self.do:
            out["do"] = [step.to_dict() for step in self.do]
        if self.steps:
            out["steps"] = [step.to_dict() for step in self.steps]
        if self.retry is not None:
            out["retry"] = self.retry._to_dict()
        if self.await_event is not None:
            out["await_event"] = self.await_event._to_dict()
        if self.wait is not None:
            out["wait"] = self.wait._to_dict()
        return out


@dataclass
class Flow:
    """A named flow: its trigger, variables, steps and error handlers."""

    name: str = ""
    version: str = ""
    on: Any = None
    vars: dict[str, Any] | None = None
    steps: list[Step] = field(default_factory=list)
    catch: list[Step] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Flow:
        data = _mapping(data, "flow")
        # YAML 1.1 loaders read a bare "on" key as boolean true.
        trigger = data["on"] if "on" in data else data.get(True)
        return cls(
            name=_text(data.get("name"), "flow.name"),
            version=_text(data.get("version"), "flow.version"),
            on=trigger,
            vars=_optional_dict(data.get("vars"), "flow.vars"),
            steps=_step_list(data.get("steps"), "flow.steps"),
            catch=_step_list(data.get("catch"), "flow.catch"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.version:
            out["version"] = self.version
        if self.on is not None:
            out["on"] = self.on
        if self.vars:
            out["vars"] = dict(self.vars)
        out["steps"] = [step.to_dict() for step in self.steps]
        if self.catch:
            out["catch"] = [step.to_dict() for step in self.catch]
        return out


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepRun:
    """The recorded outcome of one executed step."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    run_id: uuid.UUID | None = None
    step_name: str = ""
    status: StepStatus = StepStatus.PENDING
    started_at: datetime = field(default_factory=_now)
    ended_at: datetime | None = None
    error: str = ""
    outputs: dict[str, Any] | None = None


@dataclass
class Run:
    """The recorded state of one execution of a flow."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    flow_name: str = ""
    event: dict[str, Any] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = field(default_factory=_now)
    ended_at: datetime | None = None
    steps: list[StepRun] = field(default_factory=list)


def load_flow(text: str | bytes) -> Flow:
    """Parse a flow from YAML text."""
    return Flow.from_dict(yaml.safe_load(text))