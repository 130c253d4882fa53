"""Step execution context and the data handed to templates."""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

SECRETS_KEY = "secrets"
ENV_VAR_PREFIX = "$env"

FIELD_EVENT = "event"
FIELD_VARS = "vars"
FIELD_OUTPUTS = "outputs"
FIELD_SECRETS = "secrets"
FIELD_STEPS = "steps"

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class _Templater(Protocol):
    def render(self, template: str, data: Mapping[str, Any] | None) -> Any: ...


@dataclass(frozen=True)
class ContextSnapshot:
    """Copies of a step context's data taken at one moment."""

    event: dict[str, Any]
    vars: dict[str, Any]
    outputs: dict[str, Any]
    secrets: dict[str, Any]


class StepContext:
    """Thread-safe holder of the event, variables, outputs and secrets of a run."""

    def __init__(
        self,
        event: Mapping[str, Any] | None = None,
        vars: Mapping[str, Any] | None = None,
        secrets: Mapping[str, Any] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._event: dict[str, Any] = dict(event or {})
        self._vars: dict[str, Any] = dict(vars or {})
        self._outputs: dict[str, Any] = {}
        self._secrets: dict[str, Any] = dict(secrets or {})

    def get_output(self, key: str) -> Any:
        """Return a stored step output; raise KeyError if there is none."""
        with self._lock:
            return self._outputs[key]

    def set_output(self, key: str, value: Any) -> None:
        with self._lock:
            self._outputs[key] = value

    def set_event(self, key: str, value: Any) -> None:
        with self._lock:
            self._event[key] = value

    def set_var(self, key: str, value: Any) -> None:
        with self._lock:
            self._vars[key] = value

    def set_secret(self, key: str, value: Any) -> None:
        with self._lock:
            self._secrets[key] = value

    def snapshot(self) -> ContextSnapshot:
        """Return shallow copies of all context data."""
        with self._lock:
            return ContextSnapshot(
                event=dict(self._event),
                vars=dict(self._vars),
                outputs=dict(self._outputs),
                secrets=dict(self._secrets),
            )


def is_valid_identifier(name: str) -> bool:
    """Whether a name is a plain identifier usable as a top-level template key."""
    return bool(_IDENTIFIER.fullmatch(name))


def template_data(snapshot: ContextSnapshot) -> dict[str, Any]:
    """Build the mapping templates are rendered against."""
    data: dict[str, Any] = {
        FIELD_EVENT: snapshot.event,
        FIELD_VARS: snapshot.vars,
        FIELD_OUTPUTS: snapshot.outputs,
        FIELD_SECRETS: snapshot.secrets,
        FIELD_STEPS: snapshot.outputs,
    }
    data.update(snapshot.vars)
    data.update(snapshot.event)
    data.update(
        (key, value) for key, value in snapshot.outputs.items() if is_valid_identifier(key)
    )
    return data


def render_value(templater: _Templater, value: Any, data: Mapping[str, Any] | None) -> Any:
    """Render every string inside a value, returning new lists and dicts."""
    if isinstance(value, str):
        return templater.render(value, data)
    if isinstance(value, list):
        return [render_value(templater, item, data) for item in value]
    if isinstance(value, Mapping):
        return {key: render_value(templater, item, data) for key, item in value.items()}
    return value


def collect_secrets(event: Mapping[str, Any] | None) -> dict[str, Any]:
    """Gather secrets from an event's secrets map and its environment keys."""
    secrets: dict[str, Any] = {}
    if not event:
        return secrets
    supplied = event.get(SECRETS_KEY)
    if isinstance(supplied, Mapping):
        secrets.update(supplied)
    for key, value in event.items():
        if isinstance(key, str) and key.startswith(ENV_VAR_PREFIX):
            secrets[key[len(ENV_VAR_PREFIX):]] = value
    return secrets