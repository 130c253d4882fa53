"""Execution of single steps: tool calls, nested blocks and foreach loops."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from .context import StepContext, render_value, template_data
from .model import Step

logger = logging.getLogger(__name__)

ADAPTER_PREFIX_MCP = "mcp://"
ADAPTER_PREFIX_CORE = "core."
ADAPTER_ID_MCP = "mcp"
ADAPTER_ID_CORE = "core"
PARAM_SPECIAL_USE = "__use"

_PATH = re.compile(r"[A-Za-z_]\w*(?:\.\w+)*")
_WHOLE_EXPRESSION = re.compile(r"\{\{\s*([A-Za-z_]\w*(?:\.\w+)*)\s*\}\}")


class StepError(Exception):
    """Raised when a step cannot be resolved, rendered or executed."""


class Adapter(Protocol):
    id: str

    def execute(self, inputs: dict[str, Any]) -> Any: ...


class AdapterRegistry:
    """Adapters keyed by their id."""

    def __init__(self, adapters: Iterable[Adapter] = ()) -> None:
        self._lock = threading.Lock()
        self._adapters: dict[str, Adapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: Adapter) -> None:
        """Add an adapter, replacing any with the same id."""
        with self._lock:
            self._adapters[adapter.id] = adapter

    def get(self, adapter_id: str) -> Adapter | None:
        """Return the adapter with this id, or None."""
        with self._lock:
            return self._adapters.get(adapter_id)

    def __contains__(self, adapter_id: object) -> bool:
        with self._lock:
            return adapter_id in self._adapters

    def __len__(self) -> int:
        with self._lock:
            return len(self._adapters)

    def close_all(self) -> None:
        """Close every adapter that can be closed; re-raise the first failure."""
        with self._lock:
            adapters = list(self._adapters.values())
        first_error: BaseException | None = None
        for adapter in adapters:
            close = getattr(adapter, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as exc:  # keep closing the rest
                logger.error("closing adapter %s failed: %s", adapter.id, exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


def _resolve(path: str, data: Mapping[str, Any]) -> Any:
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _format(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class _Templater:
    """Substitutes "{{ dotted.path }}" expressions from a data mapping."""

    def render(self, template: str, data: Mapping[str, Any] | None) -> str:
        if data is None:
            raise ValueError("no template data")
        if "{%" in template:
            raise ValueError("control blocks are not supported")
        pieces: list[str] = []
        position = 0
        while True:
            start = template.find("{{", position)
            if start == -1:
                pieces.append(template[position:])
                return "".join(pieces)
            end = template.find("}}", start + 2)
            if end == -1:
                raise ValueError(f"unterminated expression in template {template!r}")
            expression = template[start + 2 : end].strip()
            if not _PATH.fullmatch(expression):
                raise ValueError(f"invalid expression {expression!r}")
            pieces.append(template[position:start])
            pieces.append(_format(_resolve(expression, data)))
            position = end + 2

    def evaluate_expression(self, expression: str, data: Mapping[str, Any] | None) -> Any:
        if data is None:
            raise ValueError("no template data")
        text = expression.strip()
        whole = _WHOLE_EXPRESSION.fullmatch(text)
        if whole:
            return _resolve(whole.group(1), data)
        if "{{" not in text and _PATH.fullmatch(text):
            return _resolve(text, data)
        return self.render(expression, data)


def _run_all(function: Callable[[Any], None], items: list[Any]) -> None:
    if not items:
        return
    with ThreadPoolExecutor(max_workers=len(items)) as pool:
        futures = [pool.submit(function, item) for item in items]
        errors = [future.exception() for future in futures]
    for error in errors:
        if error is not None:
            raise error


def _output(context: StepContext, key: str) -> tuple[bool, Any]:
    try:
        return True, context.get_output(key)
    except KeyError:
        return False, None


def _parameters(manifest: Any) -> Any:
    if isinstance(manifest, Mapping):
        return manifest.get("parameters")
    return getattr(manifest, "parameters", None)


class StepRunner:
    """Runs steps against a registry of adapters."""

    def __init__(self, adapters: AdapterRegistry, templater: Any = None) -> None:
        self.adapters = adapters
        self.templater = templater if templater is not None else _Templater()

    def _data(self, context: StepContext) -> dict[str, Any]:
        return template_data(context.snapshot())

    def execute_step(self, step: Step, context: StepContext, step_id: str) -> None:
        """Run a step of any kind and store its output under step_id."""
        if step.steps:
            if step.parallel:
                self.execute_parallel_block(step, context, step_id)
            else:
                self.execute_sequential_block(step, context, step_id)
        elif step.foreach:
            self.execute_foreach(step, context, step_id)
        else:
            self.execute_tool_call(step, context, step_id)

    def execute_parallel_block(self, step: Step, context: StepContext, step_id: str) -> None:
        """Run nested steps concurrently; the block's output maps child ids to outputs."""
        collected: dict[str, Any] = {}
        lock = threading.Lock()

        def run(child: Step) -> None:
            self.execute_step(child, context, child.id)
            found, value = _output(context, child.id)
            if found:
                with lock:
                    collected[child.id] = value

        _run_all(run, list(step.steps))
        context.set_output(step_id, collected)

    def execute_sequential_block(self, step: Step, context: StepContext, step_id: str) -> None:
        """Run nested steps in order, stopping at the first failure."""
        collected: dict[str, Any] = {}
        for child in step.steps:
            self.execute_step(child, context, child.id)
            found, value = _output(context, child.id)
            if found:
                collected[child.id] = value
        context.set_output(step_id, collected)

    def execute_foreach(self, step: Step, context: StepContext, step_id: str) -> None:
        """Evaluate the foreach expression and run the loop body for each item."""
        try:
            items = self.templater.evaluate_expression(step.foreach, self._data(context))
        except ValueError as exc:
            raise StepError(f"template error in foreach: {exc}") from exc
        if not isinstance(items, (list, tuple)):
            raise StepError(
                f"foreach expression did not evaluate to a list, got: {type(items).__name__}"
            )
        if not items:
            context.set_output(step_id, {})
            return
        if step.parallel:
            self.execute_foreach_parallel(step, context, step_id, list(items))
        else:
            self.execute_foreach_sequential(step, context, step_id, list(items))

    def execute_foreach_sequential(
        self, step: Step, context: StepContext, step_id: str, items: list[Any]
    ) -> None:
        """Run the loop body once per item, binding the item in the shared context."""
        for item in items:
            if step.as_:
                context.set_var(step.as_, item)
            for inner in step.do:
                rendered = self.render_step_id(inner.id, context)
                self.execute_step(inner, context, rendered)
        if step_id:
            context.set_output(step_id, {})

    def execute_foreach_parallel(
        self, step: Step, context: StepContext, step_id: str, items: list[Any]
    ) -> None:
        """Run the loop body for all items concurrently, each in its own context."""

        def run(item: Any) -> None:
            snapshot = context.snapshot()
            iteration = StepContext(snapshot.event, snapshot.vars, snapshot.secrets)
            for key, value in snapshot.outputs.items():
                iteration.set_output(key, value)
            if step.as_:
                iteration.set_var(step.as_, item)
            for inner in step.do:
                rendered = self.render_step_id(inner.id, iteration)
                self.execute_step(inner, iteration, rendered)
                found, value = _output(iteration, rendered)
                if found:
                    context.set_output(rendered, value)

        _run_all(run, items)
        if step_id:
            context.set_output(step_id, {})

    def render_step_id(self, step_id: str, context: StepContext) -> str:
        """Render a step id as a template, keeping it unchanged if the result is not text."""
        try:
            rendered = render_value(self.templater, step_id, self._data(context))
        except ValueError as exc:
            raise StepError(f"template error in step ID {step_id}: {exc}") from exc
        return rendered if isinstance(rendered, str) else step_id

    def _resolve_adapter(self, tool: str, context: StepContext, step_id: str) -> Adapter:
        adapter = self.adapters.get(tool)
        if adapter is not None:
            return adapter
        if tool.startswith(ADAPTER_PREFIX_MCP):
            adapter, missing = self.adapters.get(ADAPTER_ID_MCP), "MCPAdapter not registered"
        elif tool.startswith(ADAPTER_PREFIX_CORE):
            adapter, missing = self.adapters.get(ADAPTER_ID_CORE), "CoreAdapter not registered"
        else:
            adapter, missing = None, f"adapter not found: {tool}"
        if adapter is None:
            context.set_output(step_id, {})
            raise StepError(missing)
        return adapter

    def _inputs(self, step: Step, context: StepContext, step_id: str) -> dict[str, Any]:
        data = self._data(context)
        logger.debug("rendering inputs of step %s with keys %s", step_id, sorted(data))
        inputs: dict[str, Any] = {}
        for key, value in (step.with_ or {}).items():
            try:
                inputs[key] = render_value(self.templater, value, data)
            except ValueError as exc:
                raise StepError(f"template error in step {step_id}: {exc}") from exc
        return inputs

    def _fill_required(
        self, adapter: Adapter, inputs: dict[str, Any], context: StepContext
    ) -> None:
        manifest = getattr(adapter, "manifest", None)
        if manifest is None:
            return
        parameters = _parameters(manifest)
        if not isinstance(parameters, Mapping):
            return
        properties = parameters.get("properties")
        required = parameters.get("required")
        if not isinstance(properties, Mapping) or not isinstance(required, list):
            return
        secrets = context.snapshot().secrets
        for key in required:
            if not isinstance(key, str) or key in inputs:
                continue
            prop = properties.get(key)
            if not isinstance(prop, Mapping):
                continue
            default = prop.get("default")
            if not isinstance(default, Mapping):
                continue
            env_name = default.get("$env")
            if isinstance(env_name, str) and secrets.get(env_name) is not None:
                inputs[key] = secrets[env_name]

    def execute_tool_call(self, step: Step, context: StepContext, step_id: str) -> None:
        """Call the step's tool with rendered inputs and store what it returns."""
        if not step.use:
            return
        adapter = self._resolve_adapter(step.use, context, step_id)
        inputs = self._inputs(step, context, step_id)
        self._fill_required(adapter, inputs, context)
        if step.use.startswith((ADAPTER_PREFIX_MCP, ADAPTER_PREFIX_CORE)):
            inputs[PARAM_SPECIAL_USE] = step.use
        logger.debug("tool %s payload: %r", step.use, inputs)
        try:
            outputs = adapter.execute(inputs)
        except Exception as exc:
            context.set_output(step_id, None)
            raise StepError(f"step {step_id} failed: {exc}") from exc
        context.set_output(step_id, outputs)
        logger.debug("outputs of step %s: %r", step_id, outputs)