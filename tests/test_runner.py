import threading

import pytest

from beemflow.context import StepContext, render_value
from beemflow.model import Step
from beemflow.runner import AdapterRegistry, StepError, StepRunner


class EchoAdapter:
    id = "core"
    manifest = None

    def execute(self, inputs):
        return {k: v for k, v in inputs.items() if k != "__use"}


class RecordingAdapter:
    def __init__(self, adapter_id, manifest=None):
        self.id = adapter_id
        self.manifest = manifest
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, inputs):
        with self._lock:
            self.calls.append(dict(inputs))
        return {"ok": True}


class FailingAdapter:
    id = "broken"
    manifest = None

    def execute(self, inputs):
        raise RuntimeError("boom")


class ClosingAdapter:
    def __init__(self, adapter_id, fail=False):
        self.id = adapter_id
        self.closed = False
        self.fail = fail

    def execute(self, inputs):
        return {}

    def close(self):
        self.closed = True
        if self.fail:
            raise RuntimeError(f"cannot close {self.id}")


@pytest.fixture
def runner():
    return StepRunner(AdapterRegistry([EchoAdapter(), FailingAdapter()]))


def echo(step_id, text):
    return Step(id=step_id, use="core.echo", with_={"text": text})


def new_context(event=None, vars=None, secrets=None):
    return StepContext(event or {}, vars or {}, secrets or {})


def test_registry_get_and_missing():
    adapter = EchoAdapter()
    registry = AdapterRegistry()
    registry.register(adapter)
    assert registry.get("core") is adapter
    assert registry.get("missing") is None
    assert "core" in registry
    assert len(registry) == 1


def test_registry_close_all_closes_every_adapter_and_reraises():
    first = ClosingAdapter("a", fail=True)
    second = ClosingAdapter("b")
    registry = AdapterRegistry([first, second])
    with pytest.raises(RuntimeError, match="cannot close a"):
        registry.close_all()
    assert first.closed and second.closed


def test_parallel_block_success(runner):
    step = Step(parallel=True, steps=[echo("task1", "Task 1"), echo("task2", "Task 2")])
    ctx = new_context()
    runner.execute_parallel_block(step, ctx, "parallel_test")
    assert ctx.get_output("task1") == {"text": "Task 1"}
    assert ctx.get_output("task2") == {"text": "Task 2"}
    assert ctx.get_output("parallel_test") == {
        "task1": {"text": "Task 1"},
        "task2": {"text": "Task 2"},
    }


def test_parallel_block_error(runner):
    step = Step(
        parallel=True,
        steps=[echo("good_task", "Good task"), Step(id="bad_task", use="nonexistent.adapter")],
    )
    with pytest.raises(StepError, match="adapter not found"):
        runner.execute_parallel_block(step, new_context(), "parallel_error_test")


def test_parallel_block_empty(runner):
    ctx = new_context()
    runner.execute_parallel_block(Step(steps=[]), ctx, "empty_parallel")
    assert ctx.get_output("empty_parallel") == {}


def test_sequential_block_references_previous(runner):
    step = Step(
        steps=[echo("seq1", "Sequential 1"), echo("seq2", "Sequential 2 - {{seq1.text}}")]
    )
    ctx = new_context()
    runner.execute_sequential_block(step, ctx, "sequential_test")
    assert ctx.get_output("seq1") == {"text": "Sequential 1"}
    assert ctx.get_output("seq2") == {"text": "Sequential 2 - Sequential 1"}


def test_sequential_block_stops_at_error(runner):
    step = Step(
        steps=[
            echo("good_seq1", "Good task 1"),
            Step(id="bad_seq", use="nonexistent.adapter", with_={"text": "Bad task"}),
            echo("never_reached", "Never reached"),
        ]
    )
    ctx = new_context()
    with pytest.raises(StepError):
        runner.execute_sequential_block(step, ctx, "sequential_error_test")
    assert ctx.get_output("good_seq1") == {"text": "Good task 1"}
    assert ctx.get_output("bad_seq") == {}
    with pytest.raises(KeyError):
        ctx.get_output("never_reached")


def test_sequential_block_empty(runner):
    ctx = new_context()
    runner.execute_sequential_block(Step(steps=[]), ctx, "empty_sequential")
    assert ctx.get_output("empty_sequential") == {}


def foreach_step():
    return Step(
        foreach="{{items}}",
        as_="item",
        do=[Step(id="process_{{item}}", use="core.echo", with_={"text": "Processing {{item}}"})],
    )


def test_foreach_sequential_processes_every_item(runner):
    items = ["alpha", "beta", "gamma"]
    ctx = new_context(vars={"items": items})
    runner.execute_foreach_sequential(foreach_step(), ctx, "foreach_seq_test", items)
    for item in items:
        assert ctx.get_output(f"process_{item}") == {"text": f"Processing {item}"}
    assert ctx.get_output("foreach_seq_test") == {}
    assert ctx.snapshot().vars["item"] == "gamma"


def test_foreach_sequential_error(runner):
    step = Step(
        foreach="{{items}}",
        as_="item",
        do=[Step(id="bad_{{item}}", use="nonexistent.adapter", with_={"text": "Bad {{item}}"})],
    )
    ctx = new_context(vars={"items": ["one", "two"]})
    with pytest.raises(StepError):
        runner.execute_foreach_sequential(step, ctx, "foreach_error_test", ["one", "two"])
    with pytest.raises(KeyError):
        ctx.get_output("bad_two")


def test_foreach_sequential_empty_list(runner):
    ctx = new_context()
    runner.execute_foreach_sequential(foreach_step(), ctx, "foreach_empty_test", [])
    assert ctx.snapshot().outputs == {"foreach_empty_test": {}}


def test_foreach_sequential_empty_step_id_sets_no_output(runner):
    ctx = new_context(vars={"items": ["test"]})
    runner.execute_foreach_sequential(foreach_step(), ctx, "", ["test"])
    outputs = ctx.snapshot().outputs
    assert "" not in outputs
    assert outputs["process_test"] == {"text": "Processing test"}


def test_foreach_sequential_without_as(runner):
    step = Step(foreach="{{items}}", do=[echo("no_as_test_inner", "No as variable")])
    ctx = new_context(vars={"items": ["test"]})
    runner.execute_foreach_sequential(step, ctx, "no_as_test", ["test"])
    assert ctx.get_output("no_as_test_inner") == {"text": "No as variable"}
    assert "item" not in ctx.snapshot().vars


def test_foreach_parallel_copies_outputs_and_isolates_vars(runner):
    step = Step(
        foreach="{{list}}",
        as_="item",
        parallel=True,
        do=[Step(id="d_{{item}}", use="core.echo", with_={"text": "{{item}}"})],
    )
    ctx = new_context(event={"list": ["a", "b"]})
    runner.execute_foreach(step, ctx, "s1")
    assert ctx.get_output("d_a") == {"text": "a"}
    assert ctx.get_output("d_b") == {"text": "b"}
    assert ctx.get_output("s1") == {}
    assert "item" not in ctx.snapshot().vars


def test_foreach_parallel_empty_list(runner):
    step = Step(
        id="s1",
        use="core.echo",
        foreach="{{list}}",
        as_="item",
        parallel=True,
        do=[Step(id="d1", use="core.echo", with_={"text": "{{item}}"})],
    )
    ctx = new_context(event={"list": []})
    runner.execute_step(step, ctx, "s1")
    assert ctx.get_output("s1") == {}


def test_foreach_parallel_branch_error(runner):
    step = Step(
        foreach="{{list}}",
        as_="item",
        parallel=True,
        do=[Step(id="d1", use="nonexistent.adapter")],
    )
    ctx = new_context(event={"list": ["a", "b"]})
    with pytest.raises(StepError):
        runner.execute_step(step, ctx, "s1")


def test_foreach_not_a_list(runner):
    step = Step(foreach="{{value}}", do=[echo("d1", "x")])
    with pytest.raises(StepError, match="did not evaluate to a list"):
        runner.execute_foreach(step, new_context(vars={"value": "text"}), "s1")


def test_tool_call_secrets_injection(runner):
    step = echo("s1", "{{ secrets.MY_SECRET }}")
    ctx = new_context(secrets={"MY_SECRET": "secret"})
    runner.execute_tool_call(step, ctx, "s1")
    assert ctx.get_output("s1") == {"text": "secret"}


def test_tool_call_array_access(runner):
    step = echo("s1", "First: {{ event.arr.0.val }}, Second: {{ event.arr.1.val }}")
    ctx = new_context(event={"arr": [{"val": "a"}, {"val": "b"}]})
    runner.execute_tool_call(step, ctx, "s1")
    assert ctx.get_output("s1") == {"text": "First: a, Second: b"}


def test_tool_call_adds_special_use_parameter():
    recorder = RecordingAdapter("core")
    runner = StepRunner(AdapterRegistry([recorder]))
    runner.execute_tool_call(echo("s1", "hi"), new_context(), "s1")
    assert recorder.calls == [{"text": "hi", "__use": "core.echo"}]


def test_tool_call_without_use_stores_nothing(runner):
    ctx = new_context()
    runner.execute_tool_call(Step(id="noop"), ctx, "noop")
    assert ctx.snapshot().outputs == {}


def test_tool_call_unknown_adapter_sets_empty_output(runner):
    ctx = new_context()
    with pytest.raises(StepError, match="adapter not found: nonexistent.adapter"):
        runner.execute_tool_call(Step(id="fail", use="nonexistent.adapter"), ctx, "fail")
    assert ctx.get_output("fail") == {}


def test_tool_call_missing_mcp_adapter(runner):
    ctx = new_context()
    with pytest.raises(StepError, match="MCPAdapter not registered"):
        runner.execute_tool_call(Step(id="m", use="mcp://srv/tool"), ctx, "m")


def test_tool_call_adapter_failure_is_wrapped(runner):
    ctx = new_context()
    with pytest.raises(StepError, match="step s1 failed: boom"):
        runner.execute_tool_call(Step(id="s1", use="broken"), ctx, "s1")
    assert ctx.get_output("s1") is None


def test_tool_call_template_error(runner):
    with pytest.raises(StepError, match="template error in step s1"):
        runner.execute_tool_call(echo("s1", "{{oops"), new_context(), "s1")


def test_required_params_filled_from_secrets():
    manifest = {
        "parameters": {
            "properties": {"units": {"default": {"$env": "UNITS"}}},
            "required": ["units"],
        }
    }
    recorder = RecordingAdapter("weather", manifest)
    runner = StepRunner(AdapterRegistry([recorder]))
    ctx = new_context(secrets={"UNITS": "secret"})
    runner.execute_tool_call(Step(id="w", use="weather", with_={"city": "x"}), ctx, "w")
    assert recorder.calls == [{"city": "x", "units": "secret"}]


def test_required_params_keep_existing_value():
    manifest = {
        "parameters": {
            "properties": {"existing": {"default": {"$env": "EXISTING"}}},
            "required": ["existing"],
        }
    }
    recorder = RecordingAdapter("tool", manifest)
    runner = StepRunner(AdapterRegistry([recorder]))
    ctx = new_context(secrets={"EXISTING": "secret"})
    runner.execute_tool_call(Step(id="t", use="tool", with_={"existing": "value"}), ctx, "t")
    assert recorder.calls == [{"existing": "value"}]


def test_render_step_id(runner):
    ctx = new_context(vars={"item": "x"})
    assert runner.render_step_id("process_{{item}}", ctx) == "process_x"
    assert runner.render_step_id("plain", ctx) == "plain"
    with pytest.raises(StepError, match="template error in step ID"):
        runner.render_step_id("{{oops", ctx)


def test_render_value_with_runner_templater(runner):
    data = {"name": "John", "age": 30, "nested": {"value": "deep"}}
    templater = runner.templater
    assert render_value(templater, "Hello {{name}}", data) == "Hello John"
    assert render_value(templater, 42, data) == 42
    assert render_value(
        templater, {"greeting": "Hello {{name}}", "info": "Age: {{age}}", "static": "unchanged"}, data
    ) == {"greeting": "Hello John", "info": "Age: 30", "static": "unchanged"}
    assert render_value(
        templater, ["Hello {{name}}", "Age: {{age}}", 42, {"nested": "{{nested.value}}"}], data
    ) == ["Hello John", "Age: 30", 42, {"nested": "deep"}]
    assert render_value(templater, "", data) == ""
    with pytest.raises(ValueError):
        render_value(templater, "{{invalid template", data)
    with pytest.raises(ValueError):
        render_value(templater, "static text", None)


def test_render_value_complex_structure(runner):
    data = {"name": "John", "age": 30}
    value = {
        "users": [{"name": "{{name}}", "age": "{{age}}"}, {"name": "Jane", "age": 25}],
        "metadata": {"total": 2, "query": "name={{name}}"},
    }
    assert render_value(runner.templater, value, data) == {
        "users": [{"name": "John", "age": "30"}, {"name": "Jane", "age": 25}],
        "metadata": {"total": 2, "query": "name=John"},
    }


def test_evaluate_expression_returns_value(runner):
    data = {"items": [1, 2, 3]}
    assert runner.templater.evaluate_expression("{{items}}", data) == [1, 2, 3]
    assert runner.templater.evaluate_expression("{{ missing }}", data) is None