# beemflow

A small runtime for declarative workflows. A flow is a named list of steps
written in YAML; each step calls a tool, runs nested steps one after another or
side by side, loops over a list, or pauses until an event arrives.

## What it offers

- **Flow model** (`beemflow.model`): `Flow`, `Step`, `RetrySpec`,
  `AwaitEventSpec` and `WaitSpec`, loaded from YAML with `load_flow` or from
  plain dictionaries with `Flow.from_dict`. Run and step records (`Run`,
  `StepRun`) carry a `RunStatus` or `StepStatus`.
- **Graph export** (`beemflow.graph`): turns a flow into nodes and edges and
  renders them as a Mermaid flowchart with `export_mermaid`.
- **Event bus** (`beemflow.events`): `InMemoryEventBus` with `publish` and
  `subscribe`; payloads go over the bus as bytes and come back as an integer,
  a dictionary or a string. `event_bus_from_config` picks a bus from an
  `EventConfig` and raises `EventBusError` for drivers it does not know.
- **Step context** (`beemflow.context`): `StepContext` keeps the event, vars,
  outputs and secrets of a run and hands out `ContextSnapshot` copies.
- **Step execution** (`beemflow.runner`): `StepRunner` executes tool calls,
  sequential and parallel blocks and `foreach` loops against an
  `AdapterRegistry`; failures raise `StepError`.
- **Engine** (`beemflow.engine`): `Engine` runs whole flows, records runs,
  runs `catch` steps on failure, and pauses at `await_event` steps by raising
  `FlowPaused` until a matching resume event comes in.
- **MCP servers** (`beemflow.mcp`): finds the `mcp://server/tool` references in
  a flow, starts the configured servers and waits for them to be ready.

## Loading a flow and drawing it

```python
from beemflow.model import load_flow
from beemflow.graph import export_mermaid

flow = load_flow("""
name: greet
steps:
  - id: fetch
  - id: rewrite
  - id: publish
""")

print(export_mermaid(flow))
```

```
graph TD
fetch[fetch]
rewrite[rewrite]
publish[publish]
fetch --> rewrite
rewrite --> publish
```

Steps follow one another unless a step lists `depends_on`; steps inside a
parallel block hang off their parent.

## Publishing and subscribing

```python
from beemflow.events import InMemoryEventBus

bus = InMemoryEventBus()
received = []
subscription = bus.subscribe("orders", received.append)

bus.publish("orders", {"id": "A-1"})   # delivered as {"id": "A-1"}
bus.publish("orders", "42")            # delivered as the integer 42

subscription.cancel()
bus.close()
```

## Running a flow that waits for an event

A step with `await_event` needs a `token` in its `match` block. When the engine
reaches it, `execute` raises `FlowPaused`; publishing on the topic
`resume.<token>` continues the run, and `get_completed_outputs` then returns
the outputs of every step, before and after the pause.

```yaml
name: approval
steps:
  - id: ask
    use: core.echo
    with:
      text: "{{ event.input }}"
  - id: wait
    await_event:
      source: bus
      match:
        token: "{{ event.token }}"
  - id: done
    use: core.echo
    with:
      text: "{{ event.resume_value }}"
```

```python
from beemflow.engine import FlowPaused

try:
    engine.execute(flow, {"input": "hello", "token": "order-7"})
except FlowPaused:
    pass

engine.resume("order-7", {"resume_value": "approved"})
outputs = engine.get_completed_outputs("order-7")
```

Templates see `event`, `vars`, `outputs`, `secrets` and `steps`, plus the vars,
event fields and earlier step outputs by their bare names. Secrets come from
the event's `secrets` mapping and from event keys that start with `$env`.

`engine.list_runs()` and `engine.get_run(run_id)` return the recorded runs;
`engine.close()` releases the adapters.