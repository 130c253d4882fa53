"""Directed graphs of flow steps and their Mermaid rendering."""

from __future__ import annotations

from dataclasses import dataclass, field

from .model import Flow, Step


@dataclass
class Node:
    """A vertex in the graph."""

    id: str
    label: str


@dataclass
class Edge:
    """A directed connection between two nodes."""

    source: str
    target: str
    label: str = ""


@dataclass
class Graph:
    """A directed graph of nodes and edges."""

    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)

    def _add_steps(self, steps: list[Step], parent_id: str = "") -> None:
        previous: Step | None = None
        for step in steps:
            self.nodes.append(Node(step.id, step.id))
            if step.parallel and step.steps:
                self._add_steps(step.steps, step.id)
            else:
                if step.depends_on:
                    deps = step.depends_on
                elif parent_id:
                    deps = [parent_id]
                elif previous is not None:
                    deps = [previous.id]
                else:
                    deps = []
                self.edges.extend(Edge(dep, step.id) for dep in deps)
            previous = step


def new_graph(flow: Flow | None) -> Graph:
    """Build the dependency graph of a flow's steps."""
    graph = Graph()
    if flow is not None and flow.steps:
        graph._add_steps(flow.steps)
    return graph


class MermaidRenderer:
    """Renders graphs as Mermaid flowcharts."""

    def render(self, graph: Graph) -> str:
        if not graph.nodes:
            return ""
        lines = ["graph TD"]
        lines.extend(f"{node.id}[{node.label}]" for node in graph.nodes)
        for edge in graph.edges:
            if edge.label:
                lines.append(f"{edge.source} -->|{edge.label}| {edge.target}")
            else:
                lines.append(f"{edge.source} --> {edge.target}")
        return "\n".join(lines) + "\n"


def export_mermaid(flow: Flow | None) -> str:
    """Render a flow as a Mermaid diagram."""
    return MermaidRenderer().render(new_graph(flow))