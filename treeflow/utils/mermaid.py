from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from treeflow.db.models import Step, TreeFlow

_GUARD_LABELS = {
    "any": "",
    "fully_completed": " [if completed]",
    "failed": " [if failed]",
}


def _sanitize_id(raw: str) -> str:
    return "".join(ch if (ch.isalnum() or ch == "_") else "_" for ch in raw)


def _escape(label: str) -> str:
    # Mermaid labels break on double quotes and pipes
    return label.replace('"', "'").replace("|", "/")


def _node_id(step: Step) -> str:
    return _sanitize_id(step.slug or str(step.id))


def render_mermaid(tree_flow: TreeFlow, title: str | None = None) -> str:
    """Render the wired graph as a Mermaid flowchart.

    Solid arrows are connections (what routing follows); dotted arrows are
    destination hints of outputs that are not wired.
    """
    from treeflow.graph.export import ordered_steps

    lines: list[str] = ["flowchart TD"]
    lines.append(f"  %% {title or str(tree_flow)}")

    steps = ordered_steps(tree_flow)
    for step in steps:
        label = _escape(step.name)
        if step.first:
            lines.append(f'  {_node_id(step)}(["{label}"])')
        else:
            lines.append(f'  {_node_id(step)}["{label}"]')

    for step in steps:
        for output in sorted(step.outputs, key=lambda o: o.view_order or 0):
            edge_label = _escape(output.conditional or output.name)
            if output.connection is not None:
                target_input = output.connection.target_input
                guard = _GUARD_LABELS.get(target_input.type.value, "")
                lines.append(
                    f"  {_node_id(step)} -->|{edge_label}{guard}| {_node_id(target_input.step)}"
                )
            elif output.destination_step is not None:
                lines.append(
                    f"  {_node_id(step)} -.->|{edge_label}| {_node_id(output.destination_step)}"
                )

    return "\n".join(lines) + "\n"
