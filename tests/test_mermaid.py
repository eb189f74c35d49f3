from __future__ import annotations

from treeflow.utils.mermaid import render_mermaid


def test_wired_edges_carry_condition_and_guard(onboarding):
    text = render_mermaid(onboarding)
    lines = text.splitlines()

    assert lines[0] == "flowchart TD"
    assert lines[1] == "  %% Onboarding v1 v1.0.0"
    assert '  a(["A"])' in lines
    assert "  a -->|user confirmed| b" in lines
    assert "  b -->|next [if completed]| c" in lines
    # "retry" has neither a wire nor a destination hint
    assert not any("user declined" in line for line in lines)


def test_unwired_hint_is_dotted(editor, onboarding, steps):
    editor.set_output_destination(steps["a"].outputs[1], steps["c"])
    assert "  a -.->|user declined| c" in render_mermaid(onboarding, title="Draft").splitlines()
