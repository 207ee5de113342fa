"""
Markdown + Mermaid plan report generator.
"""
import re
from datetime import datetime, timezone
from typing import Dict, List, Sequence

from jinja2 import Environment

from iamgraph import __version__
from iamgraph.engine.diff import Change, ChangeAction, Plan, render_change
from iamgraph.graph.builder import DependencyGraph
from iamgraph.graph.resolver import referenced_attributes
from iamgraph.outputs import OutputValue

_ACTION_STYLE = {
    ChangeAction.CREATE: "fill:#d4edda,stroke:#28a745",
    ChangeAction.UPDATE: "fill:#fff3cd,stroke:#ffc107",
    ChangeAction.REPLACE: "fill:#ffe5b4,stroke:#fd7e14",
    ChangeAction.DELETE: "fill:#f8d7da,stroke:#dc3545",
}

_SUBGRAPH = {
    "aws_iam_user": "Principals",
    "aws_iam_role": "Principals",
    "aws_iam_policy": "Policies",
    "aws_iam_user_policy_attachment": "Attachments",
    "aws_iam_role_policy_attachment": "Attachments",
    "aws_iam_policy_attachment": "Attachments",
    "aws_iam_access_key": "Credentials",
    "aws_iam_user_login_profile": "Credentials",
    "aws_iam_user_ssh_key": "Credentials",
}
_SUBGRAPH_ORDER = ["Principals", "Policies", "Attachments", "Credentials", "Other"]


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(kind: str, label: str) -> str:
    sg = _SUBGRAPH.get(kind, "Other")
    if sg == "Principals":
        return f"([{label}])"
    if sg == "Policies":
        return f"[/{label}/]"
    if sg == "Attachments":
        return f"{{{{{label}}}}}"
    return f"[{label}]"


def build_mermaid(graph: DependencyGraph, changes: Dict[str, Change]) -> str:
    lines = ["flowchart RL"]

    groups: Dict[str, List[str]] = {}
    for addr in graph:
        groups.setdefault(_SUBGRAPH.get(graph.node(addr).kind, "Other"), []).append(addr)

    for sg_name in _SUBGRAPH_ORDER:
        members = groups.get(sg_name, [])
        if not members:
            continue
        lines.append(f"    subgraph {sg_name}")
        for addr in members:
            lines.append(f"        {_sanitize_node_id(addr)}{_node_shape(graph.node(addr).kind, addr)}")
        lines.append("    end")

    # Edges point from consumer to producer, matching the graph's direction
    for src, dst in graph.edges():
        attrs = referenced_attributes(graph.references, src, dst)
        label = ",".join(attrs) if attrs else "depends_on"
        lines.append(f"    {_sanitize_node_id(src)} -->|{label}| {_sanitize_node_id(dst)}")

    for addr, change in changes.items():
        style = _ACTION_STYLE.get(change.action)
        if style and addr in graph:
            lines.append(f"    style {_sanitize_node_id(addr)} {style}")

    return "\n".join(lines)


_TEMPLATE = """\
# {{ title }}

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** iamgraph v{{ version }}

---

## Summary

{{ resource_count }} declared resources:
{% for action, count in counts.items() %}
- **{{ action }}**: {{ count }}{% endfor %}

{% if not has_changes %}
No changes. Remote state matches the configuration.
{% endif %}

---

## Execution Order

| # | Resource | Action |
|---|----------|--------|
{% for addr in order %}| {{ loop.index }} | `{{ addr }}` | {{ actions.get(addr, "no-op") }} |
{% endfor %}

---

## Changes
{% for c in changes if c.action.value != "no-op" %}
### `{{ c.address }}` ({{ c.action.value }})
{% if c.reason %}
**Replace:** immutable field(s) {{ c.reason.fields | join(", ") }} changed.
{% endif %}
```diff
{{ rendered[c.address] }}
```
{% else %}
Nothing to change.
{% endfor %}
{% if outputs %}
---

## Outputs

| Name | Value |
|------|-------|
{% for o in outputs %}| `{{ o.name }}` | {{ o.display(reveal) }} |
{% endfor %}
{% endif %}
---

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(
    graph: DependencyGraph,
    plan: Plan,
    source_path: str,
    outputs: Sequence[OutputValue] = (),
    title: str = "Execution Plan",
    reveal: bool = False,
) -> str:
    changes = {c.address: c for c in plan.changes}
    order = [c.address for c in plan.changes if c.action == ChangeAction.DELETE]
    order += graph.topological_order()

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        title=title,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        resource_count=len(graph),
        counts=plan.counts(),
        has_changes=plan.has_changes,
        order=order,
        actions={addr: c.action.value for addr, c in changes.items()},
        changes=plan.changes,
        rendered={c.address: "\n".join(render_change(c, reveal)) for c in plan.changes},
        outputs=list(outputs),
        reveal=reveal,
        mermaid=build_mermaid(graph, changes),
    )
