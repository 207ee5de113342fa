"""
JSON plan / apply report generator. Sensitive values are masked.
"""
import json
from datetime import datetime, timezone
from typing import List, Sequence

from iamgraph import __version__
from iamgraph.engine.diff import UNKNOWN, Change, Plan
from iamgraph.outputs import OutputValue, mask


def _value(change: Change, attribute: str, value, reveal: bool):
    if value is UNKNOWN:
        return str(UNKNOWN)
    return mask(value, change.is_sensitive(attribute), reveal)


def _change_dict(change: Change, reveal: bool) -> dict:
    return {
        "address": change.address,
        "kind": change.kind,
        "action": change.action.value,
        "changed_fields": list(change.changed_fields),
        "replace_reason": change.reason.fields if change.reason else None,
        "before": {k: _value(change, k, v, reveal) for k, v in change.before.items()},
        "after": {k: _value(change, k, v, reveal) for k, v in change.after.items()},
    }


def build_report(
    plan: Plan,
    source_path: str,
    order: Sequence[str] = (),
    outputs: Sequence[OutputValue] = (),
    result=None,
    reveal: bool = False,
) -> str:
    changes: List[Change] = list(plan.changes)
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "iamgraph",
            "version": __version__,
        },
        "summary": plan.counts(),
        "order": list(order),
        "changes": [_change_dict(c, reveal) for c in changes],
        "outputs": [o.to_dict(reveal) for o in outputs],
    }
    if result is not None:
        report["result"] = {"operation": result.operation, "order": result.order, **result.counts()}
    return json.dumps(report, indent=2, default=str)


def build_outputs(outputs: Sequence[OutputValue], reveal: bool = False) -> str:
    return json.dumps({o.name: o.to_dict(reveal)["value"] for o in outputs}, indent=2, default=str)