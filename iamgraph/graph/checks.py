"""
Configuration warnings that do not block execution.
"""
from typing import Dict, Iterable, List, Tuple

from iamgraph.models.kinds import KINDS
from iamgraph.models.resource import AttributeRef, ResourceDeclaration

_ATTACHMENT_TARGETS = {
    "aws_iam_user_policy_attachment": "user",
    "aws_iam_role_policy_attachment": "role",
}


def _key(value) -> str:
    if isinstance(value, AttributeRef):
        return value.address
    return str(value)


def check_declarations(declarations: Iterable[ResourceDeclaration]) -> List[str]:
    warnings: List[str] = []
    bindings: Dict[Tuple[str, str, str], str] = {}

    for decl in declarations:
        kind = KINDS.get(decl.kind)
        if kind is not None and kind.exclusive:
            warnings.append(
                f"{decl.address} claims exclusive ownership of its policy attachments; "
                "any other attachment of the same policy is removed on apply. "
                "Prefer aws_iam_user_policy_attachment / aws_iam_role_policy_attachment."
            )

        principal_field = _ATTACHMENT_TARGETS.get(decl.kind)
        if principal_field is None:
            continue
        key = (
            decl.kind,
            _key(decl.attributes.get(principal_field)),
            _key(decl.attributes.get("policy_arn")),
        )
        if key in bindings:
            warnings.append(
                f"{decl.address} binds the same {principal_field} and policy as {bindings[key]}"
            )
        else:
            bindings[key] = decl.address

    return warnings
