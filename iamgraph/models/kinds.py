"""
Schemas for the supported IAM resource kinds.

Each kind lists the fields a declaration may set, which of them force a
replacement when changed, the attributes the provider computes, and which
attributes hold secrets.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List

from iamgraph.errors import InvalidDeclarationError, UnknownResourceKindError
from iamgraph.models.resource import ResourceDeclaration


@dataclass(frozen=True)
class ResourceKind:
    name: str
    required: FrozenSet[str]
    optional: FrozenSet[str] = frozenset()
    immutable: FrozenSet[str] = frozenset()
    computed: FrozenSet[str] = frozenset()
    sensitive: FrozenSet[str] = frozenset()
    sensitive_id: bool = False   # the provider-assigned id is itself a credential
    exclusive: bool = False      # claims sole ownership of its target
    description: str = ""

    @property
    def fields(self) -> FrozenSet[str]:
        return self.required | self.optional

    @property
    def outputs(self) -> FrozenSet[str]:
        return self.fields | self.computed | {"id"}

    def is_sensitive(self, attribute: str) -> bool:
        if attribute == "id":
            return self.sensitive_id
        return attribute in self.sensitive


def _kind(name: str, required=(), optional=(), immutable=(), computed=(), sensitive=(),
          sensitive_id=False, exclusive=False, description="") -> ResourceKind:
    return ResourceKind(
        name=name,
        required=frozenset(required),
        optional=frozenset(optional),
        immutable=frozenset(immutable),
        computed=frozenset(computed),
        sensitive=frozenset(sensitive),
        sensitive_id=sensitive_id,
        exclusive=exclusive,
        description=description,
    )


KINDS: Dict[str, ResourceKind] = {
    k.name: k
    for k in [
        _kind(
            "aws_iam_user",
            required=["name"],
            optional=["path", "permissions_boundary", "force_destroy", "tags"],
            computed=["arn", "unique_id"],
            description="IAM user",
        ),
        _kind(
            "aws_iam_policy",
            required=["policy"],
            optional=["name", "path", "description", "tags"],
            immutable=["name", "path", "description"],
            computed=["arn", "policy_id"],
            description="Customer managed policy",
        ),
        _kind(
            "aws_iam_role",
            required=["assume_role_policy"],
            optional=["name", "path", "description", "max_session_duration",
                      "permissions_boundary", "tags"],
            immutable=["name", "path"],
            computed=["arn", "unique_id", "create_date"],
            description="IAM role",
        ),
        _kind(
            "aws_iam_user_policy_attachment",
            required=["user", "policy_arn"],
            immutable=["user", "policy_arn"],
            description="Binds one managed policy to one user",
        ),
        _kind(
            "aws_iam_role_policy_attachment",
            required=["role", "policy_arn"],
            immutable=["role", "policy_arn"],
            description="Binds one managed policy to one role",
        ),
        _kind(
            "aws_iam_policy_attachment",
            required=["name", "policy_arn"],
            optional=["users", "roles", "groups"],
            immutable=["name", "policy_arn"],
            exclusive=True,
            description="Exclusive attachment of a policy to every listed principal",
        ),
        _kind(
            "aws_iam_access_key",
            required=["user"],
            optional=["pgp_key", "status"],
            immutable=["user", "pgp_key"],
            computed=["secret", "encrypted_secret", "ses_smtp_password_v4",
                      "key_fingerprint", "create_date"],
            sensitive=["secret", "ses_smtp_password_v4"],
            sensitive_id=True,
            description="Access key pair for a user",
        ),
        _kind(
            "aws_iam_user_login_profile",
            required=["user"],
            optional=["pgp_key", "password_length", "password_reset_required"],
            immutable=["user", "pgp_key", "password_length", "password_reset_required"],
            computed=["password", "encrypted_password", "key_fingerprint"],
            sensitive=["password"],
            description="Console password for a user",
        ),
        _kind(
            "aws_iam_user_ssh_key",
            required=["username", "public_key", "encoding"],
            optional=["status"],
            immutable=["username", "public_key", "encoding"],
            computed=["ssh_public_key_id", "fingerprint"],
            description="SSH public key uploaded for a user",
        ),
    ]
}


def get_kind(kind: str, address: str = "") -> ResourceKind:
    try:
        return KINDS[kind]
    except KeyError:
        raise UnknownResourceKindError(kind, address) from None


def validate_declaration(decl: ResourceDeclaration) -> ResourceKind:
    """Check a declaration against its kind's schema and return the kind."""
    kind = get_kind(decl.kind, decl.address)
    problems: List[str] = []
    missing = sorted(kind.required - set(decl.attributes))
    if missing:
        problems.append("missing required field(s): " + ", ".join(missing))
    unknown = sorted(set(decl.attributes) - kind.fields)
    if unknown:
        problems.append("unknown field(s): " + ", ".join(unknown))
    if problems:
        raise InvalidDeclarationError(decl.address, problems)
    return kind
