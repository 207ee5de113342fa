from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Tuple


class ResourceStatus(str, Enum):
    ABSENT     = "absent"
    PENDING    = "pending"
    CREATED    = "created"
    UPDATED    = "updated"
    DESTROYING = "destroying"
    FAILED     = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class RemoteResourceState:
    kind: str
    name: str
    remote_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)   # last-applied inputs
    outputs: Dict[str, Any] = field(default_factory=dict)      # provider result
    dependencies: List[str] = field(default_factory=list)
    sensitive_attributes: List[str] = field(default_factory=list)   # inputs copied from a secret
    status: ResourceStatus = ResourceStatus.CREATED
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.kind, self.name)

    def output(self, attribute: str) -> Any:
        if attribute == "id":
            return self.remote_id
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes.get(attribute)

    def touch(self, status: ResourceStatus) -> None:
        self.status = status
        self.updated_at = _now()

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "name": self.name,
            "remote_id": self.remote_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "sensitive_attributes": self.sensitive_attributes,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteResourceState":
        return cls(
            kind=data["kind"],
            name=data["name"],
            remote_id=data["remote_id"],
            attributes=dict(data.get("attributes", {})),
            outputs=dict(data.get("outputs", {})),
            dependencies=list(data.get("dependencies", [])),
            sensitive_attributes=list(data.get("sensitive_attributes", [])),
            status=ResourceStatus(data.get("status", ResourceStatus.CREATED.value)),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )
