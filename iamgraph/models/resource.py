from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union


@dataclass(frozen=True)
class AttributeRef:
    """An expression pointing at another resource's output, e.g. ``aws_iam_user.ci.arn``."""

    kind: str
    name: str
    attribute: Optional[str] = None   # None for a bare depends_on entry

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def __str__(self) -> str:
        if self.attribute is None:
            return self.address
        return f"{self.address}.{self.attribute}"


@dataclass(frozen=True)
class FileContent:
    """Contents of an external file, loaded as an opaque blob."""

    path: str
    data: bytes

    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass(frozen=True)
class Template:
    """A string that interpolates one or more references."""

    parts: Tuple[Union[str, AttributeRef], ...]

    def __str__(self) -> str:
        return "".join(p if isinstance(p, str) else "${" + str(p) + "}" for p in self.parts)


@dataclass
class ResourceDeclaration:
    kind: str                # e.g. "aws_iam_user"
    name: str                # logical name in the configuration
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[AttributeRef] = field(default_factory=list)
    source_file: str = ""

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.kind, self.name)


@dataclass
class OutputDeclaration:
    name: str
    value: Any
    sensitive: bool = False
    description: str = ""
    source_file: str = ""


@dataclass
class Configuration:
    """Everything loaded from a set of declaration files."""

    resources: List[ResourceDeclaration] = field(default_factory=list)
    outputs: List[OutputDeclaration] = field(default_factory=list)

    def extend(self, other: "Configuration") -> None:
        self.resources.extend(other.resources)
        self.outputs.extend(other.outputs)

    def by_address(self) -> Dict[str, ResourceDeclaration]:
        return {d.address: d for d in self.resources}


def iter_refs(value: Any) -> Iterator[AttributeRef]:
    """Yield every reference nested anywhere inside an attribute value."""
    if isinstance(value, AttributeRef):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if isinstance(part, AttributeRef):
                yield part
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)
