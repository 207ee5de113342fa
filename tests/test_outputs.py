"""
Output values, sensitive masking, diff rendering and reports.
"""
import json

from iamgraph.engine.diff import (
    UNKNOWN,
    Change,
    ChangeAction,
    Plan,
    render_change,
    resolve_value,
    sensitive_fields,
)
from iamgraph.engine.executor import Executor
from iamgraph.graph.builder import load_graph
from iamgraph.models.resource import AttributeRef, FileContent, OutputDeclaration, ResourceDeclaration, Template
from iamgraph.models.state import RemoteResourceState
from iamgraph.outputs import SENSITIVE_MASK, OutputValue, SensitiveOutput, collect_outputs, references_sensitive
from iamgraph.providers.memory import MemoryProvider
from iamgraph.reporters import json_reporter, markdown
from iamgraph.state.store import MemoryStateStore


class TestSensitiveOutput:
    def test_masked_everywhere(self):
        out = SensitiveOutput("secret", "hunter2")
        assert out.display() == SENSITIVE_MASK
        assert "hunter2" not in repr(out)
        assert "hunter2" not in str(out)
        assert "hunter2" not in f"{out}"
        assert out.to_dict()["value"] == SENSITIVE_MASK

    def test_reveal(self):
        out = SensitiveOutput("secret", "hunter2")
        assert out.display(reveal=True) == "hunter2"
        assert out.to_dict(reveal=True)["value"] == "hunter2"

    def test_plain_output(self):
        out = OutputValue("arn", "arn:x")
        assert out.display() == "arn:x"
        assert OutputValue("arn", None).display() == "(not yet applied)"

    def test_references_sensitive(self):
        assert references_sensitive(AttributeRef("aws_iam_access_key", "k", "secret"))
        assert references_sensitive(Template(("pw: ", AttributeRef("aws_iam_user_login_profile", "p", "password"))))
        assert references_sensitive(AttributeRef("aws_iam_access_key", "k", "id"))
        assert references_sensitive(AttributeRef("aws_iam_access_key", "k"))
        assert not references_sensitive(AttributeRef("aws_iam_user", "u", "id"))
        assert not references_sensitive(AttributeRef("aws_iam_access_key", "k", "status"))


class TestCollectOutputs:
    def setup_method(self):
        self.state = MemoryStateStore([
            RemoteResourceState("aws_iam_user", "ci", "ci", attributes={"name": "ci"},
                                outputs={"arn": "arn:aws:iam::123456789012:user/ci"}),
            RemoteResourceState("aws_iam_access_key", "ci", "AKIA0000000000000000",
                                attributes={"user": "ci"}, outputs={"secret": "very-secret"}),
        ])

    def test_values_resolved(self):
        outputs = [
            OutputDeclaration("arn", AttributeRef("aws_iam_user", "ci", "arn")),
            OutputDeclaration("key_id", AttributeRef("aws_iam_access_key", "ci", "id")),
        ]
        values = collect_outputs(outputs, self.state)
        assert [(v.name, v.value) for v in values] == [
            ("arn", "arn:aws:iam::123456789012:user/ci"),
            ("key_id", "AKIA0000000000000000"),
        ]
        assert values[1].display() == SENSITIVE_MASK
        assert values[1].display(reveal=True) == "AKIA0000000000000000"

    def test_secret_output_auto_masked(self):
        values = collect_outputs([OutputDeclaration("s", AttributeRef("aws_iam_access_key", "ci", "secret"))], self.state)
        assert isinstance(values[0], SensitiveOutput)
        assert values[0].value == "very-secret"
        assert values[0].display() == SENSITIVE_MASK

    def test_declared_sensitive(self):
        decl = OutputDeclaration("arn", AttributeRef("aws_iam_user", "ci", "arn"), sensitive=True)
        assert collect_outputs([decl], self.state)[0].display() == SENSITIVE_MASK

    def test_not_applied(self):
        decl = OutputDeclaration("role", AttributeRef("aws_iam_role", "r", "arn"))
        assert collect_outputs([decl], self.state)[0].value is None


class TestRendering:
    def test_resolve_value(self):
        lookup = {AttributeRef("aws_iam_user", "u", "name"): "ci"}.get
        assert resolve_value(Template(("user/", AttributeRef("aws_iam_user", "u", "name"))), lookup) == "user/ci"
        assert resolve_value(FileContent("p.json", b"{}"), lookup) == "{}"
        assert resolve_value({"a": [AttributeRef("aws_iam_user", "u", "name")]}, lookup) == {"a": ["ci"]}

    def test_unknown_template(self):
        assert resolve_value(Template(("x", AttributeRef("aws_iam_user", "u", "arn"))), lambda ref: UNKNOWN) is UNKNOWN

    def test_create_lines(self):
        change = Change("aws_iam_user.ci", "aws_iam_user", ChangeAction.CREATE,
                        after={"name": "ci", "path": UNKNOWN})
        assert render_change(change) == [
            "+ aws_iam_user.ci",
            '    name = "ci"',
            "    path = (known after apply)",
        ]

    def test_sensitive_masked(self):
        change = Change("aws_iam_access_key.k", "aws_iam_access_key", ChangeAction.DELETE,
                        before={"user": "ci", "secret": "very-secret"})
        lines = render_change(change)
        assert "very-secret" not in "\n".join(lines)
        assert f"    secret = {SENSITIVE_MASK}" in lines
        assert "very-secret" in "\n".join(render_change(change, reveal=True))

    def test_reference_derived_field_masked(self):
        change = Change("aws_iam_role.r", "aws_iam_role", ChangeAction.UPDATE,
                        before={"description": "old-secret"}, after={"description": "new-secret"},
                        changed_fields=["description"], sensitive_fields=["description"])
        assert render_change(change) == [
            "~ aws_iam_role.r", f"    description: {SENSITIVE_MASK} -> {SENSITIVE_MASK}",
        ]
        report = json.loads(json_reporter.build_report(Plan([change]), "main.tf"))
        assert report["changes"][0]["after"] == {"description": SENSITIVE_MASK}

    def test_sensitive_fields_from_declaration(self):
        decl = ResourceDeclaration("aws_iam_role", "r", {
            "assume_role_policy": "{}",
            "description": Template(("key ", AttributeRef("aws_iam_access_key", "k", "id"))),
            "name": AttributeRef("aws_iam_user", "u", "name"),
        })
        assert sensitive_fields(decl) == ["description"]

    def test_update_shows_only_changed_fields(self):
        change = Change("aws_iam_user.ci", "aws_iam_user", ChangeAction.UPDATE,
                        before={"name": "ci", "path": "/"}, after={"name": "ci", "path": "/ops/"},
                        changed_fields=["path"])
        assert render_change(change) == ["~ aws_iam_user.ci", '    path: "/" -> "/ops/"']


class TestReports:
    def setup_method(self):
        self.graph = load_graph([
            ResourceDeclaration("aws_iam_user", "ci", {"name": "ci"}),
            ResourceDeclaration("aws_iam_access_key", "ci", {"user": AttributeRef("aws_iam_user", "ci", "name")}),
        ])
        self.state = MemoryStateStore()
        self.executor = Executor(MemoryProvider(), self.state, 1)
        self.plan = self.executor.plan(self.graph)

    def test_json_report(self):
        report = json.loads(json_reporter.build_report(self.plan, "main.tf", self.graph.topological_order()))
        assert report["meta"]["tool"] == "iamgraph"
        assert report["summary"]["create"] == 2
        assert report["order"] == ["aws_iam_user.ci", "aws_iam_access_key.ci"]
        key = report["changes"][1]
        assert key["action"] == "create"
        assert key["after"]["user"] == "ci"

    def test_json_outputs_masked(self):
        doc = json.loads(json_reporter.build_outputs([SensitiveOutput("s", "x"), OutputValue("a", "b")]))
        assert doc == {"s": SENSITIVE_MASK, "a": "b"}

    def test_markdown_report(self):
        report = markdown.build_report(self.graph, self.plan, "main.tf")
        assert "# Execution Plan" in report
        assert "```mermaid" in report
        assert "aws_iam_access_key_ci -->|name| aws_iam_user_ci" in report
        assert "| 1 | `aws_iam_user.ci` | create |" in report

    def test_mermaid_groups(self):
        diagram = markdown.build_mermaid(self.graph, {})
        assert diagram.startswith("flowchart RL")
        assert "subgraph Principals" in diagram
        assert "subgraph Credentials" in diagram
