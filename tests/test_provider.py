"""
Simulated IAM account behaviour.
"""
import pytest

from iamgraph.errors import ProviderError, ResourceConflictError, ResourceNotFoundError
from iamgraph.providers.memory import MemoryProvider

POLICY_DOC = '{"Version": "2012-10-17", "Statement": []}'


class TestMemoryProvider:
    def setup_method(self):
        self.provider = MemoryProvider()

    def test_user_arn_and_id(self):
        remote_id, attrs = self.provider.create("aws_iam_user", {"name": "ci", "path": "/system/"})
        assert remote_id == "ci"
        assert attrs["arn"] == "arn:aws:iam::123456789012:user/system/ci"
        assert attrs["unique_id"].startswith("AIDA")
        assert self.provider.read("aws_iam_user", "ci")["arn"] == attrs["arn"]

    def test_read_missing(self):
        with pytest.raises(ResourceNotFoundError):
            self.provider.read("aws_iam_user", "nobody")

    def test_duplicate_name_conflicts(self):
        self.provider.create("aws_iam_user", {"name": "ci"})
        with pytest.raises(ResourceConflictError):
            self.provider.create("aws_iam_user", {"name": "ci"})

    def test_unknown_kind(self):
        with pytest.raises(ProviderError):
            self.provider.create("aws_s3_bucket", {"bucket": "b"})

    def test_access_key_secret(self):
        self.provider.create("aws_iam_user", {"name": "ci"})
        remote_id, attrs = self.provider.create("aws_iam_access_key", {"user": "ci"})
        assert remote_id.startswith("AKIA")
        assert len(remote_id) == 20
        assert attrs["secret"]
        assert attrs["status"] == "Active"

    def test_attachment_requires_principal_and_policy(self):
        with pytest.raises(ResourceNotFoundError):
            self.provider.create("aws_iam_user_policy_attachment",
                                 {"user": "ghost", "policy_arn": "arn:aws:iam::aws:policy/ReadOnlyAccess"})
        self.provider.create("aws_iam_user", {"name": "ci"})
        with pytest.raises(ResourceNotFoundError):
            self.provider.create("aws_iam_user_policy_attachment",
                                 {"user": "ci", "policy_arn": "arn:aws:iam::123456789012:policy/missing"})

    def test_delete_blocked_while_attached(self):
        _, policy = self.provider.create("aws_iam_policy", {"name": "p", "policy": POLICY_DOC})
        self.provider.create("aws_iam_role", {"name": "r", "assume_role_policy": "{}"})
        attachment_id, _ = self.provider.create("aws_iam_role_policy_attachment",
                                                {"role": "r", "policy_arn": policy["arn"]})
        with pytest.raises(ResourceConflictError):
            self.provider.delete("aws_iam_policy", policy["arn"])
        self.provider.delete("aws_iam_role_policy_attachment", attachment_id)
        self.provider.delete("aws_iam_policy", policy["arn"])

    def test_force_destroy_cascades(self):
        self.provider.create("aws_iam_user", {"name": "ci", "force_destroy": True})
        self.provider.create("aws_iam_access_key", {"user": "ci"})
        self.provider.delete("aws_iam_user", "ci")
        assert self.provider.objects["aws_iam_access_key"] == {}

    def test_update_rejects_immutable_field(self):
        _, policy = self.provider.create("aws_iam_policy", {"name": "p", "policy": POLICY_DOC})
        with pytest.raises(ProviderError):
            self.provider.update("aws_iam_policy", policy["arn"], {"name": "renamed", "policy": POLICY_DOC})

    def test_user_rename_moves_links(self):
        self.provider.create("aws_iam_user", {"name": "old"})
        self.provider.create("aws_iam_user_login_profile", {"user": "old"})
        attrs = self.provider.update("aws_iam_user", "old", {"name": "new"})
        assert attrs["id"] == "new"
        assert self.provider.objects["aws_iam_user_login_profile"]["old"]["user"] == "new"

    def test_injected_failure_is_consumed(self):
        self.provider.fail_on("create", "aws_iam_user", match="ci")
        with pytest.raises(ProviderError, match="injected"):
            self.provider.create("aws_iam_user", {"name": "ci"})
        remote_id, _ = self.provider.create("aws_iam_user", {"name": "ci"})
        assert remote_id == "ci"

    def test_calls_recorded(self):
        self.provider.create("aws_iam_user", {"name": "ci"})
        self.provider.delete("aws_iam_user", "ci")
        assert self.provider.calls == [("create", "aws_iam_user", "ci"), ("delete", "aws_iam_user", "ci")]

    def test_save_and_load(self, tmp_path):
        self.provider.create("aws_iam_user", {"name": "ci"})
        path = str(tmp_path / "remote.json")
        self.provider.save(path)

        loaded = MemoryProvider.load(path)
        assert loaded.read("aws_iam_user", "ci")["name"] == "ci"
        _, attrs = loaded.create("aws_iam_user", {"name": "second"})
        assert attrs["unique_id"] != self.provider.objects["aws_iam_user"]["ci"]["unique_id"]

    def test_errors_do_not_name_access_keys(self):
        self.provider.create("aws_iam_user", {"name": "ci"})
        key_id, _ = self.provider.create("aws_iam_access_key", {"user": "ci"})
        with pytest.raises(ResourceConflictError, match="aws_iam_access_key") as exc_info:
            self.provider.delete("aws_iam_user", "ci")
        assert key_id not in str(exc_info.value)

        self.provider.delete("aws_iam_access_key", key_id)
        with pytest.raises(ResourceNotFoundError) as exc_info:
            self.provider.delete("aws_iam_access_key", key_id)
        assert key_id not in str(exc_info.value)
