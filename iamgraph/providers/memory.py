"""
Simulated IAM account.

Behaves like the remote service closely enough to exercise the executor:
generated ARNs and ids, unique names per kind, delete conflicts while other
objects still point at a principal or policy. It can be saved to a JSON file
so consecutive CLI runs see the same account.
"""
import base64
import copy
import hashlib
import json
import os
import secrets
import string
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from iamgraph.errors import ProviderError, ResourceConflictError, ResourceNotFoundError
from iamgraph.models.kinds import KINDS
from iamgraph.outputs import mask_id
from iamgraph.providers.base import Attributes, Provider

DEFAULT_ACCOUNT_ID = "123456789012"

_ID_PREFIX = {
    "aws_iam_user": "AIDA",
    "aws_iam_role": "AROA",
    "aws_iam_policy": "ANPA",
    "aws_iam_access_key": "AKIA",
    "aws_iam_user_ssh_key": "APKA",
}

# Kinds whose objects point at a user / role / policy and block its deletion.
_USER_LINKS = {
    "aws_iam_user_policy_attachment": "user",
    "aws_iam_access_key": "user",
    "aws_iam_user_login_profile": "user",
    "aws_iam_user_ssh_key": "username",
}
_ROLE_LINKS = {"aws_iam_role_policy_attachment": "role"}
_POLICY_LINKS = {
    "aws_iam_user_policy_attachment": "policy_arn",
    "aws_iam_role_policy_attachment": "policy_arn",
    "aws_iam_policy_attachment": "policy_arn",
}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MemoryProvider(Provider):
    name = "memory"

    def __init__(self, account_id: str = DEFAULT_ACCOUNT_ID, latency: float = 0.0):
        self.account_id = account_id
        self.latency = latency
        self.objects: Dict[str, Dict[str, Attributes]] = {k: {} for k in KINDS}
        self.calls: List[Tuple[str, str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0
        self._failures: List[Tuple[str, str, Optional[str], Exception]] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------ test hooks
    def fail_on(self, operation: str, kind: str, match: Optional[str] = None,
                error: Optional[Exception] = None) -> None:
        """
        Make the next matching call raise. ``match`` is compared with the
        resource's name (or user/role) attribute, or its remote id.
        """
        self._failures.append(
            (operation, kind, match, error or ProviderError(f"injected {operation} failure"))
        )

    def _maybe_fail(self, operation: str, kind: str, keys: List[Any]) -> None:
        for i, (op, k, match, error) in enumerate(self._failures):
            if op == operation and k == kind and (match is None or match in keys):
                del self._failures[i]
                raise error

    def calls_for(self, operation: str) -> List[Tuple[str, str, str]]:
        return [c for c in self.calls if c[0] == operation]

    # ------------------------------------------------------------ helpers
    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _unique_id(self, kind: str, n: int) -> str:
        digest = hashlib.sha1(f"{self.account_id}:{kind}:{n}".encode()).hexdigest().upper()
        return _ID_PREFIX.get(kind, "AIPA") + digest[:17]

    def _arn(self, resource: str, path: str, name: str) -> str:
        return f"arn:aws:iam::{self.account_id}:{resource}{path or '/'}{name}"

    def _require(self, kind: str, remote_id: str) -> Attributes:
        try:
            return self.objects[kind][remote_id]
        except KeyError:
            raise ResourceNotFoundError(kind, mask_id(kind, remote_id)) from None

    def _require_policy(self, arn: str) -> None:
        if arn.startswith("arn:aws:iam::aws:policy/"):
            return
        if not any(p["arn"] == arn for p in self.objects["aws_iam_policy"].values()):
            raise ResourceNotFoundError("aws_iam_policy", arn)

    def _check_unique(self, kind: str, name: str) -> None:
        if name in self.objects[kind] or any(
            o.get("name") == name for o in self.objects[kind].values()
        ):
            raise ResourceConflictError(f"{kind} named '{name}' already exists")

    def _linked(self, links: Dict[str, str], value: str) -> List[str]:
        found = []
        for kind, field in links.items():
            for remote_id, obj in self.objects[kind].items():
                if obj.get(field) == value:
                    found.append(f"{kind} {mask_id(kind, remote_id)}")
        return found

    def _call(self, operation: str, kind: str, key: str, fn: Callable[[], Any]) -> Any:
        with self._lock:
            self.calls.append((operation, kind, key))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                time.sleep(self.latency)
            with self._lock:
                if kind not in self.objects:
                    raise ProviderError(f"unsupported resource kind '{kind}'")
                return fn()
        finally:
            with self._lock:
                self.in_flight -= 1

    # ------------------------------------------------------------ create
    def create(self, kind: str, attributes: Attributes) -> Tuple[str, Attributes]:
        key = str(attributes.get("name") or attributes.get("user")
                  or attributes.get("role") or attributes.get("username") or "")
        return self._call("create", kind, key, lambda: self._create(kind, dict(attributes)))

    def _create(self, kind: str, attrs: Attributes) -> Tuple[str, Attributes]:
        self._maybe_fail("create", kind, [attrs.get("name"), attrs.get("user"),
                                          attrs.get("role"), attrs.get("username")])
        n = self._next()

        if kind == "aws_iam_user":
            self._check_unique(kind, attrs["name"])
            remote_id = attrs["name"]
            attrs.setdefault("path", "/")
            attrs["arn"] = self._arn("user", attrs["path"], attrs["name"])
            attrs["unique_id"] = self._unique_id(kind, n)
        elif kind == "aws_iam_role":
            attrs.setdefault("name", f"terraform-{n:026d}")
            self._check_unique(kind, attrs["name"])
            remote_id = attrs["name"]
            attrs.setdefault("path", "/")
            attrs.setdefault("max_session_duration", 3600)
            attrs["arn"] = self._arn("role", attrs["path"], attrs["name"])
            attrs["unique_id"] = self._unique_id(kind, n)
            attrs["create_date"] = _now()
        elif kind == "aws_iam_policy":
            attrs.setdefault("name", f"terraform-{n:026d}")
            attrs.setdefault("path", "/")
            arn = self._arn("policy", attrs["path"], attrs["name"])
            if arn in self.objects[kind]:
                raise ResourceConflictError(f"policy '{arn}' already exists")
            remote_id = arn
            attrs["arn"] = arn
            attrs["policy_id"] = self._unique_id(kind, n)
        elif kind == "aws_iam_user_policy_attachment":
            self._require("aws_iam_user", attrs["user"])
            self._require_policy(attrs["policy_arn"])
            remote_id = f"{attrs['user']}-{n:020d}"
        elif kind == "aws_iam_role_policy_attachment":
            self._require("aws_iam_role", attrs["role"])
            self._require_policy(attrs["policy_arn"])
            remote_id = f"{attrs['role']}-{n:020d}"
        elif kind == "aws_iam_policy_attachment":
            self._require_policy(attrs["policy_arn"])
            remote_id = attrs["name"]
        elif kind == "aws_iam_access_key":
            self._require("aws_iam_user", attrs["user"])
            remote_id = self._unique_id(kind, n)[:20]
            attrs.setdefault("status", "Active")
            secret = secrets.token_urlsafe(30)[:40]
            if attrs.get("pgp_key"):
                attrs["encrypted_secret"] = base64.b64encode(secret.encode()).decode()
                attrs["key_fingerprint"] = hashlib.sha1(str(attrs["pgp_key"]).encode()).hexdigest()
            else:
                attrs["secret"] = secret
                attrs["ses_smtp_password_v4"] = secrets.token_urlsafe(33)[:44]
            attrs["create_date"] = _now()
        elif kind == "aws_iam_user_login_profile":
            self._require("aws_iam_user", attrs["user"])
            if attrs["user"] in self.objects[kind]:
                raise ResourceConflictError(f"login profile for '{attrs['user']}' already exists")
            remote_id = attrs["user"]
            length = int(attrs.get("password_length") or 20)
            alphabet = string.ascii_letters + string.digits + "!@#$%^&*()_+-="
            password = "".join(secrets.choice(alphabet) for _ in range(length))
            attrs.setdefault("password_reset_required", False)
            if attrs.get("pgp_key"):
                attrs["encrypted_password"] = base64.b64encode(password.encode()).decode()
                attrs["key_fingerprint"] = hashlib.sha1(str(attrs["pgp_key"]).encode()).hexdigest()
            else:
                attrs["password"] = password
        elif kind == "aws_iam_user_ssh_key":
            self._require("aws_iam_user", attrs["username"])
            key_id = self._unique_id(kind, n)[:21]
            remote_id = f"{attrs['username']}:{key_id}"
            attrs["ssh_public_key_id"] = key_id
            attrs.setdefault("status", "Active")
            digest = hashlib.md5(str(attrs["public_key"]).strip().encode()).hexdigest()
            attrs["fingerprint"] = ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))
        else:
            raise ProviderError(f"unsupported resource kind '{kind}'")

        attrs["id"] = remote_id
        self.objects[kind][remote_id] = attrs
        return remote_id, copy.deepcopy(attrs)

    # ------------------------------------------------------------ read
    def read(self, kind: str, remote_id: str) -> Attributes:
        return self._call("read", kind, remote_id,
                          lambda: copy.deepcopy(self._require(kind, remote_id)))

    # ------------------------------------------------------------ update
    def update(self, kind: str, remote_id: str, attributes: Attributes) -> Attributes:
        return self._call("update", kind, remote_id,
                          lambda: self._update(kind, remote_id, dict(attributes)))

    def _update(self, kind: str, remote_id: str, attrs: Attributes) -> Attributes:
        self._maybe_fail("update", kind, [remote_id, attrs.get("name")])
        current = self._require(kind, remote_id)
        immutable = KINDS[kind].immutable
        for field in immutable:
            if field in attrs and attrs[field] != current.get(field):
                raise ProviderError(f"{kind} field '{field}' cannot be changed in place")

        updated = dict(current)
        for field in KINDS[kind].fields:
            if field in attrs:
                updated[field] = attrs[field]
            elif field not in KINDS[kind].required and field not in ("name", "path"):
                updated.pop(field, None)

        if kind == "aws_iam_user" and updated["name"] != current["name"]:
            self._check_unique(kind, updated["name"])
            del self.objects[kind][remote_id]
            remote_id = updated["name"]
            updated["arn"] = self._arn("user", updated.get("path", "/"), updated["name"])
            for link_kind, field in _USER_LINKS.items():
                for obj in self.objects[link_kind].values():
                    if obj.get(field) == current["name"]:
                        obj[field] = updated["name"]

        updated["id"] = remote_id
        self.objects[kind][remote_id] = updated
        return copy.deepcopy(updated)

    # ------------------------------------------------------------ delete
    def delete(self, kind: str, remote_id: str) -> None:
        self._call("delete", kind, remote_id, lambda: self._delete(kind, remote_id))

    def _delete(self, kind: str, remote_id: str) -> None:
        self._maybe_fail("delete", kind, [remote_id])
        obj = self._require(kind, remote_id)

        blockers: List[str] = []
        if kind == "aws_iam_user" and not obj.get("force_destroy"):
            blockers = self._linked(_USER_LINKS, obj["name"])
        elif kind == "aws_iam_role":
            blockers = self._linked(_ROLE_LINKS, obj["name"])
        elif kind == "aws_iam_policy":
            blockers = self._linked(_POLICY_LINKS, obj["arn"])
        if blockers:
            raise ResourceConflictError(
                f"cannot delete {kind} '{remote_id}': still referenced by " + ", ".join(blockers)
            )

        if kind == "aws_iam_user":
            for link_kind, field in _USER_LINKS.items():
                for rid in [r for r, o in self.objects[link_kind].items() if o.get(field) == obj["name"]]:
                    del self.objects[link_kind][rid]
        del self.objects[kind][remote_id]

    # ------------------------------------------------------------ persistence
    def save(self, path: str) -> None:
        with self._lock:
            doc = {"account_id": self.account_id, "counter": self._counter, "objects": self.objects}
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(doc, fh, indent=2, sort_keys=True)

    @classmethod
    def load(cls, path: str) -> "MemoryProvider":
        provider = cls()
        if not os.path.exists(path):
            return provider
        with open(path, encoding="utf-8") as fh:
            doc = json.load(fh)
        provider.account_id = doc.get("account_id", DEFAULT_ACCOUNT_ID)
        provider._counter = int(doc.get("counter", 0))
        for kind, objs in doc.get("objects", {}).items():
            if kind in provider.objects:
                provider.objects[kind] = objs
        return provider
