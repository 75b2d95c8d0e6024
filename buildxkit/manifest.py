"""Kubernetes Deployment and ConfigMap manifests for BuildKit pods."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple, Optional

from buildxkit.driver import DEFAULT_IMAGE, QEMU_IMAGE, Platform

CONTAINER_NAME = "buildkitd"
ANNOTATION_PLATFORM = "buildx.docker.com/platform"
_ROOTLESS_STATE_DIR = "/home/user/.local/share/buildkit"

_QUANTITY_RE = re.compile(
    r"^([+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+))"
    r"(Ki|Mi|Gi|Ti|Pi|Ei|[eE][+-]?[0-9]+|[numkMGTPE])?$"
)
_BINARY = {"Ki": 10, "Mi": 20, "Gi": 30, "Ti": 40, "Pi": 50, "Ei": 60}
_DECIMAL = {"n": -9, "u": -6, "m": -3, "": 0, "k": 3, "M": 6, "G": 9, "T": 12, "P": 15, "E": 18}


def parse_quantity(text) -> Decimal:
    """Validate a Kubernetes resource quantity and return its numeric value."""
    match = _QUANTITY_RE.match(text or "")
    if not match:
        raise ValueError(f"quantities must match the regular expression: {text!r}")
    number, suffix = match.group(1), match.group(2) or ""
    try:
        value = Decimal(number)
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {text!r}") from exc
    if suffix in _BINARY:
        return value * (2 ** _BINARY[suffix])
    if suffix in _DECIMAL:
        return value.scaleb(_DECIMAL[suffix])
    return value.scaleb(int(suffix[1:]))


@dataclass
class Toleration:
    key: str = ""
    operator: str = ""
    value: str = ""
    effect: str = ""
    toleration_seconds: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, val in (
            ("key", self.key),
            ("operator", self.operator),
            ("value", self.value),
            ("effect", self.effect),
        ):
            if val:
                out[name] = val
        if self.toleration_seconds is not None:
            out["tolerationSeconds"] = self.toleration_seconds
        return out


@dataclass
class QemuOpt:
    install: bool = False
    image: str = QEMU_IMAGE


@dataclass
class DeploymentOpt:
    name: str = ""
    namespace: str = ""
    image: str = DEFAULT_IMAGE
    replicas: int = 1
    service_account_name: str = ""
    qemu: QemuOpt = field(default_factory=QemuOpt)
    buildkit_flags: Optional[list[str]] = None
    # Files mounted under /etc/buildkit.
    config_files: dict[str, bytes] = field(default_factory=dict)
    rootless: bool = False
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[Toleration] = field(default_factory=list)
    requests_cpu: str = ""
    requests_memory: str = ""
    limits_cpu: str = ""
    limits_memory: str = ""
    platforms: list[Platform] = field(default_factory=list)


class _ConfigGroup(NamedTuple):
    name: str
    path: str
    files: dict[str, str]


def split_config_files(files) -> list[_ConfigGroup]:
    """Group config files by directory, one ConfigMap per directory."""
    groups: list[_ConfigGroup] = []
    by_dir: dict[str, _ConfigGroup] = {}
    for path, data in (files or {}).items():
        directory = posixpath.dirname(path) or "."
        group = by_dir.get(directory)
        if group is None:
            name = "config"
            if directory != ".":
                name = f"config-{sum(1 for g in groups if g.path != '.') + 1}"
            group = _ConfigGroup(name=name, path=directory, files={})
            by_dir[directory] = group
            groups.append(group)
        content = data.decode("utf-8", "surrogateescape") if isinstance(data, bytes) else data
        group.files[posixpath.basename(path)] = content
    return groups


def _to_rootless(deployment: dict[str, Any]) -> None:
    template = deployment["spec"]["template"]
    pod_spec = template["spec"]
    container = pod_spec["containers"][0]
    container["args"] = list(container.get("args") or []) + ["--oci-worker-no-process-sandbox"]
    container["securityContext"] = {"seccompProfile": {"type": "Unconfined"}}
    template["metadata"].setdefault("annotations", {})[
        f"container.apparmor.security.beta.kubernetes.io/{CONTAINER_NAME}"
    ] = "unconfined"
    container.setdefault("volumeMounts", []).append(
        {"name": CONTAINER_NAME, "mountPath": _ROOTLESS_STATE_DIR}
    )
    pod_spec.setdefault("volumes", []).append({"name": CONTAINER_NAME, "emptyDir": {}})


def new_deployment(opt):
    """Build the Deployment and its ConfigMaps as Kubernetes API dictionaries."""
    labels = {"app": opt.name}
    annotations: dict[str, str] = {}
    if opt.platforms:
        annotations[ANNOTATION_PLATFORM] = ",".join(str(p) for p in opt.platforms)

    container: dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": opt.image,
        "args": list(opt.buildkit_flags or []),
        "securityContext": {"privileged": True},
        "readinessProbe": {"exec": {"command": ["buildctl", "debug", "workers"]}},
        "resources": {"requests": {}, "limits": {}},
    }
    pod_spec: dict[str, Any] = {
        "serviceAccountName": opt.service_account_name,
        "containers": [container],
    }
    deployment: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "namespace": opt.namespace,
            "name": opt.name,
            "labels": dict(labels),
            "annotations": dict(annotations),
        },
        "spec": {
            "replicas": opt.replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels), "annotations": dict(annotations)},
                "spec": pod_spec,
            },
        },
    }

    config_maps: list[dict[str, Any]] = []
    for group in split_config_files(opt.config_files):
        cm_name = f"{opt.name}-{group.name}"
        config_maps.append(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "namespace": opt.namespace,
                    "name": cm_name,
                    "annotations": dict(annotations),
                },
                "data": dict(group.files),
            }
        )
        container["volumeMounts"] = [
            {"name": group.name, "mountPath": posixpath.join("/etc/buildkit", group.path)}
        ]
        pod_spec["volumes"] = [{"name": "config", "configMap": {"name": cm_name}}]

    if opt.qemu.install:
        pod_spec["initContainers"] = [
            {
                "name": "qemu",
                "image": opt.qemu.image,
                "args": ["--install", "all"],
                "securityContext": {"privileged": True},
            }
        ]

    if opt.rootless:
        _to_rootless(deployment)

    if opt.node_selector:
        pod_spec["nodeSelector"] = dict(opt.node_selector)

    if opt.tolerations:
        pod_spec["tolerations"] = [t.to_dict() for t in opt.tolerations]

    resources = container["resources"]
    for text, section, resource in (
        (opt.requests_cpu, "requests", "cpu"),
        (opt.requests_memory, "requests", "memory"),
        (opt.limits_cpu, "limits", "cpu"),
        (opt.limits_memory, "limits", "memory"),
    ):
        if text:
            parse_quantity(text)
            resources[section][resource] = text

    return deployment, config_maps