"""Driver options for the Kubernetes driver and deployment naming."""

from __future__ import annotations

import re

from buildxkit.driver import DEFAULT_IMAGE, DEFAULT_ROOTLESS_IMAGE, QEMU_IMAGE
from buildxkit.manifest import DeploymentOpt, QemuOpt, Toleration

DRIVER_NAME = "kubernetes"

LOADBALANCE_RANDOM = "random"
LOADBALANCE_STICKY = "sticky"

PRIORITY_SUPPORTED = 40
PRIORITY_UNSUPPORTED = 80

_DEPLOYMENT_PREFIX = "buildx_buildkit_"
_INT_RE = re.compile(r"^[+-]?[0-9]+$")
_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def _parse_int(text: str) -> int:
    if not _INT_RE.match(text):
        raise ValueError(f"invalid integer {text!r}")
    return int(text)


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _key_values(text: str, sep: str):
    """Yield the key=value pairs of ``text`` that have exactly one '='."""
    for item in text.split(sep):
        parts = item.split("=")
        if len(parts) == 2:
            yield parts[0], parts[1]


def _parse_tolerations(text: str) -> list[Toleration]:
    tolerations: list[Toleration] = []
    for spec in text.split(";"):
        toleration = Toleration()
        for key, value in _key_values(spec, ","):
            if key == "key":
                toleration.key = value
            elif key == "operator":
                toleration.operator = value
            elif key == "value":
                toleration.value = value
            elif key == "effect":
                toleration.effect = value
            elif key == "tolerationSeconds":
                toleration.toleration_seconds = _parse_int(value)
            else:
                raise ValueError(f"invalid toleration {text!r}")
        tolerations.append(toleration)
    return tolerations


def buildx_name_to_deployment_name(name) -> str:
    """Turn "buildx_buildkit_loving_mendeleev0" into "loving-mendeleev0"."""
    if not name.startswith(_DEPLOYMENT_PREFIX):
        raise ValueError(f'expected a string with "{_DEPLOYMENT_PREFIX}", got {name!r}')
    return name[len(_DEPLOYMENT_PREFIX):].replace("_", "-")


def process_driver_opts(deployment_name, namespace, config):
    """Apply driver options; return (deployment options, load balancing, namespace)."""
    opt = DeploymentOpt(
        name=deployment_name,
        image=DEFAULT_IMAGE,
        replicas=1,
        buildkit_flags=config.buildkit_flags,
        rootless=False,
        platforms=list(config.platforms or []),
        config_files=dict(config.files or {}),
        qemu=QemuOpt(install=False, image=QEMU_IMAGE),
    )
    loadbalance = LOADBALANCE_STICKY
    driver_opts = config.driver_opts or {}

    for key, value in driver_opts.items():
        if key == "image":
            if value:
                opt.image = value
        elif key == "namespace":
            namespace = value
        elif key == "replicas":
            opt.replicas = _parse_int(value)
        elif key == "requests.cpu":
            opt.requests_cpu = value
        elif key == "requests.memory":
            opt.requests_memory = value
        elif key == "limits.cpu":
            opt.limits_cpu = value
        elif key == "limits.memory":
            opt.limits_memory = value
        elif key == "rootless":
            opt.rootless = _parse_bool(value)
            if "image" not in driver_opts:
                opt.image = DEFAULT_ROOTLESS_IMAGE
        elif key == "serviceaccount":
            opt.service_account_name = value
        elif key == "nodeselector":
            opt.node_selector = dict(_key_values(value.strip('"'), ","))
        elif key == "tolerations":
            opt.tolerations = _parse_tolerations(value)
        elif key == "loadbalance":
            if value not in (LOADBALANCE_STICKY, LOADBALANCE_RANDOM):
                raise ValueError(f"invalid loadbalance {value!r}")
            loadbalance = value
        elif key == "qemu.install":
            opt.qemu.install = _parse_bool(value)
        elif key == "qemu.image":
            if value:
                opt.qemu.image = value
        else:
            raise ValueError(f"invalid driver option {key} for driver {DRIVER_NAME}")

    return opt, loadbalance, namespace