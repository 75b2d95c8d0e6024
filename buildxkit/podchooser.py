"""Choosing a running BuildKit pod, at random or by consistent hashing."""

from __future__ import annotations

import bisect
import hashlib
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Optional

log = logging.getLogger(__name__)

POD_RUNNING = "Running"
_POINTS_PER_NODE = 40
_HASHES_PER_POINT = 3


@dataclass
class Pod:
    name: str
    phase: str = ""
    namespace: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    containers: list[str] = field(default_factory=list)


def _digest(key: str) -> bytes:
    return hashlib.md5(key.encode()).digest()


def _hash_value(chunk: bytes) -> int:
    return int.from_bytes(chunk[:4], "little")


class HashRing:
    """Consistent hash ring over node names with MD5 virtual points."""

    def __init__(self, nodes):
        self.nodes = list(nodes)
        self._ring: dict[int, str] = {}
        keys: list[int] = []
        total_weight = len(self.nodes)
        for node in self.nodes:
            factor = (_POINTS_PER_NODE * len(self.nodes)) // total_weight
            for j in range(factor):
                digest = _digest(f"{node}-{j}")
                for i in range(_HASHES_PER_POINT):
                    key = _hash_value(digest[i * 4 : i * 4 + 4])
                    self._ring[key] = node
                    keys.append(key)
        self._sorted_keys = sorted(keys)

    def get_node(self, key) -> Optional[str]:
        """Return the node owning ``key``, or None when the ring is empty."""
        if not self._ring:
            return None
        point = _hash_value(_digest(key))
        pos = bisect.bisect_right(self._sorted_keys, point)
        if pos == len(self._sorted_keys):
            pos = 0
        return self._ring[self._sorted_keys[pos]]


def label_selector(deployment) -> str:
    """Render the deployment's match labels as a label selector string."""
    labels = deployment["spec"]["selector"].get("matchLabels") or {}
    return ",".join(f"{k}={labels[k]}" for k in sorted(labels))


def list_running_pods(pod_client, deployment) -> list[Pod]:
    """List the deployment's pods in the Running phase, sorted by name."""
    pods = pod_client.list(label_selector(deployment))
    running = [p for p in pods if p.phase == POD_RUNNING]
    for pod in running:
        log.debug("pod running: %r", pod.name)
    return sorted(running, key=lambda p: p.name)


@dataclass
class RandomPodChooser:
    pod_client: Any
    deployment: dict[str, Any]
    rng: Optional[random.Random] = None

    def choose_pod(self) -> Pod:
        pods = list_running_pods(self.pod_client, self.deployment)
        if not pods:
            raise LookupError("no running buildkit pods found")
        rng = self.rng or random.Random()
        n = rng.randrange(len(pods))
        log.debug("RandomPodChooser.choose_pod(): len(pods)=%d, n=%d", len(pods), n)
        return pods[n]


@dataclass
class StickyPodChooser:
    key: str
    pod_client: Any
    deployment: dict[str, Any]

    def choose_pod(self) -> Pod:
        pods = list_running_pods(self.pod_client, self.deployment)
        by_name = {pod.name: pod for pod in pods}
        chosen = HashRing(by_name).get_node(self.key)
        if chosen is None:
            log.error("no pod found for key %r", self.key)
            return RandomPodChooser(self.pod_client, self.deployment).choose_pod()
        return by_name[chosen]