"""Per-builder local state persisted as small JSON files under a root directory."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

_REFS_DIR = "refs"


@dataclass
class State:
    """Local paths recorded for a build reference."""

    local_path: str = ""
    dockerfile_path: str = ""

    def to_json(self) -> bytes:
        return json.dumps(
            {"LocalPath": self.local_path, "DockerfilePath": self.dockerfile_path},
            separators=(",", ":"),
        ).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> "State":
        raw = json.loads(data)
        return cls(
            local_path=raw.get("LocalPath", ""),
            dockerfile_path=raw.get("DockerfilePath", ""),
        )


def _require(value: str, what: str) -> None:
    if not value:
        raise ValueError(f"{what} empty")


class LocalState:
    """Store of build references keyed by builder, node and ref ID."""

    def __init__(self, root):
        if not root:
            raise ValueError("root dir empty")
        self.root = Path(root)
        (self.root / _REFS_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)

    def _validate(self, builder_name: str, node_name: str, ref_id: str) -> None:
        _require(builder_name, "builder name")
        _require(node_name, "node name")
        _require(ref_id, "ref ID")

    def read_ref(self, builder_name, node_name, ref_id) -> State:
        self._validate(builder_name, node_name, ref_id)
        path = self.root / _REFS_DIR / builder_name / node_name / ref_id
        return State.from_json(path.read_bytes())

    def save_ref(self, builder_name, node_name, ref_id, state: State) -> None:
        self._validate(builder_name, node_name, ref_id)
        ref_dir = self.root / _REFS_DIR / builder_name / node_name
        ref_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=ref_dir, prefix=f".{ref_id}.")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(state.to_json())
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, ref_dir / ref_id)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove_builder(self, builder_name) -> None:
        _require(builder_name, "builder name")
        shutil.rmtree(self.root / _REFS_DIR / builder_name, ignore_errors=True)

    def remove_builder_node(self, builder_name, node_name) -> None:
        _require(builder_name, "builder name")
        _require(node_name, "node name")
        shutil.rmtree(self.root / _REFS_DIR / builder_name / node_name, ignore_errors=True)