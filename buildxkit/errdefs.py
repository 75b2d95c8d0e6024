"""Errors that carry the reference of the build that produced them."""

from __future__ import annotations

from typing import Any, Optional

TYPE_URL = "github.com/docker/buildx/errdefs.Build+json"


class BuildError(Exception):
    """A build failure tagged with the build reference it belongs to."""

    def __init__(self, error: BaseException, ref: str):
        super().__init__(str(error))
        self.error = error
        self.ref = ref
        self.__cause__ = error

    def to_dict(self) -> dict[str, Any]:
        """Return the structured detail attached to the error on the wire."""
        return {"Ref": self.ref}


def wrap_build(error: Optional[BaseException], ref: str) -> Optional[BuildError]:
    """Tag ``error`` with ``ref``; ``None`` stays ``None``."""
    if error is None:
        return None
    return BuildError(error, ref)