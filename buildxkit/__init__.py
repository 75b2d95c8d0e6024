"""Builder drivers, local build state and build option handling for BuildKit."""

__version__ = "0.1.0"

__all__ = [
    "containerdriver",
    "dockerdriver",
    "driver",
    "endpoint",
    "errdefs",
    "kubefactory",
    "localstate",
    "manifest",
    "mobyversion",
    "options",
    "podchooser",
    "remotedriver",
]