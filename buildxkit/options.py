"""Build options and their conversion into exporter, cache and attestation settings."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Optional
from urllib.parse import urlsplit

EXPORTER_IMAGE = "image"
EXPORTER_LOCAL = "local"
EXPORTER_TAR = "tar"
EXPORTER_OCI = "oci"
EXPORTER_DOCKER = "docker"

_TRUE = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_PROTO_RE = re.compile(r"^[a-zA-Z0-9]+://")
_SSH_RE = re.compile(r"^([a-zA-Z0-9_-]+)@([a-zA-Z0-9.-]+):(.*?)(?:#(.*))?$")
_GIT_SCHEMES = frozenset({"https", "http", "git", "ssh"})


@dataclass
class Attest:
    type: str
    disabled: bool = False
    attrs: str = ""


@dataclass
class CacheOptionsEntry:
    type: str
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class ExportEntry:
    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    destination: str = ""


@dataclass
class Secret:
    id: str = ""
    file_path: str = ""
    env: str = ""


@dataclass
class SSH:
    id: str = ""
    paths: list[str] = field(default_factory=list)


@dataclass
class BuildOptions:
    context_path: str = ""
    dockerfile_name: str = ""
    named_contexts: dict[str, str] = field(default_factory=dict)
    cache_from: list[CacheOptionsEntry] = field(default_factory=list)
    cache_to: list[CacheOptionsEntry] = field(default_factory=list)
    exports: list[ExportEntry] = field(default_factory=list)
    secrets: list[Secret] = field(default_factory=list)
    ssh: list[SSH] = field(default_factory=list)
    attests: list[Attest] = field(default_factory=list)


@dataclass
class ExportOutput:
    """An exporter ready for the solver: a directory or a writer factory."""

    type: str
    attrs: dict[str, str] = field(default_factory=dict)
    output_dir: str = ""
    output: Optional[Callable[[dict[str, str]], BinaryIO]] = None


def create_attestations(attests) -> dict[str, Optional[str]]:
    """Map attestation types to attributes; disabled ones map to None, first wins."""
    result: dict[str, Optional[str]] = {}
    for attest in attests or ():
        if attest.type in result:
            continue
        result[attest.type] = None if attest.disabled else attest.attrs
    return result


def create_caches(entries) -> list[CacheOptionsEntry]:
    return [CacheOptionsEntry(type=e.type, attrs=dict(e.attrs or {})) for e in entries or ()]


def _parse_bool(text: str) -> Optional[bool]:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def _writer(stream: BinaryIO) -> Callable[[dict[str, str]], BinaryIO]:
    def output(attrs: dict[str, str]) -> BinaryIO:
        return stream

    return output


def _stat_kind(path: str, what: str) -> Optional[bool]:
    """Return whether ``path`` is a directory, or None when it does not exist."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(f"invalid destination {what}: {path}: {exc}") from exc
    return os.path.isdir(path) if st else None


def create_exports(entries) -> list[ExportOutput]:
    outs: list[ExportOutput] = []
    for entry in entries or ():
        if not entry.type:
            raise ValueError("type is required for output")
        out = ExportOutput(type=entry.type, attrs=dict(entry.attrs or {}))

        support_file = support_dir = False
        if out.type == EXPORTER_LOCAL:
            support_dir = True
        elif out.type == EXPORTER_TAR:
            support_file = True
        elif out.type in (EXPORTER_OCI, EXPORTER_DOCKER):
            tar = _parse_bool(out.attrs.get("tar", ""))
            if tar is None:
                tar = True
            support_file = tar
            support_dir = not tar
        elif out.type == "registry":
            out.type = EXPORTER_IMAGE

        dest = entry.destination
        if support_dir:
            if not dest:
                raise ValueError(f"dest is required for {out.type} exporter")
            if dest == "-":
                raise ValueError(f"dest cannot be stdout for {out.type} exporter")
            if _stat_kind(dest, "directory") is False:
                raise ValueError(f"destination directory {dest} is a file")
            out.output_dir = dest
        if support_file:
            if not dest and out.type != EXPORTER_DOCKER:
                dest = "-"
            if dest == "-":
                if sys.stdout.isatty():
                    raise ValueError(
                        f"dest file is required for {out.type} exporter. "
                        "refusing to write to console"
                    )
                out.output = _writer(sys.stdout.buffer)
            elif dest:
                if _stat_kind(dest, "file") is True:
                    raise ValueError(f"destination file {dest} is a directory")
                try:
                    fh = open(dest, "wb")
                except OSError as exc:
                    raise OSError(f"failed to open {exc}") from exc
                out.output = _writer(fh)
        outs.append(out)
    return outs


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def _is_git_ref(ref: str) -> bool:
    if ref.startswith(("./", "../")):
        return False
    if ref.startswith("github.com/"):
        return True
    if _PROTO_RE.match(ref):
        try:
            parts = urlsplit(ref)
        except ValueError:
            return False
        scheme = parts.scheme.lower()
        if scheme not in _GIT_SCHEMES:
            return False
        if scheme in ("http", "https") and not parts.path.endswith(".git"):
            return False
        return True
    return bool(_SSH_RE.match(ref))


def is_remote_url(value) -> bool:
    """Whether ``value`` names an HTTP(S) URL or a Git repository."""
    return _is_url(value) or _is_git_ref(value)


def _resolve_cache(entry: CacheOptionsEntry, path_key: str) -> CacheOptionsEntry:
    if entry.type == "local":
        entry.attrs = {
            k: (os.path.abspath(v) if k == path_key and v else v)
            for k, v in (entry.attrs or {}).items()
        }
    return entry


def resolve_option_paths(options) -> BuildOptions:
    """Make every local path in ``options`` absolute, in place, and return it."""
    local_context = False
    if options.context_path not in ("", "-") and not is_remote_url(options.context_path):
        local_context = True
        options.context_path = os.path.abspath(options.context_path)
    if options.dockerfile_name not in ("", "-"):
        if local_context and not _is_url(options.dockerfile_name):
            options.dockerfile_name = os.path.abspath(options.dockerfile_name)

    contexts: dict[str, str] = {}
    for key, value in (options.named_contexts or {}).items():
        if is_remote_url(value) or value.startswith("docker-image://"):
            pass
        elif value.startswith("oci-layout://"):
            value = "oci-layout://" + os.path.abspath(value[len("oci-layout://"):])
        else:
            value = os.path.abspath(value)
        contexts[key] = value
    options.named_contexts = contexts

    options.cache_from = [_resolve_cache(co, "src") for co in options.cache_from or ()]
    options.cache_to = [_resolve_cache(co, "dest") for co in options.cache_to or ()]

    for export in options.exports or ():
        if export.destination not in ("", "-"):
            export.destination = os.path.abspath(export.destination)
    options.exports = list(options.exports or ())

    for secret in options.secrets or ():
        if secret.file_path:
            secret.file_path = os.path.abspath(secret.file_path)
    options.secrets = list(options.secrets or ())

    for ssh in options.ssh or ():
        ssh.paths = [os.path.abspath(p) if p else p for p in ssh.paths or ()]
    options.ssh = list(options.ssh or ())

    return options