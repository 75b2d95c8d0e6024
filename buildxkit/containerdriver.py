"""Driver that runs BuildKit in a dedicated container managed by the Docker daemon.

The Docker API object handed in through ``InitConfig.docker_api`` is expected
to offer:

* ``container_inspect(name)``: a dict with ``State.Running`` and ``Mounts``;
  raises ``LookupError`` when the container does not exist
* ``container_create(name, config, host_config)``, ``container_start(name)``,
  ``container_stop(name)``, ``container_remove(name, remove_volumes, force)``
* ``container_logs(name, stdout, stderr)``: multiplexed log bytes or a reader
* ``image_pull(image, auth)``, ``image_inspect(image)``
* ``info()``: a dict with ``CgroupDriver`` and ``SecurityOptions``
* ``put_archive(name, path, data)``: copy a tar archive into the container
* ``volume_remove(name, force)``
* ``exec_create(name, cmd)`` returning an exec ID, ``exec_attach(exec_id)``
  returning a connection with ``read``/``write``/``close``, and
  ``exec_inspect(exec_id)`` returning a dict with ``ExitCode``
"""

from __future__ import annotations

import dataclasses
import io
import logging
import posixpath
import sys
import tarfile
import threading
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

from buildxkit.driver import DEFAULT_IMAGE, Driver, Factory, Feature, Info, InitConfig, Status

log = logging.getLogger(__name__)

DRIVER_NAME = "docker-container"
PRIORITY_SUPPORTED = 30
PRIORITY_UNSUPPORTED = 70

VOLUME_STATE_SUFFIX = "_state"
BUILDKIT_STATE_DIR = "/var/lib/buildkit"
BUILDKIT_CONFIG_DIR = "/etc/buildkit"
CGROUP_PARENT = "/docker/buildx"
HOST_NETWORK_FLAG = "--allow-insecure-entitlement=network.host"

_MAX_WAIT_TRIES = 15
_WAIT_STEP_SECONDS = 0.120

_STREAM_STDIN = 0
_STREAM_STDOUT = 1
_STREAM_STDERR = 2
_STREAM_SYSERR = 3
_HEADER_LEN = 8


class _NullLogger:
    def wrap(self, name: str, fn: Callable[[], Any]) -> Any:
        return fn()

    def log(self, stream: int, data: bytes) -> None:
        return None


def _as_reader(source: Any) -> BinaryIO:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(bytes(source))
    return source


def _read_exact(reader: Any, n: int) -> bytes:
    chunks: list[bytes] = []
    remaining = n
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_frame(reader: Any) -> Optional[tuple[int, bytes]]:
    """Read one multiplexed frame; None at the end of the stream."""
    header = _read_exact(reader, _HEADER_LEN)
    if len(header) < _HEADER_LEN:
        return None
    stream = header[0]
    size = int.from_bytes(header[4:8], "big")
    payload = _read_exact(reader, size)
    if stream == _STREAM_SYSERR:
        raise RuntimeError(f"error from daemon in stream: {payload.decode(errors='replace')}")
    if stream not in (_STREAM_STDIN, _STREAM_STDOUT, _STREAM_STDERR):
        raise ValueError(f"Unrecognized input header: {stream}")
    return stream, payload


def _stdcopy(reader: Any, stdout: Any, stderr: Any) -> int:
    """Split a multiplexed daemon stream into stdout and stderr."""
    written = 0
    while True:
        frame = _read_frame(reader)
        if frame is None:
            return written
        stream, payload = frame
        target = stderr if stream == _STREAM_STDERR else stdout
        target.write(payload)
        written += len(payload)


def _stderr_sink() -> Any:
    return getattr(sys.stderr, "buffer", None) or _TextSink(sys.stderr)


class _TextSink:
    def __init__(self, stream: Any):
        self._stream = stream

    def write(self, data: bytes) -> int:
        self._stream.write(data.decode(errors="replace"))
        return len(data)


class _LogWriter:
    def __init__(self, logger: Any, stream: int):
        self._logger = logger
        self._stream = stream

    def write(self, data: bytes) -> int:
        self._logger.log(self._stream, data)
        return len(data)


class _DemuxConn:
    """Connection whose reads yield only the stdout frames of a multiplexed stream."""

    def __init__(self, conn: Any, stderr: Any = None):
        self._conn = conn
        self._stderr = stderr if stderr is not None else _stderr_sink()
        self._buffer = bytearray()
        self._eof = False

    def read(self, n: int = -1) -> bytes:
        while not self._buffer and not self._eof:
            frame = _read_frame(self._conn)
            if frame is None:
                self._eof = True
                break
            stream, payload = frame
            if stream == _STREAM_STDERR:
                self._stderr.write(payload)
            else:
                self._buffer.extend(payload)
        if n is None or n < 0:
            n = len(self._buffer)
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    def write(self, data: bytes) -> int:
        return self._conn.write(data)

    def close(self) -> None:
        self._conn.close()


class _ContainerClient:
    """BuildKit client whose single connection is a ``buildctl dial-stdio`` exec."""

    def __init__(self, conn: _DemuxConn):
        self._conn = conn
        self._dialed = False
        self._lock = threading.Lock()

    def dial(self) -> _DemuxConn:
        with self._lock:
            if self._dialed:
                raise ConnectionError("use of closed network connection")
            self._dialed = True
        return self._conn

    def close(self) -> None:
        self._conn.close()


def _decode_security_options(options: Any) -> list[str]:
    """Return the names of the daemon's security options."""
    names: list[str] = []
    for opt in options or ():
        if "=" not in opt:
            names.append(opt)
            continue
        name = ""
        for item in opt.split(","):
            key, sep, value = item.partition("=")
            if not sep:
                raise ValueError(f"invalid security option {item!r}")
            if not key or not value:
                raise ValueError("invalid empty security option")
            if key == "name":
                name = value
        names.append(name)
    return names


def parse_buildkitd_version(output) -> str:
    """Extract the version from ``buildkitd --version`` output."""
    fields = output.split()
    if len(fields) != 4:
        raise ValueError(f"unexpected version format: {output}")
    return fields[2]


def write_config_files(files, target_dir) -> Path:
    """Lay out config files under the BuildKit config directory inside ``target_dir``."""
    root = Path(target_dir)
    for name, data in (files or {}).items():
        relative = posixpath.join(BUILDKIT_CONFIG_DIR, name).lstrip("/")
        path = root.joinpath(*relative.split("/"))
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        path.write_bytes(data)
        path.chmod(0o600)
    return root


def _tar_as_root(src: Path) -> bytes:
    buf = io.BytesIO()

    def as_root(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        return info

    with tarfile.open(fileobj=buf, mode="w") as tar:
        for path in sorted(src.rglob("*")):
            arcname = path.relative_to(src).as_posix()
            tar.add(str(path), arcname=arcname, recursive=False, filter=as_root)
    return buf.getvalue()


class ContainerDriver(Driver):
    """Runs BuildKit inside a privileged container with a state volume."""

    def __init__(self, factory, config):
        self._factory = factory
        self._config: InitConfig = config
        self.net_mode = ""
        self.image = ""
        self.cgroup_parent = ""
        self.env: list[str] = []

    @property
    def _api(self) -> Any:
        return self._config.docker_api

    @property
    def _name(self) -> str:
        return self._config.name

    def factory(self):
        return self._factory

    def config(self) -> InitConfig:
        return self._config

    def is_moby_driver(self) -> bool:
        return False

    def bootstrap(self, logger) -> None:
        logger = logger or _NullLogger()

        def boot() -> None:
            try:
                self._api.container_inspect(self._name)
            except LookupError:
                self._create(logger)
                return

            def start_existing() -> None:
                self._start()
                self._wait(logger)

            logger.wrap(f"starting container {self._name}", start_existing)

        logger.wrap("[internal] booting buildkit", boot)

    def _create(self, logger: Any) -> None:
        image = self.image or DEFAULT_IMAGE
        try:
            logger.wrap(
                f"pulling image {image}",
                lambda: self._api.image_pull(image, auth=self._config.auth),
            )
        except Exception as pull_error:
            try:
                self._api.image_inspect(image)
            except Exception:
                raise pull_error from None
            logger.wrap(f"pulling failed, using local image {image}", lambda: None)

        container_config: dict[str, Any] = {"Image": image, "Env": list(self.env)}
        if self._config.buildkit_flags is not None:
            container_config["Cmd"] = list(self._config.buildkit_flags)

        def create_container() -> None:
            host_config: dict[str, Any] = {
                "Privileged": True,
                "Mounts": [
                    {
                        "Type": "volume",
                        "Source": self._name + VOLUME_STATE_SUFFIX,
                        "Target": BUILDKIT_STATE_DIR,
                    }
                ],
                # Reaps processes left behind by BuildKit's container API.
                "Init": True,
            }
            if self.net_mode:
                host_config["NetworkMode"] = self.net_mode
            try:
                daemon_info = self._api.info()
            except Exception as exc:
                log.debug("daemon info unavailable: %s", exc)
                daemon_info = None
            if daemon_info is not None:
                if daemon_info.get("CgroupDriver") == "cgroupfs":
                    host_config["CgroupParent"] = self.cgroup_parent or CGROUP_PARENT
                if "userns" in _decode_security_options(daemon_info.get("SecurityOptions")):
                    host_config["UsernsMode"] = "host"
            self._api.container_create(self._name, container_config, host_config)
            self._copy_to_container(self._config.files)
            self._start()
            self._wait(logger)

        logger.wrap(f"creating container {self._name}", create_container)

    def _wait(self, logger: Any) -> None:
        attempt = 1
        while True:
            out, err = io.BytesIO(), io.BytesIO()
            try:
                self._run(["buildctl", "debug", "workers"], out, err)
            except Exception:
                if attempt > _MAX_WAIT_TRIES:
                    self._copy_logs(logger)
                    if out.getvalue():
                        logger.log(_STREAM_STDOUT, out.getvalue())
                    if err.getvalue():
                        logger.log(_STREAM_STDERR, err.getvalue())
                    raise
                time.sleep(attempt * _WAIT_STEP_SECONDS)
                attempt += 1
                continue
            return

    def _copy_logs(self, logger: Any) -> None:
        try:
            source = self._api.container_logs(self._name, stdout=True, stderr=True)
            reader = _as_reader(source)
            _stdcopy(
                reader,
                _LogWriter(logger, _STREAM_STDOUT),
                _LogWriter(logger, _STREAM_STDERR),
            )
            close = getattr(reader, "close", None)
            if close is not None:
                close()
        except Exception as exc:
            log.debug("copying container logs: %s", exc)

    def _copy_to_container(self, files: Any) -> None:
        import tempfile

        with tempfile.TemporaryDirectory(prefix="buildkitd-config") as tmp:
            write_config_files(files, tmp)
            archive = _tar_as_root(Path(tmp))
        self._api.put_archive(self._name, "/", archive)

    def _exec(self, cmd: list[str]) -> tuple[str, Any]:
        exec_id = self._api.exec_create(self._name, cmd)
        if not exec_id:
            raise RuntimeError("exec ID empty")
        return exec_id, self._api.exec_attach(exec_id)

    def _run(self, cmd: list[str], stdout: Any, stderr: Any) -> None:
        exec_id, conn = self._exec(cmd)
        _stdcopy(_as_reader(conn), stdout, stderr)
        conn.close()
        exit_code = self._api.exec_inspect(exec_id).get("ExitCode", 0)
        if exit_code != 0:
            raise RuntimeError(f"exit code {exit_code}")

    def _start(self) -> None:
        self._api.container_start(self._name)

    def info(self) -> Info:
        try:
            container = self._api.container_inspect(self._name)
        except LookupError:
            return Info(status=Status.INACTIVE)
        if (container.get("State") or {}).get("Running"):
            return Info(status=Status.RUNNING)
        return Info(status=Status.STOPPED)

    def version(self) -> str:
        out, err = io.BytesIO(), io.BytesIO()
        try:
            self._run(["buildkitd", "--version"], out, err)
        except Exception as exc:
            if err.getvalue():
                raise RuntimeError(f"{err.getvalue().decode(errors='replace')}: {exc}") from exc
            raise
        return parse_buildkitd_version(out.getvalue().decode(errors="replace"))

    def stop(self, force) -> None:
        if self.info().status == Status.RUNNING:
            self._api.container_stop(self._name)

    def rm(self, force, rm_volume, rm_daemon) -> None:
        if self.info().status == Status.INACTIVE:
            return
        container = self._api.container_inspect(self._name)
        if not rm_daemon:
            return
        self._api.container_remove(self._name, remove_volumes=True, force=force)
        volume = self._name + VOLUME_STATE_SUFFIX
        for mount in container.get("Mounts") or ():
            if mount.get("Name") != volume:
                continue
            if rm_volume:
                self._api.volume_remove(volume, force=False)
                return

    def client(self) -> _ContainerClient:
        _, conn = self._exec(["buildctl", "dial-stdio"])
        return _ContainerClient(_DemuxConn(conn))

    def features(self) -> dict[Feature, bool]:
        return {feature: True for feature in Feature}


class ContainerFactory(Factory):
    def name(self) -> str:
        return DRIVER_NAME

    def usage(self) -> str:
        return DRIVER_NAME

    def priority(self, endpoint, api) -> int:
        return PRIORITY_UNSUPPORTED if api is None else PRIORITY_SUPPORTED

    def new(self, config) -> ContainerDriver:
        if config.docker_api is None:
            raise ValueError(f"{self.name()} driver requires docker API access")
        flags = None if config.buildkit_flags is None else list(config.buildkit_flags)
        config = dataclasses.replace(config, buildkit_flags=flags)
        driver = ContainerDriver(self, config)
        for key, value in (config.driver_opts or {}).items():
            if key == "network":
                driver.net_mode = value
                if value == "host":
                    config.buildkit_flags = (config.buildkit_flags or []) + [HOST_NETWORK_FLAG]
            elif key == "image":
                driver.image = value
            elif key == "cgroup-parent":
                driver.cgroup_parent = value
            elif key.startswith("env."):
                env_name = key[len("env."):]
                if not env_name:
                    raise ValueError(f"invalid env option {key!r}, expecting env.FOO=bar")
                driver.env.append(f"{env_name}={value}")
            else:
                raise ValueError(f"invalid driver option {key} for docker-container driver")
        return driver

    def allows_instances(self) -> bool:
        return True