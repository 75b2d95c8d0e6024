"""Driver that uses the BuildKit instance embedded in the Docker daemon."""

from __future__ import annotations

import logging
from typing import Any

from buildxkit.driver import (
    Driver,
    DriverNotConnectingError,
    Factory,
    Feature,
    Info,
    InitConfig,
    Status,
)
from buildxkit.mobyversion import resolve_buildkit_version

log = logging.getLogger(__name__)

PRIORITY_SUPPORTED = 10
PRIORITY_UNSUPPORTED = 99
SNAPSHOTTER_LABEL = "org.mobyproject.buildkit.worker.snapshotter"


def _version_field(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value["Version"]
    return value.version


class _DockerClient:
    """BuildKit client that reaches the daemon through hijacked HTTP connections.

    The Docker API object supplies ``dial_hijack(path, proto, meta)`` and
    ``list_buildkit_workers()``.
    """

    def __init__(self, api):
        self._api = api
        self._conns: list[Any] = []

    def dial(self):
        conn = self._api.dial_hijack("/grpc", "h2c", None)
        self._conns.append(conn)
        return conn

    def dial_session(self, proto, meta):
        conn = self._api.dial_hijack("/session", proto, meta)
        self._conns.append(conn)
        return conn

    def list_workers(self):
        return list(self._api.list_buildkit_workers())

    def close(self) -> None:
        conns, self._conns = self._conns, []
        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                log.debug("closing hijacked connection: %s", exc)


class DockerDriver(Driver):
    """Builds with the daemon's own BuildKit; nothing to start or remove."""

    def __init__(self, factory, config):
        self._factory = factory
        self._config: InitConfig = config

    def factory(self):
        return self._factory

    def bootstrap(self, logger) -> None:
        return None

    def _server_version(self) -> str:
        try:
            value = self._config.docker_api.server_version()
        except Exception as exc:
            raise DriverNotConnectingError(f"{exc}: driver not connecting") from exc
        return _version_field(value)

    def info(self) -> Info:
        self._server_version()
        return Info(status=Status.RUNNING)

    def version(self) -> str:
        moby = self._server_version()
        try:
            buildkit = resolve_buildkit_version(moby)
        except ValueError:
            buildkit = ""
        if buildkit:
            return buildkit
        return moby[: -len("-moby")] if moby.endswith("-moby") else moby

    def stop(self, force) -> None:
        return None

    def rm(self, force, rm_volume, rm_daemon) -> None:
        return None

    def client(self):
        return _DockerClient(self._config.docker_api)

    def features(self) -> dict[Feature, bool]:
        use_snapshotter = False
        try:
            client = self.client()
        except Exception:
            client = None
        if client is not None:
            try:
                workers = client.list_workers()
            except Exception:
                workers = []
            use_snapshotter = any(
                SNAPSHOTTER_LABEL in (getattr(w, "labels", None) or {}) for w in workers
            )
            client.close()
        return {feature: use_snapshotter for feature in Feature}

    def is_moby_driver(self) -> bool:
        return True

    def config(self) -> InitConfig:
        return self._config


class DockerFactory(Factory):
    def name(self) -> str:
        return "docker"

    def usage(self) -> str:
        return "docker"

    def priority(self, endpoint, api) -> int:
        if api is None:
            return PRIORITY_UNSUPPORTED
        try:
            conn = api.dial_hijack("/grpc", "h2c", None)
        except Exception:
            return PRIORITY_UNSUPPORTED
        conn.close()
        return PRIORITY_SUPPORTED

    def new(self, config) -> DockerDriver:
        if config.docker_api is None:
            raise ValueError("docker driver requires docker API access")
        if config.files:
            raise ValueError(
                "setting config file is not supported for docker driver, "
                "use dockerd configuration file"
            )
        return DockerDriver(self, config)

    def allows_instances(self) -> bool:
        return False