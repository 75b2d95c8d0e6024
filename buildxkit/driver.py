"""Driver interfaces, factory registry and a caching driver handle."""

from __future__ import annotations

import enum
import ipaddress
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

DEFAULT_IMAGE = "moby/buildkit:buildx-stable-1"
QEMU_IMAGE = "tonistiigi/binfmt:latest"
DEFAULT_ROOTLESS_IMAGE = DEFAULT_IMAGE + "-rootless"

HOST_GATEWAY_LABEL = "org.mobyproject.buildkit.worker.moby.host-gateway-ip"
_HISTORY_PROBE_REF = "buildx-test-history-api-feature"


class DriverNotRunningError(Exception):
    """The driver is not running."""

    def __init__(self, message: str = "driver not running"):
        super().__init__(message)


class DriverNotConnectingError(Exception):
    """The driver cannot be reached."""

    def __init__(self, message: str = "driver not connecting"):
        super().__init__(message)


class Status(enum.IntEnum):
    INACTIVE = 0
    STARTING = 1
    RUNNING = 2
    STOPPING = 3
    STOPPED = 4

    def __str__(self) -> str:
        return self.name.lower()


class Feature(str, enum.Enum):
    OCI_EXPORTER = "OCI exporter"
    DOCKER_EXPORTER = "Docker exporter"
    CACHE_EXPORT = "Cache export"
    MULTI_PLATFORM = "Multiple platforms"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Platform:
    os: str
    architecture: str
    variant: str = ""

    @classmethod
    def parse(cls, text) -> "Platform":
        parts = text.strip().split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"invalid platform {text!r}")
        return cls(*parts)

    def __str__(self) -> str:
        base = f"{self.os}/{self.architecture}"
        return f"{base}/{self.variant}" if self.variant else base


@dataclass
class Node:
    name: str
    platforms: list[Platform] = field(default_factory=list)


@dataclass
class Info:
    status: Status
    # Empty when the nodes are listed statically.
    dynamic_nodes: list[Node] = field(default_factory=list)


@dataclass
class InitConfig:
    name: str = ""
    endpoint_addr: str = ""
    docker_api: Any = None
    kube_client_config: Any = None
    buildkit_flags: Optional[list[str]] = None
    files: dict[str, bytes] = field(default_factory=dict)
    driver_opts: dict[str, str] = field(default_factory=dict)
    auth: Any = None
    platforms: list[Platform] = field(default_factory=list)
    context_path_hash: str = ""


class Driver(ABC):
    @abstractmethod
    def factory(self) -> "Factory": ...

    @abstractmethod
    def bootstrap(self, logger) -> None: ...

    @abstractmethod
    def info(self) -> Info: ...

    @abstractmethod
    def version(self) -> str: ...

    @abstractmethod
    def stop(self, force) -> None: ...

    @abstractmethod
    def rm(self, force, rm_volume, rm_daemon) -> None: ...

    @abstractmethod
    def client(self) -> Any: ...

    @abstractmethod
    def features(self) -> dict[Feature, bool]: ...

    @abstractmethod
    def is_moby_driver(self) -> bool: ...

    @abstractmethod
    def config(self) -> InitConfig: ...


class Factory(ABC):
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def usage(self) -> str: ...

    @abstractmethod
    def priority(self, endpoint, api) -> int: ...

    @abstractmethod
    def new(self, config) -> Driver: ...

    @abstractmethod
    def allows_instances(self) -> bool: ...


_drivers: dict[str, Factory] = {}


def register(factory: Factory) -> None:
    _drivers[factory.name()] = factory


def unregister(name: str) -> None:
    _drivers.pop(name, None)


def get_default_factory(endpoint, api, instance_required) -> Factory:
    if not _drivers:
        raise LookupError("no drivers available")
    candidates = [
        (f.priority(endpoint, api), f)
        for f in _drivers.values()
        if not (instance_required and not f.allows_instances())
    ]
    if not candidates:
        raise LookupError("no drivers available")
    return min(candidates, key=lambda pair: pair[0])[1]


def get_factory(name, instance_required) -> Factory:
    for f in _drivers.values():
        if f.name() == name:
            if instance_required and not f.allows_instances():
                raise ValueError(f"additional instances of driver {name!r} cannot be created")
            return f
    raise LookupError(f"failed to find driver {name!r}")


def get_factories(instance_required) -> list[Factory]:
    found = [f for f in _drivers.values() if not (instance_required and not f.allows_instances())]
    return sorted(found, key=lambda f: f.name())


def get_driver(
    name,
    factory,
    endpoint_addr,
    api,
    auth,
    kube_client_config,
    flags,
    files,
    driver_opts,
    platforms,
    context_path_hash,
) -> "DriverHandle":
    config = InitConfig(
        name=name,
        endpoint_addr=endpoint_addr,
        docker_api=api,
        kube_client_config=kube_client_config,
        buildkit_flags=flags,
        files=dict(files or {}),
        driver_opts=dict(driver_opts or {}),
        auth=auth,
        platforms=list(platforms or []),
        context_path_hash=context_path_hash,
    )
    if factory is None:
        factory = get_default_factory(endpoint_addr, api, False)
    return DriverHandle(factory.new(config))


class _Once:
    """Runs a computation once and replays its result or error."""

    def __init__(self, fn: Callable[[], Any]):
        self._fn = fn
        self._lock = threading.Lock()
        self._done = False
        self._value: Any = None
        self._error: Optional[BaseException] = None

    def __call__(self) -> Any:
        with self._lock:
            if not self._done:
                try:
                    self._value = self._fn()
                except Exception as exc:  # cached and re-raised on every call
                    self._error = exc
                self._done = True
        if self._error is not None:
            raise self._error
        return self._value


def _probe_history_api(client) -> bool:
    try:
        for _ in client.listen_build_history(
            active_only=True, ref=_HISTORY_PROBE_REF, early_exit=True
        ):
            pass
    except Exception:
        return False
    return True


class DriverHandle:
    """Wraps a driver and caches its client, features and derived lookups."""

    def __init__(self, driver):
        self.driver = driver
        self._client = _Once(driver.client)
        self._features = _Once(driver.features)
        self._history = _Once(self._compute_history)
        self._gateway = _Once(self._compute_gateway)

    def __getattr__(self, name):
        return getattr(self.driver, name)

    def client(self):
        return self._client()

    def features(self) -> dict[Feature, bool]:
        return self._features()

    def history_api_supported(self) -> bool:
        return self._history()

    def host_gateway_ip(self):
        return self._gateway()

    def _compute_history(self) -> bool:
        try:
            client = self.client()
        except Exception:
            return False
        return _probe_history_api(client)

    def _compute_gateway(self):
        if not self.driver.is_moby_driver():
            raise RuntimeError("host-gateway is only supported with the docker driver")
        client = self.client()
        try:
            workers = client.list_workers()
        except Exception as exc:
            raise RuntimeError(f"listing workers: {exc}") from exc
        for worker in workers:
            value = (getattr(worker, "labels", None) or {}).get(HOST_GATEWAY_LABEL)
            if value:
                try:
                    return ipaddress.ip_address(value)
                except ValueError:
                    raise ValueError(f"failed to parse host-gateway IP: {value}") from None
        raise LookupError("host-gateway IP not found")


def boot(handle, logger):
    """Bootstrap the driver if needed and return a connected client."""
    attempt = 0
    while True:
        info = handle.info()
        attempt += 1
        if info.status != Status.RUNNING:
            if attempt > 2:
                raise RuntimeError(
                    f"failed to bootstrap {type(handle.driver).__name__} driver in attempts"
                )
            handle.bootstrap(logger)
        try:
            return handle.client()
        except DriverNotRunningError:
            if attempt <= 2:
                continue
            raise