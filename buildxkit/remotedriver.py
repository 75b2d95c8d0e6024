"""Driver for an already running BuildKit daemon reached over an endpoint."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from buildxkit.driver import Driver, Factory, Feature, Info, InitConfig, Status
from buildxkit.endpoint import is_valid_endpoint

PRIORITY_SUPPORTED = 20
PRIORITY_UNSUPPORTED = 90
_MAX_BACKOFF_SECONDS = 10


@dataclass
class TLSOptions:
    server_name: str = ""
    ca_cert: str = ""
    cert: str = ""
    key: str = ""


def _hostname(endpoint: str) -> str:
    try:
        netloc = urlsplit(endpoint).netloc
    except ValueError:
        raise
    host = netloc.rpartition("@")[2]
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    return host.partition(":")[0]


class RemoteDriver(Driver):
    """Connects to an existing daemon; it never starts or removes anything.

    ``connect(endpoint_addr, tls)`` returns a BuildKit client offering
    ``list_workers()``.
    """

    def __init__(self, factory, config, tls, connect):
        self._factory = factory
        self._config: InitConfig = config
        self.tls: Optional[TLSOptions] = tls
        self._connect: Callable[[str, Optional[TLSOptions]], Any] = connect

    def factory(self):
        return self._factory

    def bootstrap(self, logger) -> None:
        attempt = 0
        while True:
            if self.info().status != Status.INACTIVE:
                return
            attempt = min(attempt, _MAX_BACKOFF_SECONDS)
            time.sleep(attempt)
            attempt += 1

    def info(self) -> Info:
        try:
            client = self.client()
            client.list_workers()
        except Exception:
            return Info(status=Status.INACTIVE)
        return Info(status=Status.RUNNING)

    def version(self) -> str:
        return ""

    def stop(self, force) -> None:
        return None

    def rm(self, force, rm_volume, rm_daemon) -> None:
        return None

    def client(self):
        return self._connect(self._config.endpoint_addr, self.tls)

    def features(self) -> dict[Feature, bool]:
        return {feature: True for feature in Feature}

    def is_moby_driver(self) -> bool:
        return False

    def config(self) -> InitConfig:
        return self._config


class RemoteFactory(Factory):
    def __init__(self, connect):
        self._connect = connect

    def name(self) -> str:
        return "remote"

    def usage(self) -> str:
        return "remote"

    def priority(self, endpoint, api) -> int:
        return PRIORITY_SUPPORTED if is_valid_endpoint(endpoint) else PRIORITY_UNSUPPORTED

    def new(self, config) -> RemoteDriver:
        if config.files:
            raise ValueError("setting config file is not supported for remote driver")
        if config.buildkit_flags:
            raise ValueError("setting buildkit flags is not supported for remote driver")

        tls = TLSOptions()
        tls_enabled = False
        for key, value in (config.driver_opts or {}).items():
            if key == "servername":
                tls.server_name = value
            elif key in ("cacert", "cert", "key"):
                if not os.path.isabs(value):
                    raise ValueError(f"non-absolute path '{value}' provided for {key}")
                if key == "cacert":
                    tls.ca_cert = value
                elif key == "cert":
                    tls.cert = value
                else:
                    tls.key = value
            else:
                raise ValueError(f"invalid driver option {key} for remote driver")
            tls_enabled = True

        if not tls_enabled:
            return RemoteDriver(self, config, None, self._connect)

        if not tls.server_name:
            # Guess the server name from the host of the endpoint.
            tls.server_name = _hostname(config.endpoint_addr)
        missing = []
        if not tls.ca_cert:
            missing.append("cacert")
        if tls.cert and not tls.key:
            missing.append("key")
        if tls.key and not tls.cert:
            missing.append("cert")
        if missing:
            raise ValueError(f"tls enabled, but missing keys {', '.join(missing)}")
        return RemoteDriver(self, config, tls, self._connect)

    def allows_instances(self) -> bool:
        return True