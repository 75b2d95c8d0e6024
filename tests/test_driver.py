import ipaddress

import pytest

from buildxkit import driver as drv
from buildxkit.driver import (
    Driver,
    DriverHandle,
    DriverNotRunningError,
    Factory,
    Feature,
    Info,
    Platform,
    Status,
)


class FakeDriver(Driver):
    def __init__(self, factory, config, moby=False, client=None, statuses=None):
        self._factory = factory
        self._config = config
        self.moby = moby
        self.client_obj = client
        self.statuses = list(statuses or [Status.RUNNING])
        self.client_calls = 0
        self.feature_calls = 0
        self.bootstraps = 0

    def factory(self):
        return self._factory

    def bootstrap(self, logger):
        self.bootstraps += 1

    def info(self):
        st = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return Info(status=st)

    def version(self):
        return "v1"

    def stop(self, force):
        pass

    def rm(self, force, rm_volume, rm_daemon):
        pass

    def client(self):
        self.client_calls += 1
        if isinstance(self.client_obj, Exception):
            raise self.client_obj
        return self.client_obj

    def features(self):
        self.feature_calls += 1
        return {Feature.OCI_EXPORTER: True}

    def is_moby_driver(self):
        return self.moby

    def config(self):
        return self._config


class FakeFactory(Factory):
    def __init__(self, name, prio, instances=True):
        self._name = name
        self._prio = prio
        self._instances = instances

    def name(self):
        return self._name

    def usage(self):
        return self._name

    def priority(self, endpoint, api):
        return self._prio

    def new(self, config):
        return FakeDriver(self, config)

    def allows_instances(self):
        return self._instances


@pytest.fixture
def registry():
    facs = [FakeFactory("zeta", 30), FakeFactory("alpha", 10, instances=False)]
    for f in facs:
        drv.register(f)
    yield facs
    for f in facs:
        drv.unregister(f.name())


@pytest.mark.parametrize(
    "status, text",
    [(Status.RUNNING, "running"), (Status.INACTIVE, "inactive")],
)
def test_status_str(status, text):
    handle = DriverHandle(FakeDriver(None, None, statuses=[status]))
    assert str(handle.info().status) == text


def test_feature_values():
    handle = DriverHandle(FakeDriver(None, None))
    assert [f.value for f in handle.features()] == ["OCI exporter"]


def test_platform_round_trip():
    for text in ("linux/amd64", "linux/arm/v7"):
        assert str(Platform.parse(text)) == text
    with pytest.raises(ValueError):
        Platform.parse("linux")


def test_default_factory(registry):
    assert drv.get_default_factory("", None, False).name() == "alpha"
    assert drv.get_default_factory("", None, True).name() == "zeta"


def test_get_factory(registry):
    assert drv.get_factory("zeta", True) is registry[0]
    with pytest.raises(ValueError):
        drv.get_factory("alpha", True)
    with pytest.raises(LookupError):
        drv.get_factory("missing", False)


def test_get_factories_sorted(registry):
    names = [f.name() for f in drv.get_factories(False)]
    assert names == sorted(names)
    assert "alpha" not in [f.name() for f in drv.get_factories(True)]


def test_get_driver(registry):
    h = drv.get_driver("b0", None, "ep", None, None, None, ["--x"], {}, {"k": "v"}, [], "h")
    assert h.driver.factory().name() == "alpha"
    assert h.config().name == "b0"
    assert h.config().driver_opts == {"k": "v"}


def test_handle_caches_client_and_features():
    d = FakeDriver(None, None, client=object())
    h = DriverHandle(d)
    assert h.client() is h.client()
    h.features()
    h.features()
    assert d.client_calls == 1 and d.feature_calls == 1


class Worker:
    def __init__(self, labels):
        self.labels = labels


class Client:
    def __init__(self, workers=(), history_ok=True):
        self.workers = list(workers)
        self.history_ok = history_ok

    def list_workers(self):
        return self.workers

    def listen_build_history(self, active_only, ref, early_exit):
        if not self.history_ok:
            raise RuntimeError("unsupported")
        return iter([1])


def test_host_gateway_ip():
    c = Client([Worker({}), Worker({drv.HOST_GATEWAY_LABEL: "10.0.0.1"})])
    h = DriverHandle(FakeDriver(None, None, moby=True, client=c))
    assert h.host_gateway_ip() == ipaddress.ip_address("10.0.0.1")


def test_host_gateway_errors():
    with pytest.raises(RuntimeError):
        DriverHandle(FakeDriver(None, None, moby=False, client=Client())).host_gateway_ip()
    with pytest.raises(LookupError):
        DriverHandle(FakeDriver(None, None, moby=True, client=Client())).host_gateway_ip()
    bad = Client([Worker({drv.HOST_GATEWAY_LABEL: "nope"})])
    with pytest.raises(ValueError):
        DriverHandle(FakeDriver(None, None, moby=True, client=bad)).host_gateway_ip()


def test_history_api():
    assert DriverHandle(FakeDriver(None, None, client=Client())).history_api_supported() is True
    h = DriverHandle(FakeDriver(None, None, client=Client(history_ok=False)))
    assert h.history_api_supported() is False


def test_boot_bootstraps_inactive():
    d = FakeDriver(None, None, client="c", statuses=[Status.INACTIVE, Status.RUNNING])
    assert drv.boot(DriverHandle(d), None) == "c"
    assert d.bootstraps == 1


def test_boot_not_running_error_cached():
    d = FakeDriver(None, None, client=DriverNotRunningError())
    with pytest.raises(DriverNotRunningError):
        drv.boot(DriverHandle(d), None)