# buildxkit

A library for managing BuildKit builders from Python. It provides:

- a driver registry and four drivers: Docker engine, docker-container and
  remote, plus the pieces a Kubernetes driver needs;
- a local store of build references;
- helpers that check and normalise build options.

The library has no dependencies outside the standard library.

## Installing

```
pip install buildxkit
```

To run the tests, install the `test` extra and run `pytest`.

## Drivers (`buildxkit.driver`)

A driver is created by a factory, a `Factory` subclass. The registry starts
empty, so you have to register the factories you want:

```python
from buildxkit import driver
from buildxkit.remotedriver import RemoteFactory

def connect(endpoint_addr, tls):
    ...  # return a BuildKit client that offers list_workers()

driver.register(RemoteFactory(connect))
factory = driver.get_factory("remote", instance_required=True)
print([f.name() for f in driver.get_factories(False)])
```

Registry functions:

- `get_factory(name, instance_required)` looks a factory up by name.
  - It raises `LookupError` if no factory has that name.
  - It raises `ValueError` if `instance_required` is true and the factory does not allow extra instances.
- `get_default_factory(endpoint, api, instance_required)` returns the factory with the lowest priority value.
- `unregister(name)` removes a factory.
- `get_driver(name, factory, endpoint_addr, api, auth, kube_client_config, flags, files, driver_opts, platforms, context_path_hash)`
  - It builds an `InitConfig`, passes it to the factory, and wraps the new driver in a `DriverHandle`.
  - When `factory` is `None`, the default factory is used.

`DriverHandle` computes each of these once and then caches it, errors included:

- the driver's client;
- its feature map;
- whether the build history API is supported;
- the host-gateway IP, which it reads from worker labels (Docker engine driver only).

`boot(handle, logger)` works as follows:

1. It bootstraps the driver if the driver is not running.
2. It returns `handle.client()`.
3. If the client raises `DriverNotRunningError`, it tries again.
4. It raises `RuntimeError` if the driver is still not running after two attempts.

Other types in the module:

- `Status` has the members `INACTIVE`, `STARTING`, `RUNNING`, `STOPPING` and `STOPPED`.
- `Feature` has the members `OCI_EXPORTER`, `DOCKER_EXPORTER`, `CACHE_EXPORT` and `MULTI_PLATFORM`.
- `Platform.parse("linux/arm64/v8")` parses a platform string.

### Docker engine driver (`buildxkit.dockerdriver`)

This driver uses the BuildKit that runs inside the Docker daemon.

`DockerFactory` has these limits:

- It needs a Docker API object.
- It rejects config files.
- It does not allow extra instances.

`DockerDriver.version()` returns the BuildKit version that matches the
engine version. If the engine version is not in the table, it returns the
engine version with any `-moby` suffix removed.

The API object must provide:

- `server_version()`;
- `dial_hijack(path, proto, meta)`;
- `list_buildkit_workers()`.

### docker-container driver (`buildxkit.containerdriver`)

This driver runs BuildKit in a privileged container that uses a `<name>_state`
volume. At creation it copies config files into the container under
`/etc/buildkit`.

`ContainerFactory` accepts these driver options:

- `network`;
- `image`;
- `cgroup-parent`;
- `env.NAME`.

The module docstring lists the Docker API methods the driver expects.

Two helpers are available on their own:

- `parse_buildkitd_version(output)`;
- `write_config_files(files, target_dir)`.

### Remote driver (`buildxkit.remotedriver`)

This driver connects to a BuildKit daemon that is already running, through the
`connect` callable you pass in.

`RemoteFactory` accepts these driver options:

- `servername`;
- `cacert`, `cert` and `key`, which must be absolute paths.

Any of these options enables TLS. When TLS is enabled:

- `cacert` is required.
- `cert` and `key` must be given together.
- If `servername` is not set, the host name of the endpoint is used.

## Endpoints (`buildxkit.endpoint`)

```python
from buildxkit.endpoint import is_valid_endpoint, validate_endpoint

is_valid_endpoint("tcp://buildkitd:1234")   # True
validate_endpoint("ftp://host")             # raises InvalidEndpointError
```

The accepted schemes are `tcp`, `unix`, `ssh`, `docker-container` and `kube-pod`.

## BuildKit version of a Docker engine (`buildxkit.mobyversion`)

```python
from buildxkit.mobyversion import resolve_buildkit_version, Version, Constraint

resolve_buildkit_version("20.10.16")                   # "v0.8.2+bc07b2b8"
Constraint(">= 23.0.2-0, < 23.0.4-0").check(Version.parse("23.0.3"))  # True
```

## Kubernetes building blocks

- `buildxkit.kubefactory.buildx_name_to_deployment_name("buildx_buildkit_a_b")` returns `"a-b"`.
- `buildxkit.kubefactory.process_driver_opts(deployment_name, namespace, config)` returns `(DeploymentOpt, loadbalance, namespace)`. It accepts these options:
  - `image`, `namespace`, `replicas`, `serviceaccount`;
  - `requests.cpu`, `requests.memory`, `limits.cpu`, `limits.memory`;
  - `rootless`, `nodeselector`, `tolerations`;
  - `loadbalance` (`sticky` or `random`);
  - `qemu.install`, `qemu.image`.
- `buildxkit.manifest.new_deployment(opt)` returns a Deployment and its ConfigMaps as Kubernetes API dictionaries. `parse_quantity` validates resource quantities.
- `buildxkit.podchooser` picks a running pod:
  - `RandomPodChooser` picks one at random.
  - `StickyPodChooser` picks one through a consistent `HashRing` keyed on a string.
  - Pods come from a client whose `list(selector)` returns `Pod` objects.

## Local state (`buildxkit.localstate`)

```python
from buildxkit.localstate import LocalState, State

ls = LocalState("/tmp/buildx-state")
ls.save_ref("builder", "node0", "ref1", State(local_path="/src", dockerfile_path="/src/Dockerfile"))
ls.read_ref("builder", "node0", "ref1")
ls.remove_builder_node("builder", "node0")
ls.remove_builder("builder")
```

Refs are written atomically as JSON files under `<root>/refs/<builder>/<node>/<id>`.

## Build options (`buildxkit.options`)

`resolve_option_paths(options)` makes every local path in a `BuildOptions`
absolute, in place. It covers:

- the context and Dockerfile;
- named contexts;
- local cache `src` and `dest`;
- export destinations;
- secret files;
- SSH paths.

It leaves remote URLs, git references, `docker-image://` contexts and `-`
unchanged.

Other functions in the module:

- `create_exports(entries)` validates export entries and opens output files. It refuses to write a tar stream to a terminal.
- `create_caches(entries)` copies cache entries.
- `create_attestations(attests)` maps attestation types to their attributes.

`buildxkit.errdefs.wrap_build(error, ref)` attaches a build reference to an
error as a `BuildError`.

## What this package does not do

- It has no command-line interface.
- It does not run builds.
- It has no build controller or server.
- It does not ship Docker, BuildKit or Kubernetes API clients. You pass in objects that provide the methods the drivers call.
- It has no Kubernetes driver class that talks to a cluster. It only processes options, renders manifests and chooses pods.