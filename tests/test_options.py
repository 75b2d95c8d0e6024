import io
import os
import sys

import pytest

from buildxkit.options import (
    SSH,
    Attest,
    BuildOptions,
    CacheOptionsEntry,
    ExportEntry,
    Secret,
    create_attestations,
    create_caches,
    create_exports,
    is_remote_url,
    resolve_option_paths,
)

GIT_SSH = "git@example.com:docker/buildx.git"
ALPINE_IMAGE = "docker-image://alpine" + "@sha256:0123456789"


@pytest.fixture
def wd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return os.getcwd()


def j(wd, name):
    return os.path.join(wd, name)


CASES = {
    "contextpath": lambda wd: (
        BuildOptions(context_path="test"),
        BuildOptions(context_path=j(wd, "test")),
    ),
    "contextpath-cwd": lambda wd: (
        BuildOptions(context_path="."),
        BuildOptions(context_path=wd),
    ),
    "contextpath-dash": lambda wd: (
        BuildOptions(context_path="-"),
        BuildOptions(context_path="-"),
    ),
    "contextpath-ssh": lambda wd: (
        BuildOptions(context_path=GIT_SSH),
        BuildOptions(context_path=GIT_SSH),
    ),
    "dockerfilename": lambda wd: (
        BuildOptions(dockerfile_name="test", context_path="."),
        BuildOptions(dockerfile_name=j(wd, "test"), context_path=wd),
    ),
    "dockerfilename-dash": lambda wd: (
        BuildOptions(dockerfile_name="-", context_path="."),
        BuildOptions(dockerfile_name="-", context_path=wd),
    ),
    "dockerfilename-remote": lambda wd: (
        BuildOptions(dockerfile_name="test", context_path=GIT_SSH),
        BuildOptions(dockerfile_name="test", context_path=GIT_SSH),
    ),
    "contexts": lambda wd: (
        BuildOptions(
            named_contexts={
                "a": "test1",
                "b": "test2",
                "alpine": ALPINE_IMAGE,
                "project": "https://github.com/myuser/project.git",
            }
        ),
        BuildOptions(
            named_contexts={
                "a": j(wd, "test1"),
                "b": j(wd, "test2"),
                "alpine": ALPINE_IMAGE,
                "project": "https://github.com/myuser/project.git",
            }
        ),
    ),
    "cache-from": lambda wd: (
        BuildOptions(
            cache_from=[
                CacheOptionsEntry("local", {"src": "test"}),
                CacheOptionsEntry("registry", {"ref": "user/app"}),
            ]
        ),
        BuildOptions(
            cache_from=[
                CacheOptionsEntry("local", {"src": j(wd, "test")}),
                CacheOptionsEntry("registry", {"ref": "user/app"}),
            ]
        ),
    ),
    "cache-to": lambda wd: (
        BuildOptions(
            cache_to=[
                CacheOptionsEntry("local", {"dest": "test"}),
                CacheOptionsEntry("registry", {"ref": "user/app"}),
            ]
        ),
        BuildOptions(
            cache_to=[
                CacheOptionsEntry("local", {"dest": j(wd, "test")}),
                CacheOptionsEntry("registry", {"ref": "user/app"}),
            ]
        ),
    ),
    "exports": lambda wd: (
        BuildOptions(
            exports=[
                ExportEntry("local", destination="-"),
                ExportEntry("local", destination="test1"),
                ExportEntry("tar", destination="test3"),
                ExportEntry("oci", destination="-"),
                ExportEntry("docker", destination="test4"),
                ExportEntry("image", attrs={"push": "true"}),
            ]
        ),
        BuildOptions(
            exports=[
                ExportEntry("local", destination="-"),
                ExportEntry("local", destination=j(wd, "test1")),
                ExportEntry("tar", destination=j(wd, "test3")),
                ExportEntry("oci", destination="-"),
                ExportEntry("docker", destination=j(wd, "test4")),
                ExportEntry("image", attrs={"push": "true"}),
            ]
        ),
    ),
    "secrets": lambda wd: (
        BuildOptions(
            secrets=[
                Secret(file_path="test1"),
                Secret(id="val", env="a"),
                Secret(id="test", file_path="test3"),
            ]
        ),
        BuildOptions(
            secrets=[
                Secret(file_path=j(wd, "test1")),
                Secret(id="val", env="a"),
                Secret(id="test", file_path=j(wd, "test3")),
            ]
        ),
    ),
    "ssh": lambda wd: (
        BuildOptions(ssh=[SSH("default", ["test1", "test2"]), SSH("a", ["test3"])]),
        BuildOptions(
            ssh=[
                SSH("default", [j(wd, "test1"), j(wd, "test2")]),
                SSH("a", [j(wd, "test3")]),
            ]
        ),
    ),
}


@pytest.mark.parametrize("name", sorted(CASES))
def test_resolve_paths(wd, name):
    options, want = CASES[name](wd)
    assert resolve_option_paths(options) == want


def test_oci_layout_context_is_made_absolute(wd):
    got = resolve_option_paths(BuildOptions(named_contexts={"l": "oci-layout://dir"}))
    assert got.named_contexts == {"l": "oci-layout://" + j(wd, "dir")}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("https://github.com/myuser/project.git", True),
        ("http://example.com/archive.tar", True),
        (GIT_SSH, True),
        ("github.com/docker/buildx", True),
        ("git://example.com/repo", True),
        ("ssh://example.com/repo", True),
        ("ftp://example.com/repo.git", False),
        ("./local/dir", False),
        ("../local", False),
        ("test", False),
    ],
)
def test_is_remote_url(value, expected):
    assert is_remote_url(value) is expected


def test_create_attestations_first_wins_and_disabled_is_none():
    result = create_attestations(
        [
            Attest("sbom", attrs="generator=x"),
            Attest("sbom", attrs="ignored"),
            Attest("provenance", disabled=True, attrs="mode=max"),
        ]
    )
    assert result == {"sbom": "generator=x", "provenance": None}


def test_create_caches_copies_attrs():
    entry = CacheOptionsEntry("registry", {"ref": "user/app"})
    caches = create_caches([entry])
    assert caches == [CacheOptionsEntry("registry", {"ref": "user/app"})]
    caches[0].attrs["ref"] = "changed"
    assert entry.attrs == {"ref": "user/app"}
    assert create_caches([]) == []


def test_create_exports_requires_type():
    with pytest.raises(ValueError, match="type is required"):
        create_exports([ExportEntry("")])


def test_local_exporter_needs_destination():
    with pytest.raises(ValueError, match="dest is required for local exporter"):
        create_exports([ExportEntry("local")])
    with pytest.raises(ValueError, match="dest cannot be stdout"):
        create_exports([ExportEntry("local", destination="-")])


def test_local_exporter_rejects_file(tmp_path):
    target = tmp_path / "file"
    target.write_bytes(b"")
    with pytest.raises(ValueError, match="is a file"):
        create_exports([ExportEntry("local", destination=str(target))])


def test_local_exporter_sets_output_dir(tmp_path):
    dest = str(tmp_path / "out")
    outs = create_exports([ExportEntry("local", destination=dest)])
    assert len(outs) == 1
    assert outs[0].output_dir == dest
    assert outs[0].output is None


def test_tar_exporter_opens_file(tmp_path):
    dest = tmp_path / "out.tar"
    outs = create_exports([ExportEntry("tar", destination=str(dest))])
    stream = outs[0].output({})
    stream.write(b"data")
    stream.close()
    assert dest.read_bytes() == b"data"


def test_tar_exporter_rejects_directory(tmp_path):
    with pytest.raises(ValueError, match="is a directory"):
        create_exports([ExportEntry("tar", destination=str(tmp_path))])


def test_oci_without_tar_is_directory(tmp_path):
    dest = str(tmp_path / "layout")
    outs = create_exports([ExportEntry("oci", attrs={"tar": "false"}, destination=dest)])
    assert outs[0].output_dir == dest
    assert outs[0].output is None


def test_registry_becomes_image():
    outs = create_exports([ExportEntry("registry", attrs={"push": "true"})])
    assert outs[0].type == "image"
    assert outs[0].attrs == {"push": "true"}


def test_docker_without_destination_has_no_output():
    outs = create_exports([ExportEntry("docker")])
    assert outs[0].output is None
    assert outs[0].output_dir == ""


def test_tar_to_stdout_when_not_a_console(monkeypatch):
    buffer = io.BytesIO()
    monkeypatch.setattr(sys, "stdout", io.TextIOWrapper(buffer))
    outs = create_exports([ExportEntry("tar")])
    assert outs[0].output({}) is buffer