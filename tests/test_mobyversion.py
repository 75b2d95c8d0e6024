import pytest

from buildxkit.mobyversion import (
    MOBY_BUILDKIT_VERSIONS,
    Constraint,
    Version,
    resolve_buildkit_version,
)


@pytest.mark.parametrize("constraint", [c for c, _ in MOBY_BUILDKIT_VERSIONS])
def test_constraint_parses(constraint):
    assert Constraint(constraint).text == constraint


@pytest.mark.parametrize(
    "moby,expected",
    [
        ("18.06.1-ce", "v0.0.0+98f1604"),
        ("18.09.1-beta1", "v0.3.3"),
        ("19.03.0-beta1", "v0.4.0+b302896"),
        ("19.03.5-beta2", "v0.6.2+ff93519"),
        ("19.03.13-beta1", "v0.6.4+da1f4bf"),
        ("19.03.13-beta2", "v0.6.4+da1f4bf"),
        ("19.03.13", "v0.6.4+df89d4d"),
        ("20.10.3-rc.1", "v0.8.1+68bb095"),
        ("20.10.3", "v0.8.1+68bb095"),
        ("20.10.4", "v0.8.2"),
        ("20.10.16", "v0.8.2+bc07b2b8"),
        ("20.10.19", "v0.8.2+3a1eeca5"),
        ("20.10.23", "v0.8.2+eeb7b65"),
        ("20.10.24", "v0.8+unknown"),
        ("20.10.50", "v0.8+unknown"),
        ("22.06.0-beta.0", "v0.10.3"),
        ("22.06.0", "v0.10.3"),
        ("23.0.0-rc.4", "v0.10.6"),
        ("23.0.0", "v0.10.6"),
        ("23.0.1", "v0.10.6+4f0ee09"),
        ("23.0.2-rc.1", "v0.10.6+70f2ad5"),
        ("23.0.3", "v0.10.6+70f2ad5"),
        ("23.0.5", "v0.10.6+d52b2d5"),
        ("23.0.7", "v0.10+unknown"),
    ],
)
def test_resolve(moby, expected):
    assert resolve_buildkit_version(moby) == expected


def test_invalid_version():
    with pytest.raises(ValueError):
        resolve_buildkit_version("not-a-version")


def test_prerelease_orders_before_release():
    assert Version.parse("23.0.0-rc.4") < Version.parse("23.0.0")
    assert Version.parse("1.0.0-alpha") < Version.parse("1.0.0-alpha.1")


def test_release_constraint_rejects_prerelease():
    assert Constraint("<= 19.03.5").check(Version.parse("19.03.1-beta1")) is False
    assert Constraint("<= 19.03.5").check(Version.parse("19.03.1")) is True