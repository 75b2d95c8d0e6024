"""Validation of remote BuildKit endpoint addresses."""

from urllib.parse import urlsplit

SCHEMES = frozenset({"tcp", "unix", "ssh", "docker-container", "kube-pod"})


class InvalidEndpointError(ValueError):
    """The endpoint cannot be parsed or uses an unknown scheme."""


def validate_endpoint(endpoint) -> None:
    try:
        scheme = urlsplit(endpoint).scheme
    except ValueError as exc:
        raise InvalidEndpointError(f"failed to parse endpoint {endpoint}: {exc}") from exc
    if scheme not in SCHEMES:
        raise InvalidEndpointError(f"unrecognized url scheme {scheme}")


def is_valid_endpoint(endpoint) -> bool:
    try:
        validate_endpoint(endpoint)
    except InvalidEndpointError:
        return False
    return True