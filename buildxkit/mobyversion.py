"""Semantic versions and constraints, and the Moby to BuildKit version table."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

_VERSION_RE = re.compile(
    r"^v?([0-9]+)(\.[0-9]+)?(\.[0-9]+)?"
    r"(?:-([0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+([0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?$"
)
_HYPHEN_RE = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")
_TERM_RE = re.compile(r"^\s*(>=|=>|<=|=<|!=|~>|~|\^|>|<|=)?\s*(\S+)\s*$")
_PARTIAL_RE = re.compile(
    r"^v?([0-9]+|[xX*])?(\.(?:[0-9]+|[xX*]))?(\.(?:[0-9]+|[xX*]))?"
    r"((?:-[0-9A-Za-z\-.]+)?(?:\+[0-9A-Za-z\-.]+)?)$"
)


def _compare_pre_part(a: str, b: str) -> int:
    if a == b:
        return 0
    if a == "":
        return -1
    if b == "":
        return 1
    a_num, b_num = a.isdigit(), b.isdigit()
    if not a_num and not b_num:
        return 1 if a > b else -1
    if not a_num:
        return 1
    if not b_num:
        return -1
    return 1 if int(a) > int(b) else -1


@total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: str = ""
    metadata: str = ""

    @classmethod
    def parse(cls, text) -> "Version":
        m = _VERSION_RE.match(text)
        if not m:
            raise ValueError(f"invalid semantic version {text!r}")
        pre = m.group(4) or ""
        for part in pre.split(".") if pre else ():
            if part.isdigit() and len(part) > 1 and part.startswith("0"):
                raise ValueError(f"invalid prerelease {pre!r} in {text!r}")
        return cls(
            int(m.group(1)),
            int(m.group(2)[1:]) if m.group(2) else 0,
            int(m.group(3)[1:]) if m.group(3) else 0,
            pre,
            m.group(5) or "",
        )

    def compare(self, other: "Version") -> int:
        for a, b in ((self.major, other.major), (self.minor, other.minor), (self.patch, other.patch)):
            if a != b:
                return 1 if a > b else -1
        if self.prerelease == other.prerelease:
            return 0
        if not self.prerelease:
            return 1
        if not other.prerelease:
            return -1
        mine, theirs = self.prerelease.split("."), other.prerelease.split(".")
        for i in range(max(len(mine), len(theirs))):
            a = mine[i] if i < len(mine) else ""
            b = theirs[i] if i < len(theirs) else ""
            result = _compare_pre_part(a, b)
            if result:
                return result
        return 0

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other):
        return self.compare(other) < 0

    def __hash__(self):
        return hash((self.major, self.minor, self.patch, self.prerelease))

    def __str__(self):
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            s += "-" + self.prerelease
        if self.metadata:
            s += "+" + self.metadata
        return s


def _is_x(part: str | None) -> bool:
    return part is None or part.lstrip(".") in ("", "x", "X", "*")


@dataclass(frozen=True)
class _Term:
    op: str
    version: Version
    dirty: bool
    minor_dirty: bool
    patch_dirty: bool

    @classmethod
    def parse(cls, text: str) -> "_Term":
        m = _TERM_RE.match(text)
        if not m:
            raise ValueError(f"improper constraint: {text}")
        op = m.group(1) or ""
        p = _PARTIAL_RE.match(m.group(2))
        if not p:
            raise ValueError(f"improper constraint: {text}")
        major, minor, patch, rest = p.groups()
        dirty = minor_dirty = patch_dirty = False
        if _is_x(major):
            core, dirty = "0.0.0", True
        elif _is_x(minor):
            core, dirty, minor_dirty = f"{major}.0.0", True, True
        elif _is_x(patch):
            core, dirty, patch_dirty = f"{major}{minor}.0", True, True
        else:
            core = f"{major}{minor}{patch}"
        return cls(op, Version.parse(core + rest), dirty, minor_dirty, patch_dirty)

    def check(self, v: Version) -> bool:
        c = self.version
        if v.prerelease and not c.prerelease:
            return False
        op = self.op
        if op in ("", "="):
            return self._equal(v)
        if op == "!=":
            return not self._equal(v)
        if op == ">":
            if not self.dirty:
                return v.compare(c) > 0
            if v.major != c.major:
                return v.major > c.major
            if self.minor_dirty:
                return False
            if v.minor != c.minor:
                return v.minor > c.minor
            return False
        if op in (">=", "=>"):
            return v.compare(c) >= 0
        if op == "<":
            return v.compare(c) < 0
        if op in ("<=", "=<"):
            if not self.dirty:
                return v.compare(c) <= 0
            if v.major != c.major:
                return v.major < c.major
            if self.minor_dirty:
                return True
            return v.minor <= c.minor
        if op in ("~", "~>"):
            if v < c:
                return False
            if c.major == 0 and c.minor == 0 and c.patch == 0 and not self.minor_dirty and not self.patch_dirty:
                return True
            if v.major != c.major:
                return False
            return self.minor_dirty or v.minor == c.minor
        if op == "^":
            if v < c:
                return False
            if c.major > 0 or self.minor_dirty:
                return v.major == c.major
            if c.minor > 0 or self.patch_dirty:
                return v.major == 0 and v.minor == c.minor
            return v.major == 0 and v.minor == 0 and v.patch == c.patch
        raise ValueError(f"unknown operator {op!r}")

    def _equal(self, v: Version) -> bool:
        c = self.version
        if self.dirty:
            if c.major != v.major:
                return False
            if self.minor_dirty:
                return True
            if c.minor != v.minor:
                return False
            if self.patch_dirty:
                return True
        return v == c


class Constraint:
    """A set of version constraints: ',' joins terms, '||' joins alternatives."""

    def __init__(self, text):
        self.text = text
        self._groups: list[list[_Term]] = []
        for alternative in text.split("||"):
            terms: list[_Term] = []
            for raw in alternative.split(","):
                raw = raw.strip()
                hyphen = _HYPHEN_RE.match(raw)
                if hyphen:
                    terms.append(_Term.parse(">= " + hyphen.group(1)))
                    terms.append(_Term.parse("<= " + hyphen.group(2)))
                else:
                    terms.append(_Term.parse(raw))
            self._groups.append(terms)

    def check(self, version) -> bool:
        return any(all(t.check(version) for t in group) for group in self._groups)


MOBY_BUILDKIT_VERSIONS: list[tuple[str, str]] = [
    (">= 18.06.0-0, < 18.06.1-0", "v0.0.0+9acf51e"),
    (">= 18.06.1-0, < 18.09.0-0", "v0.0.0+98f1604"),
    (">= 18.09.0-0, < 18.09.1-0", "v0.0.0+c7bb575"),
    ("~18.09.1-0", "v0.3.3"),
    ("> 18.09.1-0, < 18.09.6-0", "v0.3.3+d9f7592"),
    (">= 18.09.6-0, < 18.09.7-0", "v0.4.0+ed4da8b"),
    (">= 18.09.7-0, < 19.03.0-0", "v0.4.0+05766c5"),
    ("<= 19.03.0-beta2", "v0.4.0+b302896"),
    ("<= 19.03.0-beta3", "v0.4.0+8818c67"),
    ("<= 19.03.0-beta5", "v0.5.1+f238f1e"),
    ("< 19.03.2-0", "v0.5.1+1f89ec1"),
    ("<= 19.03.2-beta1", "v0.6.1"),
    (">= 19.03.2-0, < 19.03.3-0", "v0.6.1+588c73e"),
    (">= 19.03.3-0, < 19.03.5-beta2", "v0.6.2"),
    ("<= 19.03.5-rc1", "v0.6.2+ff93519"),
    ("<= 19.03.5", "v0.6.3+928f3b4"),
    ("<= 19.03.6-rc1", "v0.6.3+926935b"),
    (">= 19.03.6-rc2, < 19.03.7-0", "v0.6.3+57e8ad5"),
    (">= 19.03.7-0, < 19.03.9-0", "v0.6.4"),
    (">= 19.03.9-0, < 19.03.13-0", "v0.6.4+a7d7b7f"),
    ("<= 19.03.13-beta2", "v0.6.4+da1f4bf"),
    ("<= 19.03.14", "v0.6.4+df89d4d"),
    ("< 20.10.0", "v0.6.4+396bfe2"),
    ("20.10.0-0 - 20.10.2-0", "v0.8.1"),
    (">= 20.10.3-0, < 20.10.4-0", "v0.8.1+68bb095"),
    ("20.10.4-0 - 20.10.6", "v0.8.2"),
    ("20.10.7-0 - 20.10.10-0", "v0.8.2+244e8cde"),
    ("20.10.11-0 - 20.10.18-0", "v0.8.2+bc07b2b8"),
    (">= 20.10.19-0, < 20.10.20-0", "v0.8.2+3a1eeca5"),
    (">= 20.10.20-0, < 20.10.21-0", "v0.8.2+c0149372"),
    (">= 20.10.21-0, <= 20.10.23", "v0.8.2+eeb7b65"),
    ("~20.10-0", "v0.8+unknown"),
    ("~22.06-0", "v0.10.3"),
    (">= 23.0.0-0, < 23.0.1-0", "v0.10.6"),
    ("23.0.1", "v0.10.6+4f0ee09"),
    (">= 23.0.2-0, < 23.0.4-0", "v0.10.6+70f2ad5"),
    (">= 23.0.4-0, < 23.0.7-0", "v0.10.6+d52b2d5"),
    ("~23-0", "v0.10+unknown"),
]


def resolve_buildkit_version(moby_version) -> str:
    """Return the BuildKit version bundled with a Moby release, or "" if unknown."""
    version = Version.parse(moby_version)
    for constraint, buildkit in MOBY_BUILDKIT_VERSIONS:
        if Constraint(constraint).check(version):
            return buildkit
    return ""