"""Requirements: sets of comparison constraints on a version."""

from __future__ import annotations

import operator
import re
from typing import TYPE_CHECKING, Callable, ClassVar

from typing_extensions import Self

from .errors import BadRequirement, BadVersion
from .version import GenericVersion, Version

if TYPE_CHECKING:
    from collections.abc import Iterable


def _pessimistic(version: Version, target: Version) -> bool:
    return version >= target and version.release_version() < target.bump()


OPERATORS: dict[str, Callable[[Version, Version], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "~>": _pessimistic,
}

WILDCARD_CHARACTERS = ("*", "x", "X")
INTERVAL_PATTERN = re.compile(
    r"^(?P<open>[\[(])\s*(?P<lower>[^,\])]*)(?P<comma>,\s*(?P<upper>[^\])]*))?\s*(?P<close>[\])])$"
)


class Requirement:
    """A set of `(operator, version)` constraints that must all hold.

    Subclasses adapt `expand_constraint` to their ecosystem's grammar. The result is always expressed with the
    operators in `OPERATORS`, so two requirements written differently but meaning the same thing compare equal.
    """

    version_class: ClassVar[type[Version]] = GenericVersion
    # Splits alternatives; `None` means the ecosystem has no OR syntax
    OR_SEPARATOR: ClassVar[re.Pattern[str] | None] = re.compile(r"\s*\|\|\s*")
    AND_SEPARATOR: ClassVar[re.Pattern[str]] = re.compile(r"\s*,\s*")
    CONSTRAINT_PATTERN: ClassVar[re.Pattern[str]] = re.compile(
        r"^\s*(?P<op>=|!=|>=|<=|>|<|~>)?\s*(?P<version>[vV]?[0-9][0-9A-Za-z.\-+_]*)\s*$"
    )

    def __init__(self, *requirement_strings: str | None) -> None:
        """Parse one or more requirement strings, which are ANDed together."""
        constraints: list[tuple[str, Version]] = []
        strings = [s for s in requirement_strings if s is not None]
        for requirement_string in strings:
            if not isinstance(requirement_string, str):
                msg = f"Illformed requirement {requirement_string!r}"
                raise BadRequirement(msg)
            for part in self.split_constraints(requirement_string):
                constraints.extend(self._build(op, version) for op, version in self.expand_constraint(part))
        if not constraints:
            constraints.append((">=", self.version_class("0")))
        self.requirement_string: str = ", ".join(s.strip() for s in strings)
        self.constraints: tuple[tuple[str, Version], ...] = tuple(constraints)

    @classmethod
    def parse(cls, requirement_string: str) -> Self:
        """Parse a single requirement (no OR alternatives)."""
        return cls(requirement_string)

    @classmethod
    def requirements_array(cls, requirement_string: str | None) -> list[Self]:
        """Split `requirement_string` on the OR separator, returning one requirement per alternative."""
        if requirement_string is None:
            return [cls()]
        if cls.OR_SEPARATOR is None:
            return [cls(requirement_string)]
        return [cls(alternative) for alternative in cls.OR_SEPARATOR.split(requirement_string.strip())]

    def split_constraints(self, requirement_string: str) -> list[str]:
        """Split an AND-joined requirement string into single constraints."""
        return [part for part in self.AND_SEPARATOR.split(requirement_string.strip()) if part]

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Translate a single constraint into `(operator, version)` pairs."""
        match = self.CONSTRAINT_PATTERN.match(constraint)
        if match is None:
            msg = f"Illformed requirement {constraint!r}"
            raise BadRequirement(msg)
        return [(match.group("op") or "=", match.group("version"))]

    def _build(self, op: str, version: str) -> tuple[str, Version]:
        if op not in OPERATORS:
            msg = f"Unknown operator {op!r}"
            raise BadRequirement(msg)
        try:
            return op, self.version_class(version)
        except BadVersion as e:
            msg = f"Illformed requirement {op} {version}: {e!s}"
            raise BadRequirement(msg) from e

    def satisfied_by(self, version: Version | str) -> bool:
        """Return whether `version` meets every constraint."""
        if isinstance(version, str):
            version = self.version_class(version)
        return all(OPERATORS[op](version, target) for op, target in self.constraints)

    def __contains__(self, version: Version | str) -> bool:
        """Alias for `satisfied_by`."""
        return self.satisfied_by(version)

    @property
    def is_exact(self) -> bool:
        """Whether this requirement pins a single version."""
        return len(self.constraints) == 1 and self.constraints[0][0] == "="

    def __eq__(self, other: object) -> bool:
        """Compare requirements by the constraints they express."""
        if not isinstance(other, Requirement) or type(self) is not type(other):
            return NotImplemented
        return frozenset(self.constraints) == frozenset(other.constraints)

    def __hash__(self) -> int:
        """Hash consistently with equality."""
        return hash((type(self).__name__, frozenset(self.constraints)))

    def __str__(self) -> str:
        """Return the normalized constraints."""
        return ", ".join(f"{op} {version}" for op, version in self.constraints)

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"{type(self).__name__}({str(self)!r})"

    # Shorthand expansions shared by several ecosystems.

    @staticmethod
    def strip_v(version: str) -> str:
        """Remove a leading `v` from a version."""
        version = version.strip()
        return version[1:] if version[:1] in ("v", "V") and version[1:2].isdigit() else version

    @classmethod
    def caret_constraints(cls, version: str) -> list[tuple[str, str]]:
        """Expand `^x.y.z`: the leftmost non-zero component may not change."""
        version = cls.strip_v(version.lstrip("^").strip())
        if version in ("", *WILDCARD_CHARACTERS):
            return [(">=", "0")]
        parts = version.split(".")
        parts += ["x"] * (3 - len(parts))
        index = next((i for i, part in enumerate(parts) if part != "0"), len(parts) - 1)
        if parts[index] in WILDCARD_CHARACTERS:
            index = max(index - 1, 0)
        upper: list[str] = []
        for i, part in enumerate(parts[:3]):
            if i < index:
                upper.append(part)
            elif i == index:
                leading = re.match(r"[0-9]+", part)
                if leading is None:
                    msg = f"Illformed requirement ^{version}"
                    raise BadRequirement(msg)
                upper.append(str(int(leading.group(0)) + 1))
            else:
                upper.append("0")
        lower = re.sub(r"\.[xX*]", "", version)
        return [(">=", lower), ("<", upper_bound(cls.version_class, upper))]

    @classmethod
    def tilde_constraints(cls, version: str) -> list[tuple[str, str]]:
        """Expand `~x.y.z`: the last written component may change, the rest may not."""
        version = cls.strip_v(re.sub(r"^~>?", "", version.strip()).strip())
        version = re.sub(r"(?:\.|^)[xX*].*$", "", version)
        if not version:
            return [(">=", "0")]
        parts = version.split(".")
        if len(parts) < 3:  # noqa: PLR2004
            parts.append("0")
        return [("~>", ".".join(parts))]

    @classmethod
    def wildcard_constraints(cls, version: str) -> list[tuple[str, str]]:
        """Expand `1.*` style wildcards into a pessimistic constraint at that precision."""
        version = re.sub(r"(?:\.|^)[xX*]", "", cls.strip_v(version.lstrip("=").strip()))
        if not version:
            return [(">=", "0")]
        return [("~>", f"{version}.0")]

    @classmethod
    def interval_constraints(cls, interval: str) -> list[tuple[str, str]]:
        """Expand a Maven/NuGet interval: `[1.0]`, `[1.0,2.0)`, `(,1.0]`, `(1.0,)`."""
        match = INTERVAL_PATTERN.match(interval.strip())
        if match is None:
            msg = f"Illformed requirement {interval!r}"
            raise BadRequirement(msg)
        lower, upper = match.group("lower").strip(), (match.group("upper") or "").strip()
        if match.group("comma") is None:
            if match.group("open") != "[" or match.group("close") != "]" or not lower:
                msg = f"Illformed requirement {interval!r}"
                raise BadRequirement(msg)
            return [("=", lower)]
        constraints = []
        if lower:
            constraints.append((">=" if match.group("open") == "[" else ">", lower))
        if upper:
            constraints.append(("<=" if match.group("close") == "]" else "<", upper))
        return constraints or [(">=", "0")]

    @staticmethod
    def is_wildcard(version: str) -> bool:
        """Return whether a version contains a wildcard component."""
        return any(part in WILDCARD_CHARACTERS for part in version.strip().split("."))


def upper_bound(version_class: type[Version], release: Iterable[str]) -> str:
    """Format an exclusive upper bound that also excludes the prereleases of `release`."""
    return str(version_class.lowest_prerelease(list(release)))


def update_version_string(old: str, new_version: Version) -> str:
    """Replace every version in `old` by `new_version` cut to the same precision, keeping operators and wildcards.

    `^4.0` becomes `^5.2` for 5.2.1, `1.0.*` becomes `5.2.*` and a fully written or prerelease version is replaced
    whole.
    """
    new_parts = [str(s) for s in new_version.release]

    def _replace(match: re.Match[str]) -> str:
        old_parts = match.group("version").split(".")
        if any(p in WILDCARD_CHARACTERS for p in old_parts):
            parts = [
                p if p in WILDCARD_CHARACTERS else (new_parts[i] if i < len(new_parts) else "0")
                for i, p in enumerate(old_parts)
            ]
            return match.group("v") + ".".join(parts)
        if re.search(r"[A-Za-z-]", match.group("version")) or len(old_parts) >= len(new_parts):
            return match.group("v") + str(new_version).lstrip("vV")
        return match.group("v") + ".".join(new_parts[: len(old_parts)])

    return re.sub(r"(?P<v>[vV]?)(?P<version>[0-9]+(?:\.(?:[0-9]+|[xX*]))*(?:-[0-9A-Za-z.]+)?)", _replace, old)


def raise_upper_bounds(requirement: str, new_version: Version) -> str:
    """Move every `<`/`<=` bound of `requirement` to the next major release after `new_version`."""
    major = new_version.release[0] + 1

    def _replace(match: re.Match[str]) -> str:
        precision = len(match.group("version").split("."))
        return f"{match.group('op')}{'.'.join([str(major)] + ['0'] * (precision - 1))}"

    return re.sub(r"(?P<op><=?\s*[vV]?)(?P<version>\d+(?:\.\d+)*)", _replace, requirement)
