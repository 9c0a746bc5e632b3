"""Ordered, immutable package versions.

Every ecosystem picks (or subclasses) one of the concrete versions below:

* `GenericVersion` compares dotted numeric segments followed by an optional prerelease part
* `SemverVersion` parses SemVer strings (partial versions allowed) with `semantic_version`

The PEP 440 flavour lives in `it_updates.pip` because only pip needs it.
"""

from __future__ import annotations

import functools
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

import semantic_version
from typing_extensions import Self

from .errors import BadVersion

if TYPE_CHECKING:
    from collections.abc import Sequence

SHA_PATTERN = re.compile(r"^[0-9a-f]{6,}$")
FULL_SHA_PATTERN = re.compile(r"^[0-9a-f]{40}$")


@functools.total_ordering
class Version(ABC):
    """A parsed version. Instances are immutable and hashable."""

    # Appended to a release to build the lowest possible prerelease of that release. Upper bounds produced by caret
    # and tilde requirements use it so that `< 2.0.0` also excludes the prereleases of 2.0.0.
    LOWEST_PRERELEASE_SUFFIX: ClassVar[str] = ".a"

    def __init__(self, version_string: str) -> None:
        """Parse `version_string`, raising `BadVersion` if it is not a valid version."""
        if not isinstance(version_string, str):
            msg = f"Expected a version string, got {version_string!r}"
            raise BadVersion(msg)
        self.version_string: str = version_string.strip()
        if not self.version_string:
            msg = "Empty version string"
            raise BadVersion(msg)
        self._parse(self.version_string)

    @classmethod
    def parse(cls, version_string: str) -> Self:
        """Parse a version string."""
        return cls(version_string)

    @classmethod
    def correct(cls, version_string: object) -> bool:
        """Return whether `version_string` parses as a version. Never raises."""
        if isinstance(version_string, Version):
            return isinstance(version_string, cls)
        if not isinstance(version_string, str):
            return False
        try:
            cls(version_string)
        except BadVersion:
            return False
        return True

    @abstractmethod
    def _parse(self, version_string: str) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def release(self) -> tuple[int, ...]:
        """The numeric segments of this version, as written."""
        raise NotImplementedError

    @property
    @abstractmethod
    def is_prerelease(self) -> bool:
        """Whether this is a prerelease."""
        raise NotImplementedError

    @property
    def local(self) -> str | None:
        """Local or build metadata, if any."""
        return None

    @abstractmethod
    def _compare(self, other: Self) -> int:
        """Return -1, 0 or 1."""
        raise NotImplementedError

    @abstractmethod
    def _hash_key(self) -> object:
        raise NotImplementedError

    def compare(self, other: Version | str) -> int:
        """Compare with another version of the same ecosystem, returning -1, 0 or 1."""
        coerced = self._coerce(other)
        if coerced is NotImplemented:
            msg = f"Cannot compare {self!r} with {other!r}"
            raise TypeError(msg)
        return self._compare(coerced)

    def release_version(self) -> Self:
        """Return this version without its prerelease and local parts."""
        return type(self)(".".join(str(s) for s in self.release))

    def bump(self) -> Self:
        """Return the exclusive upper bound of a pessimistic (`~>`) constraint on this version.

        The last release segment is dropped (unless it is the only one) and the new last segment is incremented, so
        `1.2.3` bumps to `1.3` and `1.2` bumps to `2`.
        """
        segments = list(self.release)
        if len(segments) > 1:
            segments.pop()
        segments[-1] += 1
        return type(self)(".".join(str(s) for s in segments))

    @classmethod
    def lowest_prerelease(cls, release: Sequence[int | str]) -> Self:
        """Return the lowest version that orders after every release below `release`."""
        return cls(".".join(str(s) for s in release) + cls.LOWEST_PRERELEASE_SUFFIX)

    def _coerce(self, other: object) -> Self:
        if isinstance(other, type(self)):
            return other
        if isinstance(other, Version) and isinstance(self, type(other)):
            return type(self)(str(other))
        if isinstance(other, str):
            try:
                return type(self)(other)
            except BadVersion:
                return NotImplemented
        return NotImplemented

    def __eq__(self, other: object) -> bool:
        """Check equality by ordering, so `1.0` equals `1.0.0`."""
        coerced = self._coerce(other)
        if coerced is NotImplemented:
            return NotImplemented
        return self._compare(coerced) == 0

    def __lt__(self, other: object) -> bool:
        """Order versions."""
        coerced = self._coerce(other)
        if coerced is NotImplemented:
            return NotImplemented
        return self._compare(coerced) < 0

    def __hash__(self) -> int:
        """Hash consistently with equality."""
        return hash((Version, self._hash_key()))

    def __str__(self) -> str:
        """Return the version as it was written."""
        return self.version_string

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"{type(self).__name__}({self.version_string!r})"


def _cmp(a: object, b: object) -> int:
    return (a > b) - (a < b)  # type: ignore[operator]


def _strip_trailing_zeros(segments: Sequence[int]) -> tuple[int, ...]:
    segments = list(segments)
    while len(segments) > 1 and segments[-1] == 0:
        segments.pop()
    return tuple(segments)


GENERIC_VERSION_PATTERN = re.compile(
    r"""
    ^[vV]?
    (?P<release>[0-9]+(?:\.[0-9]+)*)
    (?P<prerelease>[-.]?[0-9A-Za-z][0-9A-Za-z.\-_]*)?
    (?:\+(?P<local>[0-9A-Za-z.\-_]+))?
    $
    """,
    re.VERBOSE,
)


class GenericVersion(Version):
    """Dotted numeric segments with an optional prerelease.

    Letters start the prerelease (`1.0.0.rc1`, `1.0.0beta`), as does a dash (`1.0.0-1`), which is recorded as an
    implicit `pre` segment. Missing release segments count as zero, textual prerelease segments order before numeric
    ones and a release orders after all of its prereleases.
    """

    def _parse(self, version_string: str) -> None:
        match = GENERIC_VERSION_PATTERN.match(version_string)
        if match is None:
            msg = f"Malformed version string {version_string!r}"
            raise BadVersion(msg)
        self._release: tuple[int, ...] = tuple(int(s) for s in match.group("release").split("."))
        prerelease = match.group("prerelease") or ""
        tokens: list[int | str] = []
        if prerelease.startswith("-"):
            tokens.append("pre")
        for token in re.findall(r"[0-9]+|[A-Za-z]+", prerelease):
            tokens.append(int(token) if token.isdigit() else token.lower())
        self._prerelease: tuple[int | str, ...] = tuple(tokens)
        self._local: str | None = match.group("local")

    @property
    def release(self) -> tuple[int, ...]:
        """The numeric segments of this version, as written."""
        return self._release

    @property
    def prerelease(self) -> tuple[int | str, ...]:
        """The prerelease segments, empty for a release."""
        return self._prerelease

    @property
    def is_prerelease(self) -> bool:
        """Whether this is a prerelease."""
        return bool(self._prerelease)

    @property
    def local(self) -> str | None:
        """Build metadata after a `+`, if any."""
        return self._local

    @property
    def _prerelease_key(self) -> tuple[tuple[int, int | str], ...]:
        return tuple((1, t) if isinstance(t, int) else (0, t) for t in self._prerelease)

    def _compare(self, other: GenericVersion) -> int:  # type: ignore[override]
        length = max(len(self._release), len(other._release))
        ours = self._release + (0,) * (length - len(self._release))
        theirs = other._release + (0,) * (length - len(other._release))
        result = _cmp(ours, theirs)
        if result:
            return result
        if not self._prerelease or not other._prerelease:
            return _cmp(not self._prerelease, not other._prerelease)
        return _cmp(self._prerelease_key, other._prerelease_key)

    def _hash_key(self) -> object:
        return _strip_trailing_zeros(self._release), self._prerelease_key


SEMVER_PATTERN = re.compile(r"^[vV=]?\s*[0-9]+(?:\.[0-9]+)*(?:[-+.]?[0-9A-Za-z][0-9A-Za-z.+\-]*)?$")


class SemverVersion(Version):
    """A SemVer version parsed with `semantic_version`.

    Partial versions such as `1` or `1.2` are accepted and padded with zeros, a leading `v` is ignored and build
    metadata never takes part in comparisons.
    """

    LOWEST_PRERELEASE_SUFFIX = "-0"

    def _parse(self, version_string: str) -> None:
        if not SEMVER_PATTERN.match(version_string):
            msg = f"Malformed version string {version_string!r}"
            raise BadVersion(msg)
        cleaned = version_string.lstrip("vV=").strip()
        try:
            parsed = semantic_version.Version.coerce(cleaned)
        except ValueError as e:
            msg = f"Malformed version string {version_string!r}: {e!s}"
            raise BadVersion(msg) from e
        numeric = re.match(r"[0-9]+(?:\.[0-9]+){0,2}", cleaned)
        precision = numeric.group(0).count(".") + 1 if numeric else 3
        self.semver: semantic_version.Version = parsed
        self._release: tuple[int, ...] = (parsed.major, parsed.minor, parsed.patch)[:precision]
        self._precedence: semantic_version.Version = semantic_version.Version(
            major=parsed.major,
            minor=parsed.minor,
            patch=parsed.patch,
            prerelease=parsed.prerelease,
        )

    @property
    def release(self) -> tuple[int, ...]:
        """The numeric segments of this version, as written."""
        return self._release

    @property
    def prerelease(self) -> tuple[str, ...]:
        """The prerelease identifiers, empty for a release."""
        return tuple(self.semver.prerelease)

    @property
    def is_prerelease(self) -> bool:
        """Whether this is a prerelease."""
        return bool(self.semver.prerelease)

    @property
    def local(self) -> str | None:
        """Build metadata, if any."""
        return ".".join(self.semver.build) or None

    def _compare(self, other: SemverVersion) -> int:  # type: ignore[override]
        return _cmp(self._precedence, other._precedence)

    def _hash_key(self) -> object:
        return self._precedence
