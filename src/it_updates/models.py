"""Core data models: dependency files, dependencies and their requirement declarations."""

from __future__ import annotations

import dataclasses
import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import DependencyFileNotEvaluatable

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


class SourceType(str, Enum):
    """Where a dependency comes from, when it is not the ecosystem's default registry."""

    registry = "registry"
    git = "git"
    path = "path"
    digest = "digest"


@dataclass(frozen=True)
class Source:
    """A source descriptor attached to a requirement declaration."""

    type: SourceType
    url: str | None = None
    branch: str | None = None
    ref: str | None = None
    registry: str | None = None
    tag: str | None = None
    digest: str | None = None
    module_identifier: str | None = None

    def replace(self, **changes: Any) -> Source:  # noqa: ANN401
        """Return a copy with some fields changed."""
        return dataclasses.replace(self, **changes)

    def to_obj(self) -> dict[str, str]:
        """Convert to a JSON-ready dictionary, omitting unset fields."""
        obj = {"type": self.type.value}
        for f in dataclasses.fields(self):
            if f.name == "type":
                continue
            value = getattr(self, f.name)
            if value is not None:
                obj[f.name] = value
        return obj


@dataclass(frozen=True)
class RequirementEntry:
    """One declaration of a dependency: the file declaring it, what it asks for, and in which groups.

    `metadata` carries ecosystem specific details needed to rewrite the declaration later, such as the name of the
    property driving a Maven version or the original FROM line of a Dockerfile.
    """

    file: str
    requirement: str | None
    groups: tuple[str, ...] = ()
    source: Source | None = None
    metadata: tuple[tuple[str, str], ...] = ()

    def replace(self, **changes: Any) -> RequirementEntry:  # noqa: ANN401
        """Return a copy with some fields changed."""
        return dataclasses.replace(self, **changes)

    def meta(self, key: str, default: str | None = None) -> str | None:
        """Look up a metadata value."""
        return dict(self.metadata).get(key, default)

    def to_obj(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        obj: dict[str, Any] = {
            "file": self.file,
            "requirement": self.requirement,
            "groups": list(self.groups),
            "source": None if self.source is None else self.source.to_obj(),
        }
        if self.metadata:
            obj["metadata"] = dict(self.metadata)
        return obj


class DependencyFile:
    """The raw content of one file, as handed over by whoever fetched the repository."""

    def __init__(
        self,
        name: str,
        content: str | None,
        directory: str = "/",
        *,
        support_file: bool = False,
        file_type: str = "file",
    ) -> None:
        """Initialize a dependency file.

        Args:
            name: File name, possibly with a relative directory (`packages/a/package.json`)
            content: File content, or None for a file known to exist without content
            directory: The directory the repository was fetched for
            support_file: Whether the file is needed for resolution but never updated itself
            file_type: Role of the file, e.g. `path_dependency` or `symlink`

        """
        self.name: str = posixpath.normpath(name).lstrip("/") if name else name
        self.content: str | None = content
        self.directory: str = "/" + directory.strip("/") if directory.strip("/") else "/"
        self.support_file: bool = support_file
        self.type: str = file_type

    @property
    def path(self) -> str:
        """The full path of the file, including its directory."""
        return posixpath.join(self.directory, self.name)

    def with_content(self, content: str) -> DependencyFile:
        """Return a new file with the same identity and new content."""
        return DependencyFile(
            self.name,
            content,
            self.directory,
            support_file=self.support_file,
            file_type=self.type,
        )

    def to_obj(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "name": self.name,
            "directory": self.directory,
            "content": self.content,
            "support_file": self.support_file,
            "type": self.type,
        }

    def __eq__(self, other: object) -> bool:
        """Files are equal when identity and content are equal."""
        return (
            isinstance(other, DependencyFile)
            and self.directory == other.directory
            and self.name == other.name
            and self.content == other.content
        )

    def __hash__(self) -> int:
        """Hash on identity and content."""
        return hash((self.directory, self.name, self.content))

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"DependencyFile({self.path!r}, support_file={self.support_file}, type={self.type!r})"


class Dependency:
    """A package, its resolved version (if any) and every place it is declared."""

    def __init__(  # noqa: PLR0913
        self,
        name: str,
        version: str | None,
        requirements: Iterable[RequirementEntry],
        package_manager: str,
        previous_version: str | None = None,
        previous_requirements: Iterable[RequirementEntry] | None = None,
    ) -> None:
        """Initialize a dependency.

        Args:
            name: Package name, unique within its package manager
            version: Resolved (locked) version, or None if there is no lockfile
            requirements: Declarations of the dependency, one per declaring file and group
            package_manager: Name of the package manager this dependency belongs to
            previous_version: For an updated dependency, the version before the update
            previous_requirements: For an updated dependency, the declarations before the update

        """
        self.name: str = name
        self.version: str | None = version
        self.requirements: tuple[RequirementEntry, ...] = tuple(requirements)
        self.package_manager: str = package_manager
        self.previous_version: str | None = previous_version
        self.previous_requirements: tuple[RequirementEntry, ...] | None = (
            None if previous_requirements is None else tuple(previous_requirements)
        )

    @property
    def top_level(self) -> bool:
        """Whether any manifest declares this dependency (as opposed to it only appearing in a lockfile)."""
        return bool(self.requirements)

    @property
    def appears_in_lockfile(self) -> bool:
        """Whether a lockfile records a version for this dependency."""
        return self.version is not None

    def updated(self, version: str | None, requirements: Iterable[RequirementEntry] | None = None) -> Dependency:
        """Return a new dependency representing this one after an update."""
        return Dependency(
            name=self.name,
            version=version,
            requirements=self.requirements if requirements is None else requirements,
            package_manager=self.package_manager,
            previous_version=self.version,
            previous_requirements=self.requirements,
        )

    def changed_requirements(self) -> list[RequirementEntry]:
        """Return the declarations that differ from the previous ones, in declaration order."""
        previous = set(self.previous_requirements or ())
        return [r for r in self.requirements if r not in previous]

    def changed_files(self) -> list[str]:
        """Names of the files whose declarations changed."""
        files: list[str] = []
        for requirement in self.changed_requirements():
            if requirement.file not in files:
                files.append(requirement.file)
        return files

    def source_details(self) -> Source | None:
        """Return the single non-default source of this dependency, if it has one.

        Raises:
            DependencyFileNotEvaluatable: if the declarations disagree about the source

        """
        sources = {r.source for r in self.requirements if r.source is not None}
        distinct = {(s.type, s.url) for s in sources}
        if len(distinct) > 1:
            msg = f"Multiple sources! {', '.join(sorted(f'{t.value}:{u}' for t, u in distinct))}"
            raise DependencyFileNotEvaluatable(msg)
        return next(iter(sources), None)

    def to_obj(self) -> dict[str, Any]:
        """Convert to the JSON-ready shape handed to pull request creation."""
        return {
            "name": self.name,
            "version": self.version,
            "previous_version": self.previous_version,
            "requirements": [r.to_obj() for r in self.requirements],
            "previous_requirements": (
                None if self.previous_requirements is None else [r.to_obj() for r in self.previous_requirements]
            ),
            "package_manager": self.package_manager,
        }

    def __eq__(self, other: object) -> bool:
        """Check equality with another dependency."""
        return (
            isinstance(other, Dependency)
            and self.name == other.name
            and self.version == other.version
            and set(self.requirements) == set(other.requirements)
            and self.package_manager == other.package_manager
        )

    def __hash__(self) -> int:
        """Compute hash for dependency."""
        return hash((self.name, self.version, frozenset(self.requirements), self.package_manager))

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"Dependency({self.name!r}, {self.version!r}, package_manager={self.package_manager!r})"


def _specificity(version: str) -> int:
    return len([part for part in version.replace("-", ".").split(".") if part])


class DependencySet:
    """Dependencies keyed by name, merging repeated declarations of the same package."""

    def __init__(self, dependencies: Iterable[Dependency] = ()) -> None:
        """Initialize the set, adding any given dependencies."""
        self._dependencies: dict[str, Dependency] = {}
        for dependency in dependencies:
            self.add(dependency)

    def add(self, dependency: Dependency) -> None:
        """Add a dependency, merging it with an existing one of the same name.

        Requirement entries are combined (identical entries only kept once), and when both sides know a version the
        more specific one wins (`1.2.3` over `1.2`).
        """
        existing = self._dependencies.get(dependency.name)
        if existing is None:
            self._dependencies[dependency.name] = dependency
            return
        requirements = list(existing.requirements)
        for requirement in dependency.requirements:
            if requirement not in requirements:
                requirements.append(requirement)
        version = existing.version
        if version is None or (
            dependency.version is not None and _specificity(dependency.version) > _specificity(version)
        ):
            version = dependency.version
        self._dependencies[dependency.name] = Dependency(
            name=existing.name,
            version=version,
            requirements=requirements,
            package_manager=existing.package_manager,
        )

    def __iadd__(self, other: Dependency | Iterable[Dependency]) -> DependencySet:
        """Add one dependency or several."""
        if isinstance(other, Dependency):
            self.add(other)
        else:
            for dependency in other:
                self.add(dependency)
        return self

    def get(self, name: str) -> Dependency | None:
        """Return the dependency with the given name, if any."""
        return self._dependencies.get(name)

    def __contains__(self, name: object) -> bool:
        """Check whether a dependency name is in the set."""
        return name in self._dependencies

    def __iter__(self) -> Iterator[Dependency]:
        """Iterate over dependencies in insertion order."""
        yield from self._dependencies.values()

    def __len__(self) -> int:
        """Return the number of dependencies."""
        return len(self._dependencies)

    @property
    def dependencies(self) -> list[Dependency]:
        """All dependencies, in insertion order."""
        return list(self._dependencies.values())


class UnlockLevel(str, Enum):
    """How much of the dependency graph may be loosened to reach a new version."""

    none = "none"
    own = "own"
    all = "all"

    @property
    def ladder(self) -> tuple[UnlockLevel, ...]:
        """This level and every stricter one, strictest first."""
        levels = tuple(UnlockLevel)
        return levels[: levels.index(self) + 1]
