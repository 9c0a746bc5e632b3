"""The resolution engine shared by every package manager.

An update check walks a small state machine: look up the latest version, stop if the dependency is already up to
date, otherwise try to reach the latest *resolvable* version with increasingly permissive unlock levels::

    none -> own -> all

`none` keeps every declared requirement, `own` may rewrite the dependency's own requirements, and `all` may rewrite
any requirement in the graph (the `ForceUpdater` loop).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, Callable, ClassVar

from .config import get_settings
from .errors import BadRequirement, BadVersion, DependencyFileNotResolvable
from .git_commit_checker import GitCommitChecker
from .http_client import HttpClient
from .models import SourceType, UnlockLevel
from .requirement import Requirement
from .sandbox import credentials_from
from .version import FULL_SHA_PATTERN, SHA_PATTERN, GenericVersion, Version

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from typing import Any

    from .config import Settings
    from .models import Dependency, DependencyFile, RequirementEntry
    from .sandbox import Credential, ExternalResolver, Runner

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    """Outcome of an update check."""

    up_to_date = "up_to_date"
    updatable = "updatable"
    unresolvable = "unresolvable"


@dataclass(frozen=True)
class UpdateCheckResult:
    """What an update check decided."""

    status: CheckStatus
    unlock_level: UnlockLevel | None = None
    latest_version: str | None = None
    dependencies: tuple[Dependency, ...] = ()

    def to_obj(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "status": self.status.value,
            "unlock_level": None if self.unlock_level is None else self.unlock_level.value,
            "latest_version": self.latest_version,
            "dependencies": [d.to_obj() for d in self.dependencies],
        }


class UpdateChecker(ABC):
    """Decides whether, and how far, one dependency can be updated.

    Subclasses implement the underscored lookups; the public cached properties wrap them so each lookup (a registry
    request, a native resolver run) happens at most once per checker.
    """

    version_class: ClassVar[type[Version]] = GenericVersion
    requirement_class: ClassVar[type[Requirement]] = Requirement

    def __init__(  # noqa: PLR0913
        self,
        dependency: Dependency,
        dependency_files: Sequence[DependencyFile],
        *,
        credentials: Iterable[Credential | Mapping[str, Any]] = (),
        ignored_versions: Iterable[str] = (),
        settings: Settings | None = None,
        http: HttpClient | None = None,
        resolver: ExternalResolver | None = None,
        runner: Runner | None = None,
    ) -> None:
        """Initialize an update checker.

        Args:
            dependency: The dependency to check
            dependency_files: Every dependency file of the project, manifests and lockfiles alike
            credentials: Credentials for private sources
            ignored_versions: Requirement strings (comma-joined constraints) of versions never to update to
            settings: Settings to use (process-wide settings by default)
            http: HTTP client for registry lookups
            resolver: External resolver to use instead of the ecosystem's native helper
            runner: Runner for native package manager commands

        """
        self.dependency: Dependency = dependency
        self.dependency_files: list[DependencyFile] = list(dependency_files)
        self.credentials: tuple[Credential, ...] = credentials_from(credentials)
        self.ignored_versions: tuple[str, ...] = tuple(ignored_versions)
        self.settings: Settings = settings or get_settings()
        self.http: HttpClient = http or HttpClient(self.settings)
        self.resolver: ExternalResolver | None = resolver
        self.runner: Runner | None = runner

    # Lookups implemented by every ecosystem

    @abstractmethod
    def _latest_version(self) -> Version | str | None:
        raise NotImplementedError

    @abstractmethod
    def _latest_resolvable_version(self) -> Version | str | None:
        raise NotImplementedError

    @abstractmethod
    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        raise NotImplementedError

    @abstractmethod
    def _updated_requirements(self) -> list[RequirementEntry]:
        raise NotImplementedError

    def _latest_version_resolvable_with_full_unlock(self) -> bool:
        return False

    def _updated_dependencies_after_full_unlock(self) -> list[Dependency]:
        msg = f"{type(self).__name__} does not support unlocking the whole graph"
        raise DependencyFileNotResolvable(msg)

    @cached_property
    def latest_version(self) -> Version | str | None:
        """The newest version available upstream, after prerelease and ignore filtering."""
        version = self._latest_version()
        logger.debug("Latest version of %s: %s", self.dependency.name, version)
        return version

    @cached_property
    def latest_resolvable_version(self) -> Version | str | None:
        """The newest version the resolver accepts when the dependency's own requirements may change."""
        return self._latest_resolvable_version()

    @cached_property
    def latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        """The newest version the resolver accepts with every declared requirement left alone."""
        return self._latest_resolvable_version_with_no_unlock()

    @cached_property
    def updated_requirements(self) -> list[RequirementEntry]:
        """The dependency's requirement entries rewritten for `latest_resolvable_version`."""
        return self._updated_requirements()

    @cached_property
    def latest_version_resolvable_with_full_unlock(self) -> bool:
        """Whether the latest version is reachable when any requirement in the graph may change."""
        if self.latest_version is None:
            return False
        return self._latest_version_resolvable_with_full_unlock()

    @cached_property
    def updated_dependencies_after_full_unlock(self) -> list[Dependency]:
        """Every dependency changed by a full unlock, the checked one first."""
        return self._updated_dependencies_after_full_unlock()

    # Shared version filtering

    @property
    def current_version(self) -> Version | None:
        """The locked version, if it parses as a version of this ecosystem."""
        version = self.dependency.version
        if version is None or not self.version_class.correct(version):
            return None
        return self.version_class(version)

    def existing_version_is_sha(self) -> bool:
        """Whether the locked version is a commit SHA rather than a version."""
        version = self.dependency.version
        if version is None or self.version_class.correct(version):
            return False
        return SHA_PATTERN.match(version) is not None

    @cached_property
    def ignore_requirements(self) -> list[Requirement]:
        """One requirement per ignore rule; each rule is a comma-joined constraint list."""
        requirements = []
        for ignored in self.ignored_versions:
            try:
                requirements.append(self.requirement_class(*(part for part in ignored.split(",") if part.strip())))
            except BadRequirement:
                logger.warning("Ignoring illformed ignore rule %r for %s", ignored, self.dependency.name)
        return requirements

    def is_ignored(self, version: Version) -> bool:
        """Whether an ignore rule covers `version`."""
        return any(requirement.satisfied_by(version) for requirement in self.ignore_requirements)

    def declared_requirements(self) -> list[Requirement]:
        """Every requirement alternative declared for the dependency, skipping illformed ones."""
        requirements: list[Requirement] = []
        for entry in self.dependency.requirements:
            if entry.requirement is None:
                continue
            try:
                requirements.extend(self.requirement_class.requirements_array(entry.requirement))
            except BadRequirement:
                logger.debug("Cannot parse requirement %r of %s", entry.requirement, self.dependency.name)
        return requirements

    @cached_property
    def wants_prerelease(self) -> bool:
        """Whether prereleases are candidates: the current version is one, or a requirement names one."""
        current = self.current_version
        if current is not None and current.is_prerelease:
            return True
        # upper bounds such as `< 2.0.0-0` are prereleases only to exclude the prereleases of 2.0.0
        return any(
            version.is_prerelease
            for requirement in self.declared_requirements()
            for op, version in requirement.constraints
            if not op.startswith("<")
        )

    def filter_versions(self, versions: Iterable[Version]) -> list[Version]:
        """Apply the prerelease policy and the ignore rules."""
        candidates = [v for v in versions if self.wants_prerelease or not v.is_prerelease]
        filtered = [v for v in candidates if not self.is_ignored(v)]
        if candidates and not filtered:
            logger.info("All candidate versions of %s are ignored", self.dependency.name)
        return filtered

    def parse_versions(self, version_strings: Iterable[str]) -> list[Version]:
        """Parse the versions that are valid for this ecosystem, dropping the rest."""
        versions = []
        for version_string in version_strings:
            try:
                versions.append(self.version_class(version_string))
            except BadVersion:
                logger.debug("Skipping unparseable version %r of %s", version_string, self.dependency.name)
        return versions

    def satisfies_requirements(self, version: Version) -> bool:
        """Whether `version` meets every declared requirement (any alternative of each declaration)."""
        for entry in self.dependency.requirements:
            if entry.requirement is None:
                continue
            try:
                alternatives = self.requirement_class.requirements_array(entry.requirement)
            except BadRequirement:
                return False
            if not any(r.satisfied_by(version) for r in alternatives):
                return False
        return True

    # Up to date?

    def up_to_date(self) -> bool:
        """Whether there is nothing newer to move to."""
        if self.dependency.appears_in_lockfile:
            if self.existing_version_is_sha():
                return self._sha_version_up_to_date()
            return self._numeric_version_up_to_date()
        return self._requirements_up_to_date()

    def _sha_version_up_to_date(self) -> bool:
        latest = self.latest_version
        return latest is None or str(latest).startswith(self.dependency.version or "")

    def _numeric_version_up_to_date(self) -> bool:
        latest = self.latest_version
        if latest is None:
            return True
        # a dependency that moved to a git source: nothing to do for its numeric version
        if FULL_SHA_PATTERN.match(str(latest)):
            return True
        current = self.current_version
        if current is None or not isinstance(latest, Version):
            return False
        return latest <= current

    def _version_from_requirements(self) -> Version | None:
        versions = [
            version
            for requirement in self.declared_requirements()
            for op, version in requirement.constraints
            if not op.startswith("<")
        ]
        return max(versions, default=None)

    def _requirements_up_to_date(self) -> bool:
        latest = self.latest_version
        if latest is None:
            return True
        declared = self._version_from_requirements()
        if declared is not None and self.version_class.correct(str(latest)):
            return declared >= self.version_class(str(latest))
        return not self._changed_requirements()

    def _changed_requirements(self) -> list[RequirementEntry]:
        return [r for r in self.updated_requirements if r not in self.dependency.requirements]

    # Can we update?

    def can_update(self, level: UnlockLevel) -> bool:
        """Whether the dependency can be updated while unlocking at most `level`.

        Every stricter level is tried first, so a dependency updatable at one level is updatable at all higher ones.
        """
        if self.up_to_date():
            return False
        return any(self._can_update_at(rung) for rung in level.ladder)

    def _can_update_at(self, level: UnlockLevel) -> bool:
        if level is UnlockLevel.all:
            return self.latest_version_resolvable_with_full_unlock
        if not self.dependency.appears_in_lockfile:
            return level is UnlockLevel.own and self._requirements_can_update()
        if level is UnlockLevel.none:
            new_version = self.latest_resolvable_version_with_no_unlock
        else:
            new_version = self.latest_resolvable_version
        if new_version is None:
            return False
        if self.existing_version_is_sha():
            return not str(new_version).startswith(self.dependency.version or "")
        current = self.current_version
        if current is None or not isinstance(new_version, Version):
            return False
        return new_version > current

    def _requirements_can_update(self) -> bool:
        changed = self._changed_requirements()
        return bool(changed) and all(r.requirement != ":unfixable" for r in changed)

    def updated_dependencies(self, level: UnlockLevel) -> list[Dependency]:
        """Return the dependencies as they are after an update at `level`."""
        if level is UnlockLevel.all:
            return self.updated_dependencies_after_full_unlock
        if level is UnlockLevel.none:
            version = self.latest_resolvable_version_with_no_unlock
            requirements = self.dependency.requirements
        else:
            version = self.latest_resolvable_version
            requirements = tuple(self.updated_requirements)
        new_version = str(version) if version is not None and self.dependency.appears_in_lockfile else None
        return [self.dependency.updated(new_version, requirements)]

    def check(self, max_unlock: UnlockLevel = UnlockLevel.own) -> UpdateCheckResult:
        """Run the whole check, trying each unlock level up to `max_unlock`."""
        latest = None if self.latest_version is None else str(self.latest_version)
        if self.up_to_date():
            logger.info("%s is up to date", self.dependency.name)
            return UpdateCheckResult(CheckStatus.up_to_date, latest_version=latest)
        for level in max_unlock.ladder:
            logger.info("Checking whether %s can be updated with unlock level %s", self.dependency.name, level.value)
            if self._can_update_at(level):
                dependencies = tuple(self.updated_dependencies(level))
                logger.info("%s can be updated to %s (unlock level %s)", self.dependency.name, latest, level.value)
                return UpdateCheckResult(CheckStatus.updatable, level, latest, dependencies)
        logger.info("No resolvable update of %s up to unlock level %s", self.dependency.name, max_unlock.value)
        return UpdateCheckResult(CheckStatus.unresolvable, latest_version=latest)

    # Git dependencies

    def listing_source_url(self) -> str | None:
        """Repository URL of the registry-published package, when known."""
        return None

    @cached_property
    def git_commit_checker(self) -> GitCommitChecker:
        """The git helper for this dependency."""
        return GitCommitChecker(
            self.dependency,
            self.credentials,
            self.ignored_versions,
            version_class=self.version_class,
            requirement_class=self.requirement_class,
            listing_source_url=self.listing_source_url(),
            http=self.http,
        )

    def is_git_dependency(self) -> bool:
        """Whether the dependency is sourced from a git repository."""
        source = self.dependency.source_details()
        return source is not None and source.type is SourceType.git

    def latest_version_for_git_dependency(self, listing_version: Version | None = None) -> Version | str | None:
        """Work out where a git dependency should move to.

        A registry release containing the current ref wins; a dependency tracking a branch follows its head; one pinned
        to a version-shaped ref moves to the commit of the newest such tag; anything else stays where it is.
        """
        checker = self.git_commit_checker
        if listing_version is not None and checker.branch_or_ref_in_release(listing_version):
            return listing_version
        if not checker.pinned():
            return checker.head_commit_for_current_branch()
        if checker.pinned_ref_looks_like_version():
            tag = checker.local_tag_for_latest_version()
            if tag is not None:
                return tag["commit_sha"]
        return self.dependency.version

    def updated_git_requirements(self) -> list[RequirementEntry]:
        """Move version-shaped refs to the newest tag, leaving everything else alone."""
        checker = self.git_commit_checker
        if not checker.pinned_ref_looks_like_version():
            return list(self.dependency.requirements)
        tag = checker.local_tag_for_latest_version()
        if tag is None:
            return list(self.dependency.requirements)
        updated = []
        for entry in self.dependency.requirements:
            if entry.source is None or entry.source.type is not SourceType.git:
                updated.append(entry)
                continue
            updated.append(entry.replace(source=entry.source.replace(ref=tag["tag"])))
        return updated


@dataclass(frozen=True)
class ResolutionAttempt:
    """The outcome of one native resolver run during a full unlock.

    `resolved` holds the updated dependencies on success. On a conflict it is None and `blocking` names the packages
    the resolver said were in the way.
    """

    resolved: list[Dependency] | None
    blocking: frozenset[str] = field(default_factory=frozenset)
    message: str = ""


class ForceUpdater:
    """Widen the unlocked set until the resolver accepts the target version.

    Each attempt receives the names of the packages currently allowed to move. Blocking packages reported by a failed
    attempt are added and the resolver runs again, until it succeeds, reports no new blockers, or the iteration cap is
    reached.
    """

    def __init__(
        self,
        dependency: Dependency,
        target_version: Version | str,
        attempt: Callable[[frozenset[str]], ResolutionAttempt],
        max_iterations: int | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            dependency: The dependency being forced to a new version
            target_version: The version it should reach
            attempt: Runs the resolver with an unlock set
            max_iterations: Cap on the number of resolver runs (from the settings by default)

        """
        self.dependency: Dependency = dependency
        self.target_version: Version | str = target_version
        self.attempt: Callable[[frozenset[str]], ResolutionAttempt] = attempt
        self.max_iterations: int = get_settings().max_unlock_iterations if max_iterations is None else max_iterations

    @cached_property
    def updated_dependencies(self) -> list[Dependency]:
        """Return the updated dependencies, raising `DependencyFileNotResolvable` if none could be found."""
        unlocked = frozenset({self.dependency.name})
        message = f"Could not unlock {self.dependency.name} to {self.target_version}"
        for iteration in range(self.max_iterations):
            logger.debug("Full unlock of %s, attempt %d with %s", self.dependency.name, iteration + 1, sorted(unlocked))
            result = self.attempt(unlocked)
            if result.resolved is not None:
                return result.resolved
            message = result.message or message
            new_blockers = result.blocking - unlocked
            if not new_blockers:
                break
            unlocked |= new_blockers
        raise DependencyFileNotResolvable(message)

    def resolvable(self) -> bool:
        """Whether the target version can be reached at all."""
        try:
            _ = self.updated_dependencies
        except DependencyFileNotResolvable as e:
            logger.info("%s cannot reach %s: %s", self.dependency.name, self.target_version, e)
            return False
        return True
