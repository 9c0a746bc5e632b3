"""The package manager registry and the three operations built on it."""

from __future__ import annotations

import functools
import logging
from abc import ABC
from typing import TYPE_CHECKING, Any

from .models import Dependency, UnlockLevel

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .file_parser import FileParser
    from .file_updater import FileUpdater
    from .models import DependencyFile, RequirementEntry
    from .requirement import Requirement
    from .update_checker import UpdateChecker, UpdateCheckResult
    from .version import Version

logger = logging.getLogger(__name__)


class PackageManager(ABC):
    """The capability bundle of one ecosystem: versions, requirements, parser, checker and updater."""

    name: str
    description: str
    version_class: type[Version]
    requirement_class: type[Requirement]
    file_parser: type[FileParser]
    update_checker: type[UpdateChecker]
    file_updater: type[FileUpdater]
    _instance: PackageManager | None = None

    def __new__(cls, *args: object, **kwargs: object) -> PackageManager:  # noqa: PYI034
        """Create a singleton instance."""
        if not isinstance(cls._instance, cls):
            cls._instance = super().__new__(cls, *args, **kwargs)
        return cls._instance

    def __init_subclass__(cls, **kwargs: object) -> None:
        """Validate subclass configuration."""
        for member in (
            "name",
            "description",
            "version_class",
            "requirement_class",
            "file_parser",
            "update_checker",
            "file_updater",
        ):
            if getattr(cls, member, None) is None:
                error_msg = f"{cls.__name__} must define a `{member}` class member"
                raise TypeError(error_msg)
        package_managers.cache_clear()
        package_manager_by_name.cache_clear()

    def __str__(self) -> str:
        """Return the package manager tag."""
        return self.name

    def parse_files(self, files: Sequence[DependencyFile], **kwargs: Any) -> list[Dependency]:  # noqa: ANN401
        """Parse the dependency files of a project."""
        return self.file_parser(files, **kwargs).parse()

    def check_for_update(
        self,
        dependency: Dependency,
        files: Sequence[DependencyFile],
        *,
        max_unlock: UnlockLevel = UnlockLevel.own,
        **kwargs: Any,  # noqa: ANN401
    ) -> UpdateCheckResult:
        """Run an update check for one dependency."""
        return self.update_checker(dependency, files, **kwargs).check(max_unlock)

    def apply_updates(
        self,
        dependencies: Sequence[Dependency],
        files: Sequence[DependencyFile],
        **kwargs: Any,  # noqa: ANN401
    ) -> list[DependencyFile]:
        """Rewrite the files for already-updated dependencies, returning only the files that changed."""
        return self.file_updater(dependencies, files, **kwargs).updated_dependency_files()


@functools.lru_cache
def package_managers() -> frozenset[PackageManager]:
    """Get collection of all the registered package managers."""
    return frozenset(
        cls()  # type: ignore[abstract]
        for cls in PackageManager.__subclasses__()
    )


@functools.lru_cache
def package_manager_by_name(name: str) -> PackageManager:
    """Find a package manager by its tag. The result is cached."""
    for instance in package_managers():
        if instance.name == name:
            return instance
    raise KeyError(name)


def is_known_package_manager(name: str) -> bool:
    """Check if name is a registered package manager tag."""
    try:
        package_manager_by_name(name)
    except KeyError:
        return False
    else:
        return True


def parse_files(name: str, files: Sequence[DependencyFile], **kwargs: Any) -> list[Dependency]:  # noqa: ANN401
    """Parse `files` with the package manager tagged `name`."""
    return package_manager_by_name(name).parse_files(files, **kwargs)


def check_for_update(
    name: str,
    dependency: Dependency,
    files: Sequence[DependencyFile],
    *,
    max_unlock: UnlockLevel = UnlockLevel.own,
    **kwargs: Any,  # noqa: ANN401
) -> UpdateCheckResult:
    """Check `dependency` for an update with the package manager tagged `name`."""
    return package_manager_by_name(name).check_for_update(dependency, files, max_unlock=max_unlock, **kwargs)


def apply_update(  # noqa: PLR0913
    name: str,
    dependency: Dependency,
    version: str | None,
    requirements: Sequence[RequirementEntry],
    files: Sequence[DependencyFile],
    **kwargs: Any,  # noqa: ANN401
) -> list[DependencyFile]:
    """Move `dependency` to `version` and `requirements`, returning the full file set with the changes applied.

    Asking for exactly what the dependency already has is a no-op that returns the files unchanged. Any other request
    that fails to change a file raises a `FileUpdateError`.
    """
    if version == dependency.version and set(requirements) == set(dependency.requirements):
        logger.debug("Nothing to do for %s", dependency.name)
        return list(files)
    updated = dependency.updated(version, requirements)
    return merge_files(files, package_manager_by_name(name).apply_updates([updated], files, **kwargs))


def merge_files(files: Sequence[DependencyFile], updated: Sequence[DependencyFile]) -> list[DependencyFile]:
    """Replace files in `files` by their updated versions (matched on directory and name)."""
    replacements = {(f.directory, f.name): f for f in updated}
    merged = [replacements.pop((f.directory, f.name), f) for f in files]
    merged.extend(replacements.values())
    return merged
