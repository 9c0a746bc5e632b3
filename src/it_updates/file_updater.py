"""Rewriting dependency files for updated dependencies."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from .config import get_settings
from .errors import ContentUnchanged, FileUpdateError
from .sandbox import credentials_from

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from .config import Settings
    from .models import Dependency, DependencyFile
    from .sandbox import Credential, ExternalResolver, Runner

logger = logging.getLogger(__name__)


class FileUpdater(ABC):
    """Produces new contents for the files affected by a set of updated dependencies.

    Input files are never modified; every changed file is a new `DependencyFile`. Only files named by a dependency's
    changed requirements (and the lockfiles that follow them) are touched.
    """

    def __init__(  # noqa: PLR0913
        self,
        dependencies: Sequence[Dependency],
        dependency_files: Sequence[DependencyFile],
        *,
        credentials: Iterable[Credential | Mapping[str, Any]] = (),
        settings: Settings | None = None,
        resolver: ExternalResolver | None = None,
        runner: Runner | None = None,
    ) -> None:
        """Initialize the updater.

        Args:
            dependencies: The updated dependencies (carrying their previous version and requirements)
            dependency_files: Every dependency file of the project
            credentials: Credentials for private sources, used when a lockfile has to be regenerated
            settings: Settings to use (process-wide settings by default)
            resolver: External resolver to use instead of the ecosystem's native helper
            runner: Runner for native package manager commands

        """
        self.dependencies: list[Dependency] = list(dependencies)
        self.dependency_files: list[DependencyFile] = list(dependency_files)
        self.credentials: tuple[Credential, ...] = credentials_from(credentials)
        self.settings: Settings = settings or get_settings()
        self.resolver: ExternalResolver | None = resolver
        self.runner: Runner | None = runner

    def updated_dependency_files(self) -> list[DependencyFile]:
        """Return the new contents of every file that changed.

        Raises:
            FileUpdateError: if nothing changed at all
            ContentUnchanged: if a file that should change came out identical

        """
        updated = self._updated_dependency_files()
        if not updated:
            msg = "No files have changed!"
            raise FileUpdateError(msg)
        logger.debug("Updated %s", ", ".join(f.path for f in updated))
        return updated

    @abstractmethod
    def _updated_dependency_files(self) -> list[DependencyFile]:
        raise NotImplementedError

    def get_original_file(self, name: str) -> DependencyFile | None:
        """Return the file with the given name, if it was provided."""
        return next((f for f in self.dependency_files if f.name == name), None)

    def file_changed(self, file: DependencyFile) -> bool:
        """Whether any updated dependency changed a declaration in `file`."""
        return any(file.name in dependency.changed_files() for dependency in self.dependencies)

    def changed_manifests(self, files: Iterable[DependencyFile]) -> list[DependencyFile]:
        """The non-support files among `files` that need rewriting."""
        return [f for f in files if not f.support_file and self.file_changed(f)]

    @staticmethod
    def updated_file(file: DependencyFile, content: str) -> DependencyFile:
        """Return `file` with new content, raising `ContentUnchanged` if the content is the same."""
        if content == file.content:
            raise ContentUnchanged(file.path)
        return file.with_content(content)
