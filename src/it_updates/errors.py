"""Typed errors raised while parsing, checking and updating dependency files."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


class UpdaterError(Exception):
    """Base class for every error raised by it-updates."""


class BadVersion(ValueError):  # noqa: N818
    """Raised when a string cannot be parsed as a version."""


class BadRequirement(ValueError):  # noqa: N818
    """Raised when a string cannot be parsed as a requirement."""


class DependencyFileNotFound(UpdaterError):  # noqa: N818
    """A dependency file that should be present is missing."""

    def __init__(self, file_path: str, msg: str | None = None) -> None:
        """Initialize with the path of the missing file."""
        self.file_path: str = file_path
        super().__init__(msg or f"{file_path} not found")


class RequiredFileNotFound(DependencyFileNotFound):
    """A file the parser cannot work without was not part of the given file set."""


class DependencyFileNotParseable(UpdaterError):  # noqa: N818
    """A manifest or lockfile does not parse under its ecosystem's grammar."""

    def __init__(self, file_path: str, msg: str | None = None) -> None:
        """Initialize with the path of the offending file."""
        self.file_path: str = file_path
        super().__init__(msg or f"{file_path} not parseable")


class DependencyFileNotEvaluatable(UpdaterError):  # noqa: N818
    """The dependency files are structurally ambiguous and cannot be evaluated."""


class DependencyFileNotResolvable(UpdaterError):  # noqa: N818
    """The native resolver cannot satisfy the dependency constraints."""


class PathDependenciesNotReachable(UpdaterError):  # noqa: N818
    """One or more path dependencies could not be fetched."""

    def __init__(self, dependencies: Iterable[str]) -> None:
        """Initialize with every unreachable path dependency."""
        self.dependencies: list[str] = list(dependencies)
        super().__init__(f"The following path based dependencies could not be retrieved: {', '.join(self.dependencies)}")


class PrivateSourceAuthenticationFailure(UpdaterError):  # noqa: N818
    """A private registry refused our credentials (or we had none)."""

    def __init__(self, source: str) -> None:
        """Initialize with the offending source URL or hostname."""
        self.source: str = source
        super().__init__(f"The following source could not be reached as it requires authentication: {source}")


class PrivateSourceTimedOut(UpdaterError):  # noqa: N818
    """A private registry did not answer in time."""

    def __init__(self, source: str) -> None:
        """Initialize with the offending source URL or hostname."""
        self.source: str = source
        super().__init__(f"The following source timed out: {source}")


class GitDependencyReferenceNotFound(UpdaterError):  # noqa: N818
    """The ref or branch a git dependency is pinned to does not exist upstream."""

    def __init__(self, dependency: str) -> None:
        """Initialize with the name of the dependency."""
        self.dependency: str = dependency
        super().__init__(f"The branch or reference specified for {dependency} could not be retrieved")


class GitDependenciesNotReachable(UpdaterError):  # noqa: N818
    """One or more git repositories could not be reached."""

    def __init__(self, urls: Iterable[str]) -> None:
        """Initialize with the unreachable repository URLs."""
        self.urls: list[str] = list(urls)
        super().__init__(f"The following git URLs could not be retrieved: {', '.join(self.urls)}")


class HelperSubprocessFailed(UpdaterError):  # noqa: N818
    """A native helper or package manager subprocess failed."""

    def __init__(
        self,
        message: str,
        command: Sequence[str] | str,
        output: str = "",
        error_class: str | None = None,
    ) -> None:
        """Initialize a subprocess failure.

        Args:
            message: The error message reported by the subprocess (or by us)
            command: The command that was run
            output: The raw output of the command, kept for diagnostics
            error_class: The error kind reported by the helper, if any

        """
        self.command: str = command if isinstance(command, str) else " ".join(command)
        self.output: str = output
        self.error_class: str | None = error_class
        super().__init__(message)


class ChildProcessFailed(UpdaterError):  # noqa: N818
    """A typed error returned over the helper boundary."""

    def __init__(self, error_class: str, error_message: str) -> None:
        """Initialize with the error kind and message reported by the child."""
        self.error_class: str = error_class
        self.error_message: str = error_message
        super().__init__(f"{error_class} with message: {error_message}")


class FileUpdateError(UpdaterError):
    """Raised when updated file contents cannot be produced."""


class ContentUnchanged(FileUpdateError):  # noqa: N818
    """A substitution that should have changed a file left it byte-identical."""

    def __init__(self, file_path: str, msg: str | None = None) -> None:
        """Initialize with the path of the file that did not change."""
        self.file_path: str = file_path
        super().__init__(msg or f"Content did not change! ({file_path})")
