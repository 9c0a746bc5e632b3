"""Turning raw dependency files into `Dependency` values."""

from __future__ import annotations

import fnmatch
import json
import logging
import posixpath
import tomllib
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

from .config import get_settings
from .errors import DependencyFileNotParseable, RequiredFileNotFound
from .http_client import HttpClient
from .sandbox import credentials_from

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from .config import Settings
    from .models import Dependency, DependencyFile
    from .sandbox import Credential

logger = logging.getLogger(__name__)


class FileParser(ABC):
    """Parses the dependency files of one package manager."""

    # Glob patterns (matched against file names) of the files this parser reads
    filename_patterns: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        dependency_files: Sequence[DependencyFile],
        *,
        credentials: Iterable[Credential | Mapping[str, Any]] = (),
        settings: Settings | None = None,
        http: HttpClient | None = None,
    ) -> None:
        """Initialize the parser with the files fetched for one directory."""
        self.dependency_files: list[DependencyFile] = list(dependency_files)
        self.credentials: tuple[Credential, ...] = credentials_from(credentials)
        self.settings: Settings = settings or get_settings()
        self._http: HttpClient | None = http

    @property
    def http(self) -> HttpClient:
        """HTTP client, for the few parsers that need a registry (created lazily)."""
        if self._http is None:
            self._http = HttpClient(self.settings)
        return self._http

    def parse(self) -> list[Dependency]:
        """Check the required files are present, then parse them."""
        self.check_required_files()
        dependencies = self._parse()
        logger.debug("Parsed %d dependencies from %d files", len(dependencies), len(self.dependency_files))
        return dependencies

    @abstractmethod
    def _parse(self) -> list[Dependency]:
        raise NotImplementedError

    @abstractmethod
    def check_required_files(self) -> None:
        """Raise `RequiredFileNotFound` unless the files needed to parse are present."""
        raise NotImplementedError

    @classmethod
    def matches(cls, filename: str) -> bool:
        """Whether this parser reads files with the given name."""
        basename = posixpath.basename(filename)
        return any(fnmatch.fnmatch(basename, pattern) for pattern in cls.filename_patterns)

    def get_original_file(self, name: str) -> DependencyFile | None:
        """Return the file with the given name, if it was provided."""
        return next((f for f in self.dependency_files if f.name == name), None)

    def require_file(self, name: str) -> DependencyFile:
        """Return the file with the given name, raising `RequiredFileNotFound` if it is missing."""
        file = self.get_original_file(name)
        if file is None:
            raise RequiredFileNotFound(name)
        return file

    def files_matching(self, *patterns: str) -> list[DependencyFile]:
        """Return the files whose base name matches any of the glob patterns."""
        return [
            f
            for f in self.dependency_files
            if any(fnmatch.fnmatch(posixpath.basename(f.name), pattern) for pattern in patterns)
        ]

    @staticmethod
    def load_json(file: DependencyFile) -> Any:  # noqa: ANN401
        """Parse a JSON file, raising `DependencyFileNotParseable` with its path on failure."""
        try:
            return json.loads(file.content or "")
        except json.JSONDecodeError as e:
            msg = f"{file.path} is not valid JSON: {e!s}"
            raise DependencyFileNotParseable(file.path, msg) from e

    @staticmethod
    def load_toml(file: DependencyFile) -> dict[str, Any]:
        """Parse a TOML file, raising `DependencyFileNotParseable` with its path on failure."""
        try:
            return tomllib.loads(file.content or "")
        except tomllib.TOMLDecodeError as e:
            msg = f"{file.path} is not valid TOML: {e!s}"
            raise DependencyFileNotParseable(file.path, msg) from e

    @staticmethod
    def load_xml(file: DependencyFile) -> ET.Element:
        """Parse an XML file, raising `DependencyFileNotParseable` with its path on failure."""
        try:
            return ET.fromstring(file.content or "")  # noqa: S314
        except ET.ParseError as e:
            msg = f"{file.path} is not valid XML: {e!s}"
            raise DependencyFileNotParseable(file.path, msg) from e
