"""Command-line interface for it-updates."""

from __future__ import annotations

import json
import logging
import sys
from collections import defaultdict
from typing import TYPE_CHECKING

from tqdm import tqdm

from .config import CliSettings
from .errors import UpdaterError
from .it_updates import version as it_updates_version
from .logger import setup_logger
from .models import DependencyFile
from .package_manager import (
    check_for_update,
    is_known_package_manager,
    merge_files,
    package_manager_by_name,
    package_managers,
    parse_files,
)
from .update_checker import CheckStatus

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from .package_manager import PackageManager

logger = logging.getLogger(__name__)

# Directories that hold installed or vendored packages rather than the project's own files
SKIPPED_DIRECTORIES = frozenset({".git", "node_modules", "vendor", "target", ".venv", "__pycache__"})


def read_dependency_files(root: Path, package_manager: PackageManager) -> list[DependencyFile]:
    """Collect the files under `root` that the package manager's parser reads."""
    files = []
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if any(part in SKIPPED_DIRECTORIES for part in relative.parts[:-1]) or not path.is_file():
            continue
        if package_manager.file_parser.matches(path.name):
            files.append(DependencyFile(relative.as_posix(), path.read_text()))
    return files


def write_dependency_files(root: Path, files: Iterable[DependencyFile]) -> None:
    """Write updated files back under `root`."""
    for file in files:
        if file.content is None:
            continue
        target = root / file.name
        logger.info("Writing %s", target)
        target.write_text(file.content)


def parse_ignores(ignores: Iterable[str]) -> dict[str, list[str]]:
    """Parse `NAME:REQUIREMENT` ignore options into requirement lists per dependency."""
    parsed: dict[str, list[str]] = defaultdict(list)
    for ignore in ignores:
        name, sep, requirement = ignore.rpartition(":")
        if not sep or not name:
            msg = f"Invalid ignore rule {ignore!r}; expected NAME:REQUIREMENT"
            raise ValueError(msg)
        parsed[name].append(requirement)
    return parsed


def main() -> None:  # noqa: C901, PLR0911, PLR0912
    settings = CliSettings()
    setup_logger(settings.log_level)

    logger.debug("Starting it-updates with settings: %s", settings)

    if settings.version:
        logger.info("it-updates version %s", it_updates_version())
        return

    # List the available package managers
    if settings.list:
        for package_manager in sorted(package_managers(), key=lambda p: p.name):
            logger.info("%s: %s", package_manager.name, package_manager.description)
        return

    if not is_known_package_manager(settings.package_manager):
        logger.error("Unknown package manager %r; try --list", settings.package_manager)
        return
    package_manager = package_manager_by_name(settings.package_manager)
    target = settings.target.absolute()

    try:
        ignores = parse_ignores(settings.ignore)
    except ValueError as e:
        logger.exception(str(e))
        return

    files = read_dependency_files(target, package_manager)
    logger.info("Read %d %s files from %s", len(files), package_manager.name, target)
    try:
        dependencies = parse_files(package_manager.name, files)
    except UpdaterError:
        logger.exception("Could not parse the dependency files in %s", target)
        return
    for name in sorted(set(ignores) - {d.name for d in dependencies}):
        logger.warning("Ignore rule for %r matches no %s dependency", name, package_manager.name)
    if settings.dependency:
        dependencies = [d for d in dependencies if d.name in settings.dependency]

    if not settings.check and not settings.write:
        sys.stdout.write(json.dumps([d.to_obj() for d in dependencies], indent=4) + "\n")
        return

    results = {}
    for dependency in tqdm(dependencies, desc="Checking", unit="dependency", leave=False):
        try:
            result = check_for_update(
                package_manager.name,
                dependency,
                files,
                max_unlock=settings.max_unlock,
                ignored_versions=ignores.get(dependency.name, ()),
            )
        except UpdaterError as e:
            logger.warning("Could not check %s: %s", dependency.name, e)
            results[dependency.name] = {"status": "error", "error": str(e)}
            continue
        results[dependency.name] = result.to_obj()
        if not settings.write or result.status is not CheckStatus.updatable:
            continue
        try:
            updated = package_manager.apply_updates(list(result.dependencies), files)
        except UpdaterError as e:
            logger.warning("Could not update %s: %s", dependency.name, e)
            continue
        write_dependency_files(target, updated)
        files = merge_files(files, updated)

    sys.stdout.write(json.dumps(results, indent=4) + "\n")
