"""Cargo: Cargo.toml and Cargo.lock."""

from __future__ import annotations

import posixpath
import re
import tomllib
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING, Any

from .errors import (
    BadRequirement,
    DependencyFileNotEvaluatable,
    DependencyFileNotResolvable,
    HelperSubprocessFailed,
    RequiredFileNotFound,
)
from .file_parser import FileParser
from .file_updater import FileUpdater
from .models import Dependency, DependencySet, RequirementEntry, Source, SourceType
from .package_manager import PackageManager
from .requirement import Requirement, raise_upper_bounds, update_version_string
from .sandbox import (
    check_path_dependencies,
    git_environment,
    in_a_temporary_directory,
    run_shell_command,
    write_dependency_files,
)
from .update_checker import UpdateChecker
from .version import SemverVersion, Version

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

    from .models import DependencyFile

log = getLogger(__name__)

DEPENDENCY_TYPES = ("dependencies", "dev-dependencies", "build-dependencies")
CRATES_IO_API = "https://crates.io/api/v1/crates"
UNRESOLVABLE_MESSAGES = (
    "failed to select a version",
    "no matching package named",
    "failed to parse manifest",
    "did not match any packages",
    "is ambiguous",
)


class CargoRequirement(Requirement):
    """A Cargo version requirement. A bare version means the same as a caret requirement."""

    version_class = SemverVersion
    OR_SEPARATOR = None

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Expand Cargo shorthand into plain constraints."""
        constraint = constraint.strip()
        if constraint in ("", "*"):
            return [(">=", "0")]
        if constraint.startswith("^"):
            return self.caret_constraints(constraint)
        if constraint.startswith("~"):
            return self.tilde_constraints(constraint)
        match = re.match(r"^(?P<op>[<>]=?|=)?\s*(?P<version>.*)$", constraint)
        assert match is not None  # noqa: S101
        op, version = match.group("op") or "", match.group("version")
        if self.is_wildcard(version):
            if op in ("", "="):
                return self.wildcard_constraints(version)
            version = re.sub(r"(?:\.[xX*])+$", "", version)
        if not op:
            return self.caret_constraints(version)
        return super().expand_constraint(f"{op}{version}")


def declaration_requirement(declaration: str | dict[str, Any]) -> str | None:
    """The version requirement of a dependency declaration, if it has one."""
    if isinstance(declaration, str):
        return declaration or None
    if not isinstance(declaration, dict):
        msg = f"Unexpected dependency declaration: {declaration!r}"
        raise DependencyFileNotEvaluatable(msg)
    return declaration.get("version")


def declaration_source(declaration: str | dict[str, Any]) -> Source | None:
    """The git or path source of a dependency declaration, if it has one."""
    if isinstance(declaration, str):
        return None
    if declaration.get("git"):
        return Source(
            SourceType.git,
            url=declaration["git"],
            branch=declaration.get("branch"),
            ref=declaration.get("tag") or declaration.get("rev"),
        )
    if declaration.get("path"):
        return Source(SourceType.path, url=declaration["path"])
    return None


def locked_version(package: dict[str, Any]) -> str:
    """The version of a Cargo.lock package; the commit for git sources."""
    source = package.get("source") or ""
    if source.startswith("git+"):
        return source.split("#")[-1]
    return package["version"]


def dependency_tables(manifest: dict[str, Any]) -> Iterable[tuple[str, dict[str, Any]]]:
    """Yield `(dependency type, table)` for the manifest's own and its target-specific dependency tables."""
    for dependency_type in DEPENDENCY_TYPES:
        yield dependency_type, manifest.get(dependency_type) or {}
    for target in (manifest.get("target") or {}).values():
        for dependency_type in DEPENDENCY_TYPES:
            yield dependency_type, target.get(dependency_type) or {}


def path_declarations(files: Iterable[DependencyFile]) -> list[tuple[str, str]]:
    """`(manifest name, path)` for every path dependency and path patch of the given Cargo.toml files."""
    declarations = []
    for file in files:
        if posixpath.basename(file.name) != "Cargo.toml" or file.content is None:
            continue
        manifest = FileParser.load_toml(file)
        tables = [table for _, table in dependency_tables(manifest)]
        tables.extend((manifest.get("patch") or {}).values())
        declarations.extend(
            (file.name, declaration["path"])
            for table in tables
            for declaration in table.values()
            if isinstance(declaration, dict) and declaration.get("path")
        )
    return declarations


class CargoFileParser(FileParser):
    """Parses Cargo.toml manifests and Cargo.lock."""

    filename_patterns = ("Cargo.toml", "Cargo.lock")

    def check_required_files(self) -> None:
        """A root Cargo.toml is required."""
        self.require_file("Cargo.toml")

    @cached_property
    def manifest_files(self) -> list[DependencyFile]:
        """Every Cargo.toml, except those only present as path dependencies."""
        return [
            f
            for f in self.dependency_files
            if posixpath.basename(f.name) == "Cargo.toml" and f.type != "path_dependency" and not f.support_file
        ]

    @cached_property
    def parsed(self) -> dict[str, dict[str, Any]]:
        """Parsed TOML, by file name."""
        return {f.name: self.load_toml(f) for f in self.dependency_files if f.name.endswith((".toml", ".lock"))}

    @property
    def lockfile_packages(self) -> list[dict[str, Any]] | None:
        """The packages of Cargo.lock, if there is one."""
        if self.get_original_file("Cargo.lock") is None:
            return None
        return self.parsed["Cargo.lock"].get("package") or []

    def _parse(self) -> list[Dependency]:
        self._check_workspace_root()
        dependencies = DependencySet()
        dependencies += self._manifest_dependencies()
        dependencies += self._lockfile_dependencies()
        patched = self._patched_dependencies()
        parsed = []
        for dependency in dependencies:
            if dependency.name in patched:
                log.debug("Skipping patched dependency %s", dependency.name)
                continue
            if len({None if r.source is None else r.source.type for r in dependency.requirements}) > 1:
                log.debug("Skipping %s: declared with more than one kind of source", dependency.name)
                continue
            parsed.append(dependency)
        return parsed

    def _check_workspace_root(self) -> None:
        cargo_toml = self.require_file("Cargo.toml")
        if (self.parsed[cargo_toml.name].get("package") or {}).get("workspace"):
            msg = "This project is part of a Rust workspace but is not the workspace root."
            if cargo_toml.directory != "/":
                msg += f" Point the update at the workspace root instead of {cargo_toml.directory}."
            raise DependencyFileNotEvaluatable(msg)

    def _manifest_dependencies(self) -> list[Dependency]:
        dependencies = []
        for file in self.manifest_files:
            for dependency_type, table in dependency_tables(self.parsed[file.name]):
                for name, declaration in table.items():
                    requirement = declaration_requirement(declaration)
                    version = self._version_from_lockfile(name, requirement)
                    if self.lockfile_packages is not None and version is None:
                        continue
                    entry = RequirementEntry(
                        file=file.name,
                        requirement=requirement,
                        groups=(dependency_type,),
                        source=declaration_source(declaration),
                    )
                    dependencies.append(Dependency(name, version, [entry], Cargo.name))
        return dependencies

    def _lockfile_dependencies(self) -> list[Dependency]:
        return [
            Dependency(package["name"], locked_version(package), (), Cargo.name)
            for package in self.lockfile_packages or []
            if package.get("source")
        ]

    def _patched_dependencies(self) -> set[str]:
        patches = self.parsed["Cargo.toml"].get("patch") or {}
        return {name for table in patches.values() for name in table}

    def _version_from_lockfile(self, name: str, requirement: str | None) -> str | None:
        if self.lockfile_packages is None:
            return None
        candidates = [p for p in self.lockfile_packages if p.get("name") == name]
        if requirement is not None:
            try:
                parsed = CargoRequirement(requirement)
            except BadRequirement:
                return None
            candidates = [p for p in candidates if SemverVersion.correct(p["version"]) and parsed.satisfied_by(p["version"])]
        candidates = [p for p in candidates if SemverVersion.correct(p["version"])]
        if not candidates:
            return None
        return locked_version(max(candidates, key=lambda p: SemverVersion(p["version"])))


class CargoRequirementsUpdater:
    """Rewrites Cargo requirements so they admit a new version."""

    def __init__(self, requirements: Iterable[RequirementEntry], latest_resolvable_version: Version | None) -> None:
        """Initialize with the current entries and the version they must admit."""
        self.requirements: list[RequirementEntry] = list(requirements)
        self.version: Version | None = latest_resolvable_version

    def updated_requirements(self) -> list[RequirementEntry]:
        """Return the rewritten entries."""
        if self.version is None:
            return self.requirements
        return [self._updated(entry) for entry in self.requirements]

    def _updated(self, entry: RequirementEntry) -> RequirementEntry:
        assert self.version is not None  # noqa: S101
        requirement = entry.requirement
        if requirement is None or entry.source is not None:
            return entry
        try:
            if CargoRequirement(requirement).satisfied_by(self.version):
                return entry
        except BadRequirement:
            return entry
        if re.search(r"<=?\s*\d", requirement):
            updated = raise_upper_bounds(requirement, self.version)
        else:
            updated = update_version_string(requirement, self.version)
        try:
            satisfied = CargoRequirement(updated).satisfied_by(self.version)
        except BadRequirement:
            satisfied = False
        return entry.replace(requirement=updated if satisfied else ":unfixable")


def update_cargo_toml(content: str, dependency: Dependency, file_name: str) -> str:
    """Rewrite the declarations of `dependency` in one Cargo.toml, in any of its inline or table forms."""
    previous = [r for r in dependency.previous_requirements or () if r.file == file_name]
    for new in dependency.requirements:
        if new.file != file_name:
            continue
        old = next((r for r in previous if r.groups == new.groups), None)
        if old is None or old == new:
            continue
        if old.requirement and new.requirement and old.requirement != new.requirement:
            content = _replace_declaration_value(content, dependency.name, "version", old.requirement, new.requirement)
        old_ref = old.source.ref if old.source else None
        new_ref = new.source.ref if new.source else None
        if old_ref and new_ref and old_ref != new_ref:
            key = "tag" if re.search(rf"\btag\s*=\s*[\"']{re.escape(old_ref)}[\"']", content) else "rev"
            content = _replace_declaration_value(content, dependency.name, key, old_ref, new_ref)
    return content


def _replace_declaration_value(content: str, name: str, key: str, old: str, new: str) -> str:
    section: str | None = None
    lines = []
    quoted_old = rf"[\"']{re.escape(old)}[\"']"
    for line in content.splitlines(keepends=True):
        header = re.match(r"^\s*\[(?P<section>[^\[\]]+)\]\s*(?:#.*)?$", line)
        if header is not None:
            section = header.group("section").strip()
            lines.append(line)
            continue
        dependency_table = section is not None and re.search(rf"(?:^|\.)(?:{'|'.join(DEPENDENCY_TYPES)})\.[\"']?{re.escape(name)}[\"']?$", section)
        dependency_section = section is not None and re.search(rf"(?:^|\.)(?:{'|'.join(DEPENDENCY_TYPES)})$", section)
        if dependency_table:
            line = re.sub(rf"^(\s*{key}\s*=\s*){quoted_old}", rf'\g<1>"{new}"', line)
        elif dependency_section:
            declaration = rf"^(\s*[\"']?{re.escape(name)}[\"']?\s*=\s*"
            if key == "version":
                line = re.sub(rf"{declaration}){quoted_old}", rf'\g<1>"{new}"', line)
            line = re.sub(rf"{declaration}\{{.*?\b{key}\s*=\s*){quoted_old}", rf'\g<1>"{new}"', line)
        lines.append(line)
    return "".join(lines)


class CargoCommandsMixin:
    """Runs cargo in a sandbox."""

    settings: Any
    credentials: Any
    runner: Any

    def _run_cargo(self, files: Sequence[DependencyFile], *args: str) -> dict[str, Any]:
        """Write `files` to a sandbox, run cargo with `args` and return the resulting Cargo.lock."""
        check_path_dependencies(path_declarations(files), files, "Cargo.toml")
        with in_a_temporary_directory() as sandbox:
            write_dependency_files(sandbox, files)
            self._write_dummy_sources(sandbox, files)
            env = {"CARGO_NET_GIT_FETCH_WITH_CLI": "true", **git_environment(self.credentials, sandbox)}
            command = [*self.settings.helper_command(self.settings.cargo), *args]
            try:
                run_shell_command(command, cwd=sandbox, env=env, runner=self.runner)
            except HelperSubprocessFailed as e:
                if any(m in str(e) or m in e.output for m in UNRESOLVABLE_MESSAGES):
                    raise DependencyFileNotResolvable(str(e)) from e
                raise
            return tomllib.loads((sandbox / "Cargo.lock").read_text())

    @staticmethod
    def _write_dummy_sources(sandbox: Path, files: Sequence[DependencyFile]) -> None:
        """Cargo refuses manifests without targets, so give every crate an empty library."""
        for file in files:
            if posixpath.basename(file.name) == "Cargo.toml":
                source_dir = sandbox / posixpath.dirname(file.name) / "src"
                source_dir.mkdir(parents=True, exist_ok=True)
                for target in ("lib.rs", "main.rs"):
                    if not (source_dir / target).exists():
                        (source_dir / target).write_text("fn main() {}\n" if target == "main.rs" else "")


class CargoUpdateChecker(CargoCommandsMixin, UpdateChecker):
    """Update checks against the crates.io API."""

    version_class = SemverVersion
    requirement_class = CargoRequirement

    @cached_property
    def crate_details(self) -> dict[str, Any] | None:
        """The crates.io document of the crate."""
        response = self.http.get(f"{CRATES_IO_API}/{self.dependency.name}", source="crates.io")
        if response.status_code == 404:  # noqa: PLR2004
            return None
        response.raise_for_status()
        return response.json()

    @cached_property
    def available_versions(self) -> list[Version]:
        """Non-yanked releases, filtered, newest first."""
        details = self.crate_details or {}
        versions = [v["num"] for v in details.get("versions") or [] if not v.get("yanked")]
        return sorted(self.filter_versions(self.parse_versions(versions)), reverse=True)

    def listing_source_url(self) -> str | None:
        """The repository URL published on crates.io."""
        if self.crate_details is None:
            return None
        return (self.crate_details.get("crate") or {}).get("repository")

    def _latest_version(self) -> Version | str | None:
        source = self.dependency.source_details()
        if source is not None and source.type is SourceType.path:
            return None
        if self.is_git_dependency():
            return self.latest_version_for_git_dependency()
        return self.available_versions[0] if self.available_versions else None

    def _lockfile(self) -> DependencyFile | None:
        return next((f for f in self.dependency_files if f.name == "Cargo.lock"), None)

    def _latest_resolvable_version(self) -> Version | str | None:
        latest = self.latest_version
        if self.is_git_dependency() or not isinstance(latest, Version) or self._lockfile() is None:
            return latest
        current = self.current_version
        unlocked = f">={current}, <={latest}" if current is not None else f"<={latest}"
        files = self._files_with_requirement(unlocked)
        package_id = f"{self.dependency.name}:{self.dependency.version}"
        try:
            self._run_cargo(files, "update", "-p", package_id, "--precise", str(latest))
        except DependencyFileNotResolvable as e:
            log.info("%s cannot be moved straight to %s: %s", self.dependency.name, latest, e)
            return self._resolved_version(self._run_cargo(files, "update", "-p", package_id))
        return latest

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        latest = self.latest_version
        if self.is_git_dependency():
            # a pinned ref only moves by rewriting the manifest
            return None if self.git_commit_checker.pinned() else latest
        if not isinstance(latest, Version):
            return None
        if self._lockfile() is None or self.dependency.version is None:
            return next((v for v in self.available_versions if self.satisfies_requirements(v)), None)
        try:
            lock = self._run_cargo(self.dependency_files, "update", "-p", f"{self.dependency.name}:{self.dependency.version}")
        except DependencyFileNotResolvable as e:
            log.info("%s cannot be resolved without unlocking: %s", self.dependency.name, e)
            return None
        return self._resolved_version(lock)

    def _resolved_version(self, lock: dict[str, Any]) -> Version | None:
        versions = [
            SemverVersion(p["version"])
            for p in lock.get("package") or []
            if p.get("name") == self.dependency.name and SemverVersion.correct(p.get("version"))
        ]
        return max(versions, default=None)

    def _files_with_requirement(self, requirement: str) -> list[DependencyFile]:
        requirements = [r.replace(requirement=requirement) if r.requirement else r for r in self.dependency.requirements]
        unlocked = self.dependency.updated(self.dependency.version, requirements)
        return [
            f.with_content(update_cargo_toml(f.content or "", unlocked, f.name)) if f.name in unlocked.changed_files() else f
            for f in self.dependency_files
        ]

    def _updated_requirements(self) -> list[RequirementEntry]:
        if self.is_git_dependency():
            return self.updated_git_requirements()
        version = self.latest_resolvable_version
        return CargoRequirementsUpdater(
            self.dependency.requirements,
            version if isinstance(version, Version) else None,
        ).updated_requirements()


class CargoFileUpdater(CargoCommandsMixin, FileUpdater):
    """Rewrites Cargo.toml declarations and regenerates Cargo.lock with cargo."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        if self.get_original_file("Cargo.toml") is None:
            raise RequiredFileNotFound("Cargo.toml")
        updated_files: list[DependencyFile] = []
        manifests = [f for f in self.dependency_files if posixpath.basename(f.name) == "Cargo.toml"]
        for file in self.changed_manifests(manifests):
            content = file.content or ""
            for dependency in self.dependencies:
                content = update_cargo_toml(content, dependency, file.name)
            updated_files.append(self.updated_file(file, content))

        lockfile = self.get_original_file("Cargo.lock")
        if lockfile is not None:
            replacements = {f.name: f for f in updated_files}
            files = [replacements.get(f.name, f) for f in self.dependency_files]
            content = self._updated_lockfile_content(files)
            if content != lockfile.content:
                updated_files.append(lockfile.with_content(content))
            else:
                log.debug("%s did not change", lockfile.path)
        return updated_files

    def _updated_lockfile_content(self, files: Sequence[DependencyFile]) -> str:
        check_path_dependencies(path_declarations(files), files, "Cargo.toml")
        with in_a_temporary_directory() as sandbox:
            write_dependency_files(sandbox, files)
            self._write_dummy_sources(sandbox, files)
            env = {"CARGO_NET_GIT_FETCH_WITH_CLI": "true", **git_environment(self.credentials, sandbox)}
            cargo = self.settings.helper_command(self.settings.cargo)
            for dependency in self.dependencies:
                command = [*cargo, "update", "-p"]
                if dependency.previous_version:
                    command.append(f"{dependency.name}:{dependency.previous_version}")
                else:
                    command.append(dependency.name)
                if dependency.version:
                    command.extend(["--precise", dependency.version])
                try:
                    run_shell_command(command, cwd=sandbox, env=env, runner=self.runner)
                except HelperSubprocessFailed as e:
                    if any(m in str(e) or m in e.output for m in UNRESOLVABLE_MESSAGES):
                        raise DependencyFileNotResolvable(str(e)) from e
                    raise
            return (sandbox / "Cargo.lock").read_text()


class Cargo(PackageManager):
    """Cargo projects."""

    name = "cargo"
    description = "updates Rust dependencies declared in Cargo.toml, locked in Cargo.lock"
    version_class = SemverVersion
    requirement_class = CargoRequirement
    file_parser = CargoFileParser
    update_checker = CargoUpdateChecker
    file_updater = CargoFileUpdater
