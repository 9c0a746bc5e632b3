"""Composer: composer.json and composer.lock."""

from __future__ import annotations

import json
import posixpath
import re
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin, urlparse

import requests

from .errors import (
    BadRequirement,
    ChildProcessFailed,
    DependencyFileNotParseable,
    DependencyFileNotResolvable,
    PrivateSourceAuthenticationFailure,
    PrivateSourceTimedOut,
)
from .file_parser import FileParser
from .file_updater import FileUpdater
from .models import Dependency, DependencySet, RequirementEntry, Source, SourceType
from .package_manager import PackageManager
from .requirement import Requirement, raise_upper_bounds, update_version_string
from .sandbox import (
    Err,
    HelperRequest,
    HelperSubprocessResolver,
    check_path_dependencies,
    git_environment,
    in_a_temporary_directory,
    unwrap,
    write_dependency_files,
)
from .update_checker import UpdateChecker
from .version import GenericVersion, Version

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .models import DependencyFile
    from .sandbox import Credential, ExternalResolver, HelperResult

log = getLogger(__name__)

DEPENDENCY_GROUPS = (
    # (composer.json key, composer.lock key, group)
    ("require", "packages", "runtime"),
    ("require-dev", "packages-dev", "development"),
)
PACKAGIST_URL = "https://repo.packagist.org"
UNRESOLVABLE_MESSAGES = (
    "Your requirements could not be resolved",
    "could not be found in any version",
    "cannot require itself",
    "Invalid version string",
    "could not parse version constraint",
)
AUTH_FAILURE = re.compile(r"The '(?P<url>[^']+)' URL required authentication|(?P<source>https?://\S+?)/?\S* (?:401|403)")
TIMED_OUT = re.compile(r"The \"(?P<url>https?://[^\"]+)\" file could not be downloaded")


class ComposerRequirement(Requirement):
    """A Composer version constraint.

    `|` or `||` separate alternatives, commas or spaces join constraints. `~1.2` means `>=1.2 <2.0` (the last written
    segment may change), stability flags such as `@dev` are ignored and `dev-` branch names are not version constraints.
    """

    version_class = GenericVersion
    OR_SEPARATOR = re.compile(r"\s*\|\|?\s*")
    HYPHEN_RANGE = re.compile(r"(?P<lower>[vV]?[0-9][^\s,]*)\s+-\s+(?P<upper>[vV]?[0-9][^\s,]*)")

    def split_constraints(self, requirement_string: str) -> list[str]:
        """Split on commas and spaces, keeping operators attached to their versions."""
        normalized = self.HYPHEN_RANGE.sub(r">=\g<lower> <=\g<upper>", requirement_string.strip())
        normalized = re.sub(r"(\^|~|[<>]=?|!=|==?)\s+", r"\1", normalized)
        return [part for part in re.split(r"\s*,\s*|\s+", normalized) if part]

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Expand Composer shorthand into plain constraints."""
        constraint = re.sub(r"@\w+$", "", constraint.strip())
        if constraint.startswith("dev-") or constraint.endswith("-dev"):
            msg = f"Branch constraint {constraint!r} is not a version requirement"
            raise BadRequirement(msg)
        if constraint in ("", "*"):
            return [(">=", "0")]
        if constraint.startswith("^"):
            return self.caret_constraints(constraint)
        if constraint.startswith("~"):
            version = self.strip_v(constraint[1:])
            return [("~>", version if "." in version else f"{version}.0")]
        match = re.match(r"^(?P<op>[<>]=?|!=|==?)?(?P<version>.*)$", constraint)
        assert match is not None  # noqa: S101
        op, version = match.group("op") or "", self.strip_v(match.group("version"))
        if self.is_wildcard(version):
            if op in ("", "=", "=="):
                return self.wildcard_constraints(version)
            version = re.sub(r"(?:\.[xX*])+$", "", version)
        return super().expand_constraint(f"{'=' if op == '==' else op}{version}")


def is_package(name: str) -> bool:
    """Whether `name` is a real package (platform packages such as `php` or `ext-json` are not)."""
    return len(name.split("/")) == 2  # noqa: PLR2004


def composer_auth(credentials: Iterable[Credential]) -> str | None:
    """Build a `COMPOSER_AUTH` document from the composer repository credentials."""
    basic = {}
    for credential in credentials:
        if credential.type != "composer_repository" or not credential.registry:
            continue
        host = urlparse(credential.registry).hostname or credential.registry
        basic[host] = {"username": credential.username or "", "password": credential.secret or ""}
    return json.dumps({"http-basic": basic}) if basic else None


def path_declarations(files: Iterable[DependencyFile]) -> list[tuple[str, str]]:
    """`(composer.json name, url)` for every `path` repository of the given manifests; urls may be globs."""
    declarations = []
    for file in files:
        if posixpath.basename(file.name) != "composer.json" or file.content is None:
            continue
        composer_json = FileParser.load_json(file)
        repositories = (composer_json.get("repositories") or []) if isinstance(composer_json, dict) else []
        if isinstance(repositories, dict):
            repositories = list(repositories.values())
        declarations.extend(
            (file.name, repository["url"])
            for repository in repositories
            if isinstance(repository, dict) and repository.get("type") == "path" and isinstance(repository.get("url"), str)
        )
    return declarations


class ComposerFileParser(FileParser):
    """Parses composer.json and composer.lock."""

    filename_patterns = ("composer.json", "composer.lock")

    def check_required_files(self) -> None:
        """A composer.json is required."""
        self.require_file("composer.json")

    @cached_property
    def composer_json(self) -> dict[str, Any]:
        """The parsed composer.json."""
        return self.load_json(self.require_file("composer.json"))

    @cached_property
    def lockfile(self) -> dict[str, Any] | None:
        """The parsed composer.lock, if there is one."""
        lockfile = self.get_original_file("composer.lock")
        return None if lockfile is None else self.load_json(lockfile)

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        dependencies += self._manifest_dependencies()
        dependencies += self._lockfile_dependencies()
        return dependencies.dependencies

    def _manifest_dependencies(self) -> list[Dependency]:
        dependencies = []
        for manifest_key, lockfile_key, group in DEPENDENCY_GROUPS:
            for name, requirement in (self.composer_json.get(manifest_key) or {}).items():
                if not is_package(name):
                    continue
                package = self._locked_package(lockfile_key, name)
                version = None
                if self.lockfile is not None:
                    version = self._locked_version(package)
                    if version is None:
                        log.debug("Skipping %s: not locked with a numeric version", name)
                        continue
                entry = RequirementEntry(
                    file="composer.json",
                    requirement=requirement,
                    groups=(group,),
                    source=self._source(package),
                )
                dependencies.append(Dependency(name, version, [entry], Composer.name))
        return dependencies

    def _lockfile_dependencies(self) -> list[Dependency]:
        if self.lockfile is None:
            return []
        dependencies = []
        for _, lockfile_key, _ in DEPENDENCY_GROUPS:
            for package in self.lockfile.get(lockfile_key) or []:
                name = package.get("name", "")
                version = self._locked_version(package)
                if is_package(name) and version is not None:
                    dependencies.append(Dependency(name, version, (), Composer.name))
        return dependencies

    def _locked_package(self, lockfile_key: str, name: str) -> dict[str, Any] | None:
        if self.lockfile is None:
            return None
        return next((p for p in self.lockfile.get(lockfile_key) or [] if p.get("name") == name), None)

    @staticmethod
    def _locked_version(package: dict[str, Any] | None) -> str | None:
        if package is None or not isinstance(package.get("version"), str):
            return None
        version = re.sub(r"^v", "", package["version"])
        return version if re.match(r"^\d", version) else None

    @cached_property
    def vcs_repository_urls(self) -> set[str]:
        """URLs of the `vcs`/`git` repositories composer.json declares."""
        repositories = self.composer_json.get("repositories") or []
        if isinstance(repositories, dict):
            repositories = list(repositories.values())
        return {
            re.sub(r"(?:\.git)?/?$", "", r["url"])
            for r in repositories
            if isinstance(r, dict) and r.get("type") in ("vcs", "git") and isinstance(r.get("url"), str)
        }

    def _source(self, package: dict[str, Any] | None) -> Source | None:
        if package is None:
            return None
        if package.get("source") is None and (package.get("dist") or {}).get("type") == "path":
            return Source(SourceType.path, url=package["dist"].get("url"))
        source = package.get("source") or {}
        # Packagist packages lock their git source too; only packages from declared VCS repositories are git dependencies
        url = re.sub(r"(?:\.git)?/?$", "", source.get("url") or "")
        if source.get("type") == "git" and url in self.vcs_repository_urls:
            return Source(SourceType.git, url=source.get("url"), ref=source.get("reference"))
        return None


class ComposerRequirementsUpdater:
    """Rewrites Composer constraints so they admit a new version."""

    def __init__(self, requirements: Iterable[RequirementEntry], latest_resolvable_version: Version | None) -> None:
        """Initialize with the current entries and the version they must admit."""
        self.requirements: list[RequirementEntry] = list(requirements)
        self.version: Version | None = latest_resolvable_version

    def updated_requirements(self) -> list[RequirementEntry]:
        """Return the rewritten entries."""
        if self.version is None:
            return self.requirements
        return [self._updated(entry) for entry in self.requirements]

    def _satisfied(self, requirement: str) -> bool:
        try:
            return any(r.satisfied_by(self.version) for r in ComposerRequirement.requirements_array(requirement))  # type: ignore[arg-type]
        except BadRequirement:
            return False

    def _updated(self, entry: RequirementEntry) -> RequirementEntry:
        requirement = entry.requirement
        if requirement is None or entry.source is not None or self._satisfied(requirement):
            return entry
        assert self.version is not None  # noqa: S101
        alternatives = re.split(r"(\s*\|\|?\s*)", requirement)
        if len(alternatives) > 1:
            separator = alternatives[-2]
            updated = f"{requirement}{separator}{self._updated_single(alternatives[-1])}"
        else:
            updated = self._updated_single(requirement)
        return entry.replace(requirement=updated if self._satisfied(updated) else ":unfixable")

    def _updated_single(self, requirement: str) -> str:
        assert self.version is not None  # noqa: S101
        if re.search(r"<=?\s*[vV]?\d", requirement):
            return raise_upper_bounds(requirement, self.version)
        return update_version_string(requirement, self.version)


def update_composer_json(content: str, dependency: Dependency) -> str:
    """Rewrite the `"name": "requirement"` pairs of `dependency` whose requirement changed."""
    previous = list(dependency.previous_requirements or ())
    for new in dependency.requirements:
        old = next((r for r in previous if r.file == new.file and r.groups == new.groups), None)
        if old is None or old.requirement is None or new.requirement is None or old.requirement == new.requirement:
            continue
        content = re.sub(
            rf'("{re.escape(dependency.name)}"\s*:\s*"){re.escape(old.requirement)}"',
            lambda m, req=new.requirement: f'{m.group(1)}{req}"',
            content,
        )
    return content


def _helper_error(result: Err) -> Exception:
    """Translate a helper error into the matching updater error."""
    message = result.message
    if (match := AUTH_FAILURE.search(message)) is not None:
        url = match.group("url") or match.group("source")
        return PrivateSourceAuthenticationFailure(re.sub(r"/packages\.json$", "", url))
    if (match := TIMED_OUT.search(message)) is not None:
        return PrivateSourceTimedOut(re.sub(r"/packages\.json$", "", match.group("url")))
    if any(m in message for m in UNRESOLVABLE_MESSAGES):
        return DependencyFileNotResolvable(message)
    return ChildProcessFailed(result.kind, message)


class ComposerHelperMixin:
    """Runs the PHP helper in a sandbox."""

    settings: Any
    credentials: tuple[Credential, ...]
    resolver: ExternalResolver | None
    runner: Any

    @cached_property
    def helper(self) -> ExternalResolver:
        """The PHP helper."""
        if self.resolver is not None:
            return self.resolver
        return HelperSubprocessResolver(
            self.settings.helper_command(self.settings.composer_helper),
            timeout=self.settings.helper_timeout,
            runner=self.runner,
        )

    def _call_helper(self, function: str, files: Sequence[DependencyFile], args: list[Any]) -> HelperResult:
        check_path_dependencies(path_declarations(files), files, "composer.json")
        with in_a_temporary_directory() as sandbox:
            write_dependency_files(sandbox, files)
            env = {"COMPOSER_NO_INTERACTION": "1", **git_environment(self.credentials, sandbox)}
            auth = composer_auth(self.credentials)
            if auth is not None:
                env["COMPOSER_AUTH"] = auth
            return self.helper(sandbox, HelperRequest(function, [str(sandbox), *args]), env)


class ComposerUpdateChecker(ComposerHelperMixin, UpdateChecker):
    """Update checks against Packagist and custom composer repositories."""

    version_class = GenericVersion
    requirement_class = ComposerRequirement

    @cached_property
    def composer_json(self) -> dict[str, Any]:
        """The parsed composer.json."""
        manifest = next((f for f in self.dependency_files if f.name == "composer.json"), None)
        if manifest is None:
            return {}
        try:
            return json.loads(manifest.content or "")
        except json.JSONDecodeError as e:
            raise DependencyFileNotParseable(manifest.path) from e

    def repository_urls(self) -> list[str]:
        """Composer repositories to look in: the declared ones, the credentialed ones, then Packagist."""
        repositories = self.composer_json.get("repositories") or []
        if isinstance(repositories, dict):
            repositories = [{"packagist.org": v} if k == "packagist.org" else v for k, v in repositories.items()]
        urls = [r["url"].rstrip("/") for r in repositories if isinstance(r, dict) and r.get("type") == "composer" and r.get("url")]
        urls.extend(c.registry.rstrip("/") for c in self.credentials if c.type == "composer_repository" and c.registry)
        packagist_disabled = any(isinstance(r, dict) and r.get("packagist.org") is False for r in repositories)
        if not packagist_disabled:
            urls.append(PACKAGIST_URL)
        return list(dict.fromkeys(urls))

    def _auth_for(self, url: str) -> tuple[str, str] | None:
        host = urlparse(url).hostname
        for credential in self.credentials:
            if credential.type == "composer_repository" and urlparse(credential.registry or "").hostname == host:
                return credential.username or "", credential.secret or ""
        return None

    def _repository_versions(self, url: str) -> set[str]:
        name = self.dependency.name.lower()
        auth = self._auth_for(url)
        if url == PACKAGIST_URL:
            metadata_url = f"{url}/p2/{name}.json"
        else:
            response = self.http.get(f"{url}/packages.json", auth=auth, source=url)
            if response.status_code == 404:  # noqa: PLR2004
                return set()
            response.raise_for_status()
            index = response.json()
            if name in (index.get("packages") or {}):
                return set(index["packages"][name])
            if "metadata-url" not in index:
                return set()
            metadata_url = urljoin(f"{url}/", index["metadata-url"].replace("%package%", name))
        response = self.http.get(metadata_url, auth=auth, source=url)
        if response.status_code == 404:  # noqa: PLR2004
            return set()
        response.raise_for_status()
        packages = (response.json().get("packages") or {}).get(name) or []
        if isinstance(packages, dict):
            return set(packages)
        return {p["version"] for p in packages if isinstance(p, dict) and isinstance(p.get("version"), str)}

    @cached_property
    def available_versions(self) -> list[Version]:
        """Every release in the configured repositories, filtered, newest first."""
        versions: set[str] = set()
        for url in self.repository_urls():
            try:
                versions.update(self._repository_versions(url))
            except (requests.HTTPError, ValueError) as e:
                if url == PACKAGIST_URL:
                    raise
                log.warning("Could not read composer repository %s: %s", url, e)
        candidates = {re.sub(r"^v", "", v) for v in versions if not v.startswith("dev-") and not v.endswith("-dev")}
        return sorted(self.filter_versions(self.parse_versions(candidates)), reverse=True)

    def _latest_version(self) -> Version | str | None:
        if self.dependency.source_details() is not None:
            return None
        return self.available_versions[0] if self.available_versions else None

    def _latest_resolvable_version(self) -> Version | str | None:
        latest = self.latest_version
        if not isinstance(latest, Version):
            return None
        current = self.current_version
        unlocked = f">={current},<={latest}" if current is not None else f"<={latest}"
        return self._resolve(unlocked)

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        if not isinstance(self.latest_version, Version):
            return None
        if not self.dependency.appears_in_lockfile:
            return next((v for v in self.available_versions if self.satisfies_requirements(v)), None)
        return self._resolve(None)

    def _resolve(self, unlocked_requirement: str | None) -> Version | None:
        """Ask the helper for the newest version it can install, optionally replacing our own requirement first."""
        files = list(self.dependency_files)
        if unlocked_requirement is not None and self.dependency.top_level:
            requirements = [r.replace(requirement=unlocked_requirement) for r in self.dependency.requirements]
            unlocked = self.dependency.updated(self.dependency.version, requirements)
            files = [
                f.with_content(update_composer_json(f.content or "", unlocked)) if f.name == "composer.json" else f
                for f in files
            ]
        result = self._call_helper(
            "get_latest_resolvable_version",
            files,
            [self.dependency.name],
        )
        if isinstance(result, Err):
            raise _helper_error(result)
        version = unwrap(result, "get_latest_resolvable_version")
        if version is None:
            return None
        return GenericVersion(re.sub(r"^v", "", str(version)))

    def _updated_requirements(self) -> list[RequirementEntry]:
        version = self.latest_resolvable_version
        return ComposerRequirementsUpdater(
            self.dependency.requirements,
            version if isinstance(version, Version) else None,
        ).updated_requirements()


class ComposerFileUpdater(ComposerHelperMixin, FileUpdater):
    """Rewrites composer.json and regenerates composer.lock with the PHP helper."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        updated_files: list[DependencyFile] = []
        for file in self.changed_manifests(self.dependency_files):
            if file.name != "composer.json":
                continue
            content = file.content or ""
            for dependency in self.dependencies:
                content = update_composer_json(content, dependency)
            updated_files.append(self.updated_file(file, content))

        lockfile = self.get_original_file("composer.lock")
        if lockfile is not None:
            replacements = {f.name: f for f in updated_files}
            files = [replacements.get(f.name, f) for f in self.dependency_files]
            dependencies = [{"name": d.name, "version": d.version} for d in self.dependencies]
            result = self._call_helper("update", files, [dependencies])
            if isinstance(result, Err):
                raise _helper_error(result)
            content = unwrap(result, "update")
            if content != lockfile.content:
                updated_files.append(lockfile.with_content(content))
            else:
                log.debug("%s did not change", lockfile.path)
        return updated_files


class Composer(PackageManager):
    """Composer projects."""

    name = "composer"
    description = "updates PHP dependencies declared in composer.json, locked in composer.lock"
    version_class = GenericVersion
    requirement_class = ComposerRequirement
    file_parser = ComposerFileParser
    update_checker = ComposerUpdateChecker
    file_updater = ComposerFileUpdater
