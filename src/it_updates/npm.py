"""npm and yarn: package.json, package-lock.json, npm-shrinkwrap.json and yarn.lock."""

from __future__ import annotations

import fnmatch
import json
import posixpath
import random
import re
import time
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import requests

from .errors import (
    BadRequirement,
    ChildProcessFailed,
    DependencyFileNotParseable,
    DependencyFileNotResolvable,
    HelperSubprocessFailed,
    PrivateSourceAuthenticationFailure,
    PrivateSourceTimedOut,
    RequiredFileNotFound,
)
from .file_parser import FileParser
from .file_updater import FileUpdater
from .models import Dependency, DependencySet, RequirementEntry, Source, SourceType
from .package_manager import PackageManager
from .requirement import Requirement
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
from .update_checker import ForceUpdater, ResolutionAttempt, UpdateChecker
from .version import SemverVersion, Version

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

    from .http_client import HttpClient
    from .models import DependencyFile
    from .sandbox import Credential, ExternalResolver, HelperResult

log = getLogger(__name__)

DEPENDENCY_GROUPS = ("dependencies", "devDependencies", "optionalDependencies")
LOCKFILE_NAMES = ("package-lock.json", "npm-shrinkwrap.json", "yarn.lock")
DEFAULT_REGISTRY = "registry.npmjs.org"
PUBLIC_REGISTRIES = (DEFAULT_REGISTRY, "registry.yarnpkg.com")
# How many older candidates are tried when peer dependencies rule out the newest one
MAX_PEER_DEPENDENCY_CHECKS = 5
RETRYABLE_SUBDEPENDENCY_ERRORS = ("The registry may be down", "ETIMEDOUT", "ENOBUFS")

NPM_PEER_ERROR = re.compile(
    r"(?P<requiring_dep>[^\s]+) requires a peer of (?P<required_dep>.+?)@(?P<required_version>.+?) but none is installed"
)
YARN_PEER_ERROR = re.compile(
    r"\"(?P<requiring_dep>[^\"]+)\" has (?:incorrect|unmet) peer dependency "
    r"\"(?P<required_dep>[^\"]+?)@(?P<required_version>[^\"]+)\""
)


class NpmRequirement(Requirement):
    """A node-semver range.

    `||` separates alternatives, while spaces, `&&` and commas join constraints. Parentheses are ignored, caret, tilde,
    `x`/`*` wildcards and hyphen ranges are expanded and a leading `v` is tolerated. Dist-tags such as `next` are not
    ranges and raise `BadRequirement`.
    """

    version_class = SemverVersion
    OR_SEPARATOR = re.compile(r"\s*\|\|\s*")
    HYPHEN_RANGE = re.compile(r"(?P<lower>[vV]?[0-9][^\s]*)\s+-\s+(?P<upper>[vV]?[0-9][^\s]*)")

    @classmethod
    def requirements_array(cls, requirement_string: str | None) -> list[NpmRequirement]:  # type: ignore[override]
        """Split on `||`, ignoring any parentheses."""
        if requirement_string is None:
            return [cls()]
        stripped = requirement_string.replace("(", " ").replace(")", " ").strip()
        return [cls(alternative) for alternative in cls.OR_SEPARATOR.split(stripped)]

    def split_constraints(self, requirement_string: str) -> list[str]:
        """Split on spaces, `&&` and commas, keeping operators attached to their versions."""
        normalized = requirement_string.replace("(", " ").replace(")", " ")
        normalized = re.sub(r"\s*(?:&&|,)\s*", " ", normalized).strip()
        normalized = self.HYPHEN_RANGE.sub(r">=\g<lower> <=\g<upper>", normalized)
        normalized = re.sub(r"(~>|\^|~|[<>]=?|!=|=)\s+", r"\1", normalized)
        return normalized.split()

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Expand npm shorthand into plain constraints."""
        constraint = constraint.strip()
        if constraint in ("", "*", "x", "X"):
            return [(">=", "0")]
        if constraint.startswith("^"):
            return self.caret_constraints(constraint)
        if constraint.startswith("~"):
            return self.tilde_constraints(constraint)
        match = re.match(r"^(?P<op>[<>]=?|!=|=)?(?P<version>.*)$", constraint)
        assert match is not None  # noqa: S101
        op, version = match.group("op") or "", match.group("version")
        if self.is_wildcard(version):
            if op in ("", "="):
                return self.wildcard_constraints(version)
            version = re.sub(r"(?:\.[xX*])+$", "", version)
        return super().expand_constraint(f"{op}{self.strip_v(version)}")


def escaped_name(name: str) -> str:
    """npm registries expect the slash of scoped package names to be escaped."""
    return name.replace("/", "%2F")


def git_source_for(specifier: str) -> tuple[Source, str | None] | None:
    """Return the git source of a git specifier and any `#semver:` range it carries."""
    url, _, fragment = specifier.partition("#")
    shorthand = re.match(r"^(?:(?P<host>github|gitlab|bitbucket):)?(?P<repo>[\w.\-]+/[\w.\-]+)$", url)
    if shorthand is not None and not url.startswith((".", "/")):
        host = {"gitlab": "gitlab.com", "bitbucket": "bitbucket.org"}.get(shorthand.group("host") or "", "github.com")
        url = f"https://{host}/{shorthand.group('repo')}"
    elif url.startswith(("git+", "git://", "git@")) or (url.startswith("http") and url.endswith(".git")):
        url = url.removeprefix("git+")
    else:
        return None
    requirement = None
    ref: str | None = fragment or None
    if ref is not None and ref.startswith("semver:"):
        requirement, ref = ref.removeprefix("semver:"), None
    return Source(SourceType.git, url=url, ref=ref), requirement


def path_source_for(specifier: str) -> Source | None:
    """Return the path source of a `file:`/`link:` or relative path specifier."""
    for prefix in ("file:", "link:"):
        if specifier.startswith(prefix):
            return Source(SourceType.path, url=specifier.removeprefix(prefix))
    if specifier.startswith(("./", "../", "/", "~/")):
        return Source(SourceType.path, url=specifier)
    return None


def path_declarations(files: Iterable[DependencyFile]) -> list[tuple[str, str]]:
    """`(package.json name, path)` for every `file:`, `link:` or relative path dependency of the given manifests."""
    declarations = []
    for file in files:
        if posixpath.basename(file.name) != "package.json" or file.content is None:
            continue
        package_json = FileParser.load_json(file)
        if not isinstance(package_json, dict):
            continue
        for group in DEPENDENCY_GROUPS:
            for specifier in (package_json.get(group) or {}).values():
                source = path_source_for(specifier.strip()) if isinstance(specifier, str) else None
                if source is not None and source.url:
                    declarations.append((file.name, source.url))
    return declarations


def parse_yarn_lock(content: str) -> list[tuple[str, list[str], dict[str, str]]]:
    """Parse a yarn v1 lockfile into `(name, requested ranges, fields)` entries."""
    entries: list[tuple[str, list[str], dict[str, str]]] = []
    for block in re.split(r"\n\s*\n", content):
        lines = [line for line in block.splitlines() if line.strip() and not line.lstrip().startswith("#")]
        if not lines or lines[0].startswith(" ") or not lines[0].endswith(":"):
            continue
        specs = [s.strip().strip('"') for s in lines[0][:-1].split(",")]
        name = specs[0].rsplit("@", 1)[0] if specs[0].rfind("@") > 0 else specs[0]
        ranges = [s.rsplit("@", 1)[1] if s.rfind("@") > 0 else "" for s in specs]
        fields = {}
        for line in lines[1:]:
            if not line.startswith("  ") or line.startswith("    "):
                continue
            key, _, value = line.strip().partition(" ")
            fields[key.strip('"')] = value.strip().strip('"')
        entries.append((name, ranges, fields))
    return entries


class NpmAndYarnFileParser(FileParser):
    """Parses package.json files (including workspaces and lerna packages) and their lockfiles."""

    filename_patterns = ("package.json", "lerna.json", ".npmrc", *LOCKFILE_NAMES)

    def check_required_files(self) -> None:
        """The root package.json is required."""
        if self.get_original_file("package.json") is None:
            raise RequiredFileNotFound("package.json")

    @cached_property
    def package_files(self) -> list[DependencyFile]:
        """The root package.json plus every workspace or lerna package.json."""
        root = self.require_file("package.json")
        globs = self._workspace_globs(self.load_json(root))
        lerna = self.get_original_file("lerna.json")
        if lerna is not None:
            globs.extend(self.load_json(lerna).get("packages", []))
        files = [root]
        for file in self.dependency_files:
            if file is root or posixpath.basename(file.name) != "package.json":
                continue
            directory = posixpath.dirname(file.name)
            if any(fnmatch.fnmatch(directory, glob.rstrip("/")) for glob in globs):
                files.append(file)
        return files

    @staticmethod
    def _workspace_globs(package_json: dict[str, Any]) -> list[str]:
        workspaces = package_json.get("workspaces", [])
        if isinstance(workspaces, dict):
            workspaces = workspaces.get("packages", [])
        return [w for w in workspaces if isinstance(w, str)]

    def lockfiles(self) -> list[DependencyFile]:
        """Every lockfile, in the order npm prefers them."""
        return [f for name in LOCKFILE_NAMES for f in self.dependency_files if posixpath.basename(f.name) == name]

    @cached_property
    def parsed_lockfiles(self) -> list[tuple[DependencyFile, Any]]:
        """Lockfiles with their parsed content."""
        parsed = []
        for lockfile in self.lockfiles():
            if lockfile.name.endswith("yarn.lock"):
                parsed.append((lockfile, parse_yarn_lock(lockfile.content or "")))
            else:
                parsed.append((lockfile, self.load_json(lockfile)))
        return parsed

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        for file in self.package_files:
            dependencies += self._manifest_dependencies(file)
        for name, version in self._locked_subdependencies():
            if name not in dependencies:
                dependencies.add(Dependency(name, version, (), NpmAndYarn.name))
        return dependencies.dependencies

    def _manifest_dependencies(self, file: DependencyFile) -> list[Dependency]:
        package_json = self.load_json(file)
        if not isinstance(package_json, dict):
            msg = f"{file.path} is not a JSON object"
            raise DependencyFileNotParseable(file.path, msg)
        dependencies = []
        for group in DEPENDENCY_GROUPS:
            for name, specifier in (package_json.get(group) or {}).items():
                if not isinstance(specifier, str) or specifier.startswith(("npm:", "workspace:")):
                    continue
                dependency = self._build_dependency(file, group, name, specifier.strip())
                if dependency is not None:
                    dependencies.append(dependency)
        return dependencies

    def _build_dependency(self, file: DependencyFile, group: str, name: str, specifier: str) -> Dependency | None:
        source: Source | None = path_source_for(specifier)
        requirement: str | None = specifier
        if source is not None:
            requirement = None
        else:
            git = git_source_for(specifier)
            if git is not None:
                source, requirement = git
        version = self._locked_version(name, specifier)
        if source is None:
            registry = self._locked_registry(name)
            if registry is not None:
                source = Source(SourceType.registry, url=registry)
        if source is not None and source.type is SourceType.git:
            version = self._locked_git_sha(name, version)
        elif source is not None and source.type is SourceType.path:
            version = None
        elif version is not None and not SemverVersion.correct(version):
            log.debug("Ignoring non-semver locked version %s of %s", version, name)
            version = None
        if requirement is not None:
            try:
                NpmRequirement.requirements_array(requirement)
            except BadRequirement:
                log.debug("Skipping %s: %r is not a version range", name, requirement)
                return None
        entry = RequirementEntry(file=file.name, requirement=requirement, groups=(group,), source=source)
        return Dependency(name, version, [entry], NpmAndYarn.name)

    def _locked_details(self, name: str, specifier: str | None = None) -> dict[str, Any] | None:
        for lockfile, parsed in self.parsed_lockfiles:
            if lockfile.name.endswith("yarn.lock"):
                candidates = [(ranges, fields) for entry_name, ranges, fields in parsed if entry_name == name]
                exact = next((fields for ranges, fields in candidates if specifier in ranges), None)
                if exact is not None:
                    return exact
                if candidates:
                    return candidates[0][1]
                continue
            details = (parsed.get("packages") or {}).get(f"node_modules/{name}")
            if details is None:
                details = (parsed.get("dependencies") or {}).get(name)
            if isinstance(details, dict):
                return details
        return None

    def _locked_version(self, name: str, specifier: str | None = None) -> str | None:
        details = self._locked_details(name, specifier)
        if details is None:
            return None
        version = details.get("version")
        return version if isinstance(version, str) else None

    def _locked_git_sha(self, name: str, version: str | None) -> str | None:
        # v1 lockfiles record `git+https://...#sha` as the version, later ones keep it in `resolved`
        details = self._locked_details(name) or {}
        for candidate in (version, details.get("resolved")):
            if isinstance(candidate, str) and "#" in candidate:
                return candidate.rsplit("#", 1)[1]
        return None

    def _locked_registry(self, name: str) -> str | None:
        details = self._locked_details(name)
        resolved = None if details is None else details.get("resolved")
        if not isinstance(resolved, str) or f"/{name}/-/" not in resolved:
            return None
        registry = resolved.split(f"/{name}/-/")[0]
        if urlparse(registry).netloc in PUBLIC_REGISTRIES:
            return None
        return registry

    def _locked_subdependencies(self) -> Iterable[tuple[str, str]]:
        for lockfile, parsed in self.parsed_lockfiles:
            if lockfile.name.endswith("yarn.lock"):
                for name, _, fields in parsed:
                    if SemverVersion.correct(fields.get("version", "")):
                        yield name, fields["version"]
                continue
            for key, details in (parsed.get("packages") or {}).items():
                if not key.startswith("node_modules/") or key.count("node_modules/") > 1:
                    continue
                if isinstance(details, dict) and SemverVersion.correct(details.get("version", "")):
                    yield key.removeprefix("node_modules/"), details["version"]
            for name, details in (parsed.get("dependencies") or {}).items():
                if isinstance(details, dict) and SemverVersion.correct(details.get("version", "")):
                    yield name, details["version"]


class RegistryFinder:
    """Works out which registry serves a dependency, and the token to use for it."""

    AUTH_TOKEN_REGEX = re.compile(r"^\s*//(?P<registry>.*?)/?:_authToken=(?P<token>.*)$", re.MULTILINE)
    REGISTRY_REGEX = re.compile(r"^\s*(?:(?P<scope>@[^:\s]+):)?registry\s*=\s*(?P<registry>\S+)\s*$", re.MULTILINE)

    def __init__(
        self,
        dependency: Dependency,
        credentials: Sequence[Credential],
        http: HttpClient,
        npmrc_file: DependencyFile | None = None,
    ) -> None:
        """Initialize the finder for one dependency."""
        self.dependency: Dependency = dependency
        self.credentials: Sequence[Credential] = credentials
        self.http: HttpClient = http
        self.npmrc_file: DependencyFile | None = npmrc_file

    @staticmethod
    def _bare(registry: str) -> str:
        return re.sub(r"^https?://", "", registry).rstrip("/")

    @cached_property
    def known_registries(self) -> list[dict[str, str | None]]:
        """Registries from credentials and the .npmrc, with their tokens."""
        registries: list[dict[str, str | None]] = [
            {"registry": self._bare(c.registry), "token": c.secret}
            for c in self.credentials
            if c.registry and c.type in ("npm_registry", "registry")
        ]
        content = "" if self.npmrc_file is None else self.npmrc_file.content or ""
        for match in self.AUTH_TOKEN_REGEX.finditer(content):
            registries.append({"registry": self._bare(match.group("registry")), "token": match.group("token").strip()})
        unique = []
        for registry in registries:
            if registry not in unique:
                unique.append(registry)
        return unique

    def _configured_registry(self) -> str | None:
        content = "" if self.npmrc_file is None else self.npmrc_file.content or ""
        scope = self.dependency.name.split("/")[0] if self.dependency.name.startswith("@") else None
        unscoped = None
        for match in self.REGISTRY_REGEX.finditer(content):
            if match.group("scope") is None:
                unscoped = self._bare(match.group("registry"))
            elif match.group("scope") == scope:
                return self._bare(match.group("registry"))
        return unscoped

    def _locked_registry(self) -> str | None:
        source = self.dependency.source_details()
        if source is None or source.type is not SourceType.registry or not source.url:
            return None
        return self._bare(source.url)

    @cached_property
    def registry(self) -> str:
        """The registry (host and path, no scheme) serving the dependency."""
        locked = self._locked_registry() or self._configured_registry()
        if locked is not None:
            return locked
        for details in self.known_registries:
            token = details["token"]
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            response = self.http.get(
                f"https://{details['registry']}/{escaped_name(self.dependency.name)}",
                headers=headers,
                raise_on_auth_failure=False,
            )
            if response.status_code < 400:  # noqa: PLR2004
                return str(details["registry"])
        return DEFAULT_REGISTRY

    @property
    def auth_token(self) -> str | None:
        """The token for the dependency's registry, if we have one."""
        return next((str(r["token"]) for r in self.known_registries if r["registry"] == self.registry and r["token"]), None)

    @property
    def dependency_url(self) -> str:
        """URL of the dependency's registry document."""
        source = self.dependency.source_details()
        if source is not None and source.type is SourceType.registry and source.url:
            base = source.url.rstrip("/")
        else:
            base = f"https://{self.registry}"
        return f"{base}/{escaped_name(self.dependency.name)}"


def npmrc_content(credentials: Iterable[Credential], dependency_files: Iterable[DependencyFile]) -> str:
    """Build the .npmrc written into a sandbox: the project's own plus a token line per credentialed registry."""
    lines = []
    for file in dependency_files:
        if posixpath.basename(file.name) == ".npmrc" and file.content:
            lines.append(file.content.rstrip("\n"))
    for credential in credentials:
        if credential.registry and credential.secret and credential.type in ("npm_registry", "registry"):
            registry = RegistryFinder._bare(credential.registry)  # noqa: SLF001
            lines.append(f"//{registry}/:_authToken={credential.secret}")
    return "\n".join(lines) + "\n" if lines else ""


def update_version_string(old: str, new_version: Version | str) -> str:
    """Replace each version in `old` with `new_version` at the same precision, keeping operators and wildcards."""
    new_parts = str(new_version).lstrip("vV").split(".")

    def _replace(match: re.Match[str]) -> str:
        old_parts = match.group("version").split(".")
        wildcard = any(p in ("x", "X", "*") for p in old_parts)
        if not wildcard and (len(old_parts) >= 3 or "-" in match.group("version")):  # noqa: PLR2004
            return match.group("v") + str(new_version).lstrip("vV")
        parts = []
        for i, part in enumerate(old_parts):
            if part in ("x", "X", "*"):
                parts.append(part)
            else:
                parts.append(new_parts[i] if i < len(new_parts) else "0")
        return match.group("v") + ".".join(parts)

    return re.sub(r"(?P<v>[vV]?)(?P<version>[0-9]+(?:\.(?:[0-9]+|[xX*]))*(?:-[0-9A-Za-z.\-]+)?)", _replace, old)


class NpmRequirementsUpdater:
    """Rewrites requirement entries so they admit a new version, changing as little text as possible."""

    def __init__(self, requirements: Iterable[RequirementEntry], updated_version: Version | None) -> None:
        """Initialize with the current entries and the version they must admit."""
        self.requirements: list[RequirementEntry] = list(requirements)
        self.updated_version: Version | None = updated_version

    def updated_requirements(self) -> list[RequirementEntry]:
        """Return the rewritten entries."""
        if self.updated_version is None:
            return self.requirements
        return [self._updated(entry) for entry in self.requirements]

    def _satisfied(self, requirement: str) -> bool:
        try:
            return any(r.satisfied_by(self.updated_version) for r in NpmRequirement.requirements_array(requirement))  # type: ignore[arg-type]
        except BadRequirement:
            return False

    def _updated(self, entry: RequirementEntry) -> RequirementEntry:
        requirement = entry.requirement
        if requirement is None or (entry.source is not None and entry.source.type is not SourceType.registry):
            return entry
        if self._satisfied(requirement):
            return entry
        if "||" in requirement:
            last = NpmRequirement.OR_SEPARATOR.split(requirement.strip())[-1]
            return entry.replace(requirement=f"{requirement} || {self._updated_single(last)}")
        return entry.replace(requirement=self._updated_single(requirement))

    def _updated_single(self, requirement: str) -> str:
        stripped = requirement.strip()
        if stripped.startswith("<") or re.search(r"\s<", stripped) or NpmRequirement.HYPHEN_RANGE.search(stripped):
            return self._updated_range(stripped)
        return update_version_string(requirement, self.updated_version)  # type: ignore[arg-type]

    def _updated_range(self, requirement: str) -> str:
        version = self.updated_version
        assert version is not None  # noqa: S101
        upper = f"{version.release[0] + 1}.0.0"

        def _replace_upper(match: re.Match[str]) -> str:
            precision = len(match.group("version").split("."))
            return f"{match.group('op')}{'.'.join(upper.split('.')[:precision])}"

        hyphen = NpmRequirement.HYPHEN_RANGE.search(requirement)
        if hyphen is not None:
            return f"{requirement[: hyphen.start('upper')]}{update_version_string(hyphen.group('upper'), version)}"
        return re.sub(r"(?P<op><=?\s*)(?P<version>[vV]?[0-9][0-9A-Za-z.\-]*)", _replace_upper, requirement)


class NpmAndYarnUpdateChecker(UpdateChecker):
    """Update checks against an npm registry."""

    version_class = SemverVersion
    requirement_class = NpmRequirement

    @cached_property
    def npmrc_file(self) -> DependencyFile | None:
        """The project's .npmrc, if any."""
        return next((f for f in self.dependency_files if f.name == ".npmrc"), None)

    @cached_property
    def registry_finder(self) -> RegistryFinder:
        """Registry lookup for this dependency."""
        return RegistryFinder(self.dependency, self.credentials, self.http, self.npmrc_file)

    @cached_property
    def npm_details(self) -> dict[str, Any] | None:
        """The registry document of the dependency, or None if the registry does not know it."""
        token = self.registry_finder.auth_token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        response = self.http.get(
            self.registry_finder.dependency_url,
            headers=headers,
            source=self.registry_finder.registry,
        )
        if response.status_code == 404:  # noqa: PLR2004
            log.info("%s is not in %s", self.dependency.name, self.registry_finder.registry)
            return None
        response.raise_for_status()
        details: dict[str, Any] = response.json()
        return details

    def listing_source_url(self) -> str | None:
        """The repository declared in the registry document."""
        if self.is_path_dependency():
            return None
        try:
            details = self.npm_details
        except (requests.RequestException, PrivateSourceAuthenticationFailure, PrivateSourceTimedOut) as e:
            log.debug("No registry listing for %s: %s", self.dependency.name, e)
            return None
        repository = (details or {}).get("repository")
        if isinstance(repository, dict):
            repository = repository.get("url")
        return repository if isinstance(repository, str) else None

    def is_path_dependency(self) -> bool:
        """Whether the dependency is a local path."""
        source = self.dependency.source_details()
        return source is not None and source.type is SourceType.path

    @cached_property
    def available_versions(self) -> list[Version]:
        """Non-deprecated versions in the registry, after prerelease and ignore filtering, newest first."""
        details = self.npm_details or {}
        versions = [v for v, data in (details.get("versions") or {}).items() if not (data or {}).get("deprecated")]
        return sorted(self.filter_versions(self.parse_versions(versions)), reverse=True)

    def _latest_registry_version(self) -> Version | None:
        if not self.available_versions:
            return None
        latest_tag = (self.npm_details or {}).get("dist-tags", {}).get("latest")
        if latest_tag and not self.wants_prerelease and SemverVersion.correct(latest_tag):
            tagged = SemverVersion(latest_tag)
            if tagged in self.available_versions:
                return tagged
        return self.available_versions[0]

    def _latest_version(self) -> Version | str | None:
        if self.is_path_dependency():
            return None
        if self.is_git_dependency():
            listing = None if self.listing_source_url() is None else self._latest_registry_version()
            return self.latest_version_for_git_dependency(listing)
        return self._latest_registry_version()

    def _latest_resolvable_version(self) -> Version | str | None:
        if self.is_git_dependency() or self.is_path_dependency():
            return self.latest_version
        if not self.dependency.top_level:
            return self._latest_resolvable_subdependency_version()
        if not self.lockfiles:
            return self.latest_version
        latest = self.latest_version
        candidates = [v for v in self.available_versions if isinstance(latest, Version) and v <= latest]
        current = self.current_version
        for candidate in candidates[:MAX_PEER_DEPENDENCY_CHECKS]:
            if current is not None and candidate <= current:
                break
            if not self._peer_dependency_conflicts(candidate):
                return candidate
            log.info("Peer dependencies prevent updating %s to %s", self.dependency.name, candidate)
        return None

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        if not self.dependency.top_level:
            return self.latest_resolvable_version
        if self.is_git_dependency():
            return self.latest_version if not self.git_commit_checker.pinned() else self.dependency.version
        if self.is_path_dependency():
            return None
        latest = self.latest_version
        return next(
            (
                v
                for v in self.available_versions
                if isinstance(latest, Version) and v <= latest and self.satisfies_requirements(v)
            ),
            None,
        )

    def _updated_requirements(self) -> list[RequirementEntry]:
        if self.is_git_dependency():
            return self.updated_git_requirements()
        version = self.latest_resolvable_version
        return NpmRequirementsUpdater(
            self.dependency.requirements, version if isinstance(version, Version) else None
        ).updated_requirements()

    @property
    def lockfiles(self) -> list[DependencyFile]:
        """The project's lockfiles."""
        return [f for f in self.dependency_files if posixpath.basename(f.name) in LOCKFILE_NAMES]

    @cached_property
    def helper(self) -> ExternalResolver:
        """The JavaScript helper."""
        if self.resolver is not None:
            return self.resolver
        return HelperSubprocessResolver(
            self.settings.helper_command(self.settings.npm_helper),
            timeout=self.settings.helper_timeout,
            runner=self.runner,
        )

    def _call_helper(
        self,
        function: str,
        files: Iterable[DependencyFile],
        args: list[Any],
        directory: str = ".",
    ) -> HelperResult:
        files = list(files)
        check_path_dependencies(path_declarations(files), files, "package.json")
        with in_a_temporary_directory() as sandbox:
            write_dependency_files(sandbox, files)
            npmrc = npmrc_content(self.credentials, self.dependency_files)
            if npmrc:
                (sandbox / ".npmrc").write_text(npmrc)
            return self.helper(
                sandbox,
                HelperRequest(function, [str(sandbox / directory), *args]),
                git_environment(self.credentials, sandbox),
            )

    def _files_requiring(self, version: Version) -> list[DependencyFile]:
        requirements = NpmRequirementsUpdater(self.dependency.requirements, version).updated_requirements()
        updated = self.dependency.updated(str(version), requirements)
        return [
            f.with_content(update_package_json(f.content or "", updated, f.name)) if f.name in updated.changed_files() else f
            for f in self.dependency_files
        ]

    def _peer_dependency_conflicts(self, version: Version, unlocked: Iterable[str] = ()) -> set[str]:
        result = self._call_helper(
            "checkPeerDependencies",
            self._files_requiring(version),
            [self.dependency.name, str(version), sorted(unlocked)],
        )
        if not isinstance(result, Err):
            return set()
        blocking = peer_dependency_blockers(result.message) - {self.dependency.name}
        if not blocking:
            raise ChildProcessFailed(result.kind, result.message)
        return blocking

    def _latest_version_resolvable_with_full_unlock(self) -> bool:
        if self.force_updater is None:
            return False
        return self.force_updater.resolvable()

    def _updated_dependencies_after_full_unlock(self) -> list[Dependency]:
        if self.force_updater is None:
            msg = f"{self.dependency.name} cannot be force-updated"
            raise DependencyFileNotResolvable(msg)
        return self.force_updater.updated_dependencies

    @cached_property
    def force_updater(self) -> ForceUpdater | None:
        """The full-unlock loop towards the latest version (None for subdependencies and git dependencies)."""
        latest = self.latest_version
        if not isinstance(latest, Version) or not self.dependency.top_level or self.is_git_dependency():
            return None
        return ForceUpdater(
            self.dependency,
            latest,
            lambda unlocked: self._attempt_full_unlock(latest, unlocked),
            self.settings.max_unlock_iterations,
        )

    def _attempt_full_unlock(self, target: Version, unlocked: frozenset[str]) -> ResolutionAttempt:
        result = self._call_helper(
            "checkPeerDependencies",
            self._files_requiring(target),
            [self.dependency.name, str(target), sorted(unlocked)],
        )
        if isinstance(result, Err):
            return ResolutionAttempt(None, frozenset(peer_dependency_blockers(result.message)), result.message)
        new_versions = {d["name"]: d["version"] for d in (result.value or []) if isinstance(d, dict)}
        requirements = NpmRequirementsUpdater(self.dependency.requirements, target).updated_requirements()
        resolved = [self.dependency.updated(str(target), requirements)]
        for other in NpmAndYarnFileParser(self.dependency_files).parse():
            if other.name not in unlocked or other.name == self.dependency.name or other.name not in new_versions:
                continue
            new_version = SemverVersion(new_versions[other.name])
            resolved.append(
                other.updated(
                    str(new_version),
                    NpmRequirementsUpdater(other.requirements, new_version).updated_requirements(),
                )
            )
        return ResolutionAttempt(resolved)

    def _latest_resolvable_subdependency_version(self) -> Version | None:
        updated_lockfiles = []
        try:
            for lockfile in self.lockfiles:
                content = self._update_subdependency_in(lockfile)
                updated_lockfiles.append(lockfile.with_content(content))
        except HelperSubprocessFailed as e:
            log.info("Could not update subdependency %s: %s", self.dependency.name, e)
            return None
        files = [f for f in self.dependency_files if f not in self.lockfiles] + updated_lockfiles
        updated = next((d for d in NpmAndYarnFileParser(files).parse() if d.name == self.dependency.name), None)
        if updated is None or updated.version is None:
            return None
        return SemverVersion(updated.version)

    def _update_subdependency_in(self, lockfile: DependencyFile) -> str:
        lockfile_name = posixpath.basename(lockfile.name)
        files = [
            f.with_content(remove_from_lockfile(f, self.dependency.name)) if f is lockfile else f
            for f in self.dependency_files
        ]
        retries = 0
        while True:
            result = self._call_helper(
                "updateSubdependency",
                files,
                [lockfile_name],
                directory=posixpath.dirname(lockfile.name) or ".",
            )
            if not isinstance(result, Err):
                return str(result.value[lockfile_name])
            retryable = any(s in result.message for s in RETRYABLE_SUBDEPENDENCY_ERRORS)
            retryable = retryable or f'find package "{self.dependency.name}' in result.message
            retries += 1
            if not lockfile.name.endswith("yarn.lock") or not retryable or retries > 2:  # noqa: PLR2004
                raise HelperSubprocessFailed(result.message, "updateSubdependency", error_class=result.kind)
            delay = random.uniform(3.0, 10.0)  # noqa: S311
            log.debug("Yarn registry error for %s, retrying in %.1fs", self.dependency.name, delay)
            time.sleep(delay)


def peer_dependency_blockers(message: str) -> set[str]:
    """Names of the packages involved in the peer dependency conflicts described by an npm or yarn message."""
    blockers = set()
    for pattern in (NPM_PEER_ERROR, YARN_PEER_ERROR):
        for match in pattern.finditer(message):
            blockers.add(re.sub(r"@[^@]+$", "", match.group("requiring_dep")) or match.group("requiring_dep"))
            blockers.add(match.group("required_dep"))
    return blockers


def remove_from_lockfile(lockfile: DependencyFile, name: str) -> str:
    """Remove `name` from a lockfile so the package manager has to resolve it again."""
    content = lockfile.content or ""
    if lockfile.name.endswith("yarn.lock"):
        return re.sub(rf'(?ms)^"?{re.escape(name)}@.*?\n\n', "", content)

    def _remove(node: dict[str, Any]) -> dict[str, Any]:
        if "dependencies" not in node:
            return node
        return {
            **node,
            "dependencies": {k: _remove(v) for k, v in node["dependencies"].items() if k != name},
        }

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise DependencyFileNotParseable(lockfile.path) from e
    parsed = _remove(parsed)
    if "packages" in parsed:
        parsed["packages"] = {k: v for k, v in parsed["packages"].items() if k != f"node_modules/{name}"}
    return json.dumps(parsed)


def update_package_json(content: str, dependency: Dependency, file_name: str) -> str:
    """Rewrite the declarations of `dependency` in one package.json, anchored on the quoted package name."""
    previous = [r for r in dependency.previous_requirements or () if r.file == file_name]
    for new in dependency.requirements:
        if new.file != file_name:
            continue
        old = next((r for r in previous if r.groups == new.groups), None)
        if old is None or old == new:
            continue
        if new.source is not None and new.source.type is SourceType.git:
            old_ref, new_ref = old.source.ref if old.source else None, new.source.ref
            if old_ref and new_ref and old_ref != new_ref:
                content = re.sub(
                    rf'("{re.escape(dependency.name)}"\s*:\s*"[^"#]*#){re.escape(old_ref)}"',
                    lambda m, ref=new_ref: f'{m.group(1)}{ref}"',
                    content,
                )
            continue
        if old.requirement is None or new.requirement is None:
            continue
        content = re.sub(
            rf'("{re.escape(dependency.name)}"\s*:\s*"){re.escape(old.requirement)}"',
            lambda m, req=new.requirement: f'{m.group(1)}{req}"',
            content,
        )
    return content


class NpmAndYarnFileUpdater(FileUpdater):
    """Rewrites package.json declarations and regenerates lockfiles with the JavaScript helper."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        updated_files: list[DependencyFile] = []
        manifests = [f for f in self.dependency_files if posixpath.basename(f.name) == "package.json"]
        for file in self.changed_manifests(manifests):
            content = file.content or ""
            for dependency in self.dependencies:
                content = update_package_json(content, dependency, file.name)
            updated_files.append(self.updated_file(file, content))
        updated_files.extend(self._updated_lockfiles(updated_files))
        return updated_files

    @property
    def helper(self) -> ExternalResolver:
        """The JavaScript helper."""
        if self.resolver is not None:
            return self.resolver
        return HelperSubprocessResolver(
            self.settings.helper_command(self.settings.npm_helper),
            timeout=self.settings.helper_timeout,
            runner=self.runner,
        )

    def _updated_lockfiles(self, updated_manifests: list[DependencyFile]) -> list[DependencyFile]:
        lockfiles = [f for f in self.dependency_files if posixpath.basename(f.name) in LOCKFILE_NAMES]
        if not lockfiles:
            return []
        replacements = {f.name: f for f in updated_manifests}
        files = [replacements.get(f.name, f) for f in self.dependency_files]
        check_path_dependencies(path_declarations(files), files, "package.json")
        dependencies = [
            {
                "name": d.name,
                "version": d.version,
                "requirements": [r.to_obj() for r in d.requirements],
            }
            for d in self.dependencies
        ]
        updated = []
        for lockfile in lockfiles:
            with in_a_temporary_directory() as sandbox:
                contents = self._run_update(sandbox, files, lockfile, dependencies)
            new_content = contents.get(posixpath.basename(lockfile.name))
            if new_content is None or new_content == lockfile.content:
                log.debug("%s did not change", lockfile.path)
                continue
            updated.append(lockfile.with_content(new_content))
        return updated

    def _run_update(
        self,
        sandbox: Path,
        files: Sequence[DependencyFile],
        lockfile: DependencyFile,
        dependencies: list[dict[str, Any]],
    ) -> dict[str, str]:
        write_dependency_files(sandbox, files)
        npmrc = npmrc_content(self.credentials, self.dependency_files)
        if npmrc:
            (sandbox / ".npmrc").write_text(npmrc)
        directory = posixpath.dirname(lockfile.name) or "."
        result = self.helper(
            sandbox,
            HelperRequest("update", [str(sandbox / directory), dependencies, posixpath.basename(lockfile.name)]),
            git_environment(self.credentials, sandbox),
        )
        return dict(unwrap(result, "update"))


class NpmAndYarn(PackageManager):
    """npm and yarn projects."""

    name = "npm_and_yarn"
    description = "updates JavaScript dependencies declared in package.json, locked by npm or yarn"
    version_class = SemverVersion
    requirement_class = NpmRequirement
    file_parser = NpmAndYarnFileParser
    update_checker = NpmAndYarnUpdateChecker
    file_updater = NpmAndYarnFileUpdater
