"""Python: requirements files, Pipfile and Pipfile.lock.

Versions follow PEP 440 (through `packaging`). Requirement files are parsed line by line; a Pipfile is TOML and its
lockfile JSON. Pipfile.lock can only be regenerated by `pipenv` itself, which runs in a sandbox.
"""

from __future__ import annotations

import hashlib
import html
import json
import posixpath
import re
import tomllib
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING, Any

from packaging.requirements import InvalidRequirement
from packaging.requirements import Requirement as PackagingRequirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion
from packaging.version import Version as PackagingVersion

from .errors import (
    BadRequirement,
    BadVersion,
    ContentUnchanged,
    DependencyFileNotParseable,
    DependencyFileNotResolvable,
    FileUpdateError,
    HelperSubprocessFailed,
    RequiredFileNotFound,
)
from .file_parser import FileParser
from .file_updater import FileUpdater
from .http_client import HttpClient
from .models import Dependency, DependencySet, RequirementEntry, Source, SourceType
from .package_manager import PackageManager
from .requirement import OPERATORS, Requirement
from .sandbox import (
    check_path_dependencies,
    git_environment,
    in_a_temporary_directory,
    run_shell_command,
    write_dependency_files,
)
from .update_checker import UpdateChecker
from .version import Version

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from pathlib import Path

    from .models import DependencyFile

log = getLogger(__name__)

DEFAULT_INDEX_URL = "https://pypi.org/simple"
PIPFILE_GROUPS = {"packages": "default", "dev-packages": "develop"}
PIPENV_ENVIRONMENT = {
    "PIPENV_YES": "true",
    "PIPENV_MAX_RETRIES": "3",
    "PIPENV_NOSPIN": "1",
    "PIPENV_TIMEOUT": "600",
    "PIP_DEFAULT_TIMEOUT": "60",
}
BAD_PYTHON_VERSION_MESSAGES = ("UnsupportedPythonVersion", 'Command "python setup.py egg_info" failed')
RESOLUTION_FAILURE_MESSAGES = (
    "Could not find a version that matches",
    "ResolutionFailure",
    "No matching distribution found",
    "Could not find a version that satisfies",
)


def name_pattern(name: str) -> str:
    """A regex matching `name` however its separators are written."""
    return "[-_.]+".join(re.escape(part) for part in re.split(r"[-_.]+", name))


class PipVersion(Version):
    """A PEP 440 version."""

    LOWEST_PRERELEASE_SUFFIX = ".dev0"

    def _parse(self, version_string: str) -> None:
        try:
            self.pep440: PackagingVersion = PackagingVersion(version_string)
        except InvalidVersion as e:
            msg = f"Malformed version string {version_string!r}"
            raise BadVersion(msg) from e

    @property
    def release(self) -> tuple[int, ...]:
        """The release segments."""
        return tuple(self.pep440.release)

    @property
    def is_prerelease(self) -> bool:
        """Whether this is a pre- or development release."""
        return self.pep440.is_prerelease

    @property
    def local(self) -> str | None:
        """The local version label, if any."""
        return self.pep440.local

    def _compare(self, other: PipVersion) -> int:  # type: ignore[override]
        return (self.pep440 > other.pep440) - (self.pep440 < other.pep440)

    def _hash_key(self) -> object:
        return self.pep440


# `!~>` excludes a wildcard release series (`!=3.2.*`)
PIP_OPERATORS = {**OPERATORS, "!~>": lambda version, target: not OPERATORS["~>"](version, target)}


class PipRequirement(Requirement):
    """A PEP 440 version specifier, plus the `^`/`~` shorthands Poetry allows and `||` alternatives.

    Standard specifiers are evaluated by `packaging.specifiers.SpecifierSet`. Anything it rejects falls back to the
    expanded constraints: an operator written straight after a version (`>=2.0<2.1`) is ignored, as pip itself
    ignores it, and only comma-separated constraints combine.
    """

    version_class = PipVersion
    CONSTRAINT_PATTERN = re.compile(
        r"^\s*(?P<op>===|==|!=|>=|<=|~=|>|<|~>|=)?\s*(?P<version>[vV]?[0-9][0-9A-Za-z.!\-+_]*)\s*$"
    )

    def __init__(self, *requirement_strings: str | None) -> None:
        """Parse one or more requirement strings, which are ANDed together."""
        super().__init__(*requirement_strings)
        try:
            self.specifier: SpecifierSet | None = SpecifierSet(
                ",".join(s.strip() for s in requirement_strings if s is not None and s.strip())
            )
        except InvalidSpecifier:
            self.specifier = None

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Expand PEP 440 and Poetry shorthand into plain constraints."""
        constraint = re.sub(r"(?<=\d)[<=>].*", "", constraint.strip())
        if constraint in ("", "*"):
            return [(">=", "0")]
        if constraint.startswith("^"):
            return self.caret_constraints(constraint)
        if constraint.startswith("~="):
            return [("~>", constraint[2:].strip())]
        if constraint.startswith("~") and not constraint.startswith("~>"):
            return self.tilde_constraints(constraint)
        if constraint.startswith("==="):
            return [("===", constraint[3:].strip())]
        if constraint.startswith("!=") and self.is_wildcard(constraint[2:]):
            return [("!~>", version) for op, version in self.wildcard_constraints(constraint[2:]) if op == "~>"]
        if self.is_wildcard(constraint.lstrip("=")):
            return self.wildcard_constraints(constraint.lstrip("="))
        match = self.CONSTRAINT_PATTERN.match(constraint)
        if match is None:
            msg = f"Illformed requirement {constraint!r}"
            raise BadRequirement(msg)
        op = match.group("op") or "="
        return [("=" if op == "==" else op, match.group("version"))]

    def _build(self, op: str, version: str) -> tuple[str, Version]:
        if op not in ("===", "!~>"):
            return super()._build(op, version)
        try:
            return op, self.version_class(version)
        except BadVersion as e:
            msg = f"Illformed requirement {op} {version}"
            raise BadRequirement(msg) from e

    def satisfied_by(self, version: Version | str) -> bool:
        """Return whether `version` meets every constraint (`===` compares the written strings)."""
        if isinstance(version, str):
            version = self.version_class(version)
        if self.specifier is not None:
            return self.specifier.contains(version.pep440, prereleases=True)  # type: ignore[attr-defined]
        for op, target in self.constraints:
            if op == "===":
                if str(version) != str(target):
                    return False
            elif not PIP_OPERATORS[op](version, target):
                return False
        return True


def parse_requirement_line(line: str) -> tuple[str, str | None, str | None] | None:
    """Parse one requirements-file line into `(name, requirement, markers)`, or None for anything that is not one.

    The requirement and markers are returned as written so the line can be found again when it is rewritten.
    """
    line = re.sub(r"(^|\s)#.*$", "", line)
    line = re.sub(r"\s*--hash[=\s]\S+", "", line).strip()
    if not line or line.startswith("-") or "://" in line or line.startswith((".", "/")):
        return None
    try:
        parsed = PackagingRequirement(line)
    except InvalidRequirement:
        return _parse_loose_requirement_line(line)
    if parsed.url is not None:
        return None
    head, _, markers = line.partition(";")
    requirement = REQUIREMENT_HEAD.sub("", head).strip().lstrip("(").rstrip(")").strip()
    return parsed.name, requirement or None, markers.strip() or None


def _parse_loose_requirement_line(line: str) -> tuple[str, str | None, str | None] | None:
    """Lines PEP 508 rejects but pip tolerates: Poetry shorthand, `||` and trailing operators."""
    match = LOOSE_REQUIREMENT_LINE.match(line)
    if match is None:
        return None
    requirement = (match.group("requirement") or "").strip() or None
    markers = (match.group("markers") or "").strip() or None
    return match.group("name"), requirement, markers


REQUIREMENT_HEAD = re.compile(r"^\s*[A-Za-z0-9._-]+\s*(?:\[[^\]]*\])?\s*")
LOOSE_REQUIREMENT_LINE = re.compile(
    r"""
    ^(?P<name>[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?)
    \s*(?:\[(?P<extras>[^\]]*)\])?
    \s*(?P<requirement>(?:===|==|!=|>=|<=|~=|>|<|\^|~)[^;]*?)?
    \s*(?:;(?P<markers>.*))?$
    """,
    re.VERBOSE,
)


def logical_lines(content: str) -> list[str]:
    """Join backslash continuations."""
    return re.sub(r"\\\s*\n", " ", content).splitlines()


def pinned_version(requirement: str | None) -> str | None:
    """The version of an exact `==` pin, if `requirement` is one."""
    if requirement is None:
        return None
    match = re.fullmatch(r"\s*===?\s*([^\s,*]+)\s*", requirement)
    return None if match is None else match.group(1)


def pipfile_hash(content: str) -> str:
    """The `_meta.hash.sha256` pipenv records for a Pipfile."""
    data = tomllib.loads(content)
    sources = data.get("source") or [{"url": DEFAULT_INDEX_URL, "verify_ssl": True, "name": "pypi"}]
    payload = {
        "_meta": {"sources": sources, "requires": data.get("requires", {})},
        "default": data.get("packages", {}),
        "develop": data.get("dev-packages", {}),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()).hexdigest()


def path_declarations(files: Iterable[DependencyFile]) -> list[tuple[str, str]]:
    """`(Pipfile name, path)` for every local `path` or `file` declaration of the given Pipfiles."""
    declarations = []
    for file in files:
        if posixpath.basename(file.name) != "Pipfile" or file.content is None:
            continue
        data = FileParser.load_toml(file)
        for section in PIPFILE_GROUPS:
            for declaration in (data.get(section) or {}).values():
                if not isinstance(declaration, dict):
                    continue
                path = declaration.get("path") or declaration.get("file")
                if isinstance(path, str) and "://" not in path:
                    declarations.append((file.name, path))
    return declarations


class PipFileParser(FileParser):
    """Parses requirements files, Pipfile and Pipfile.lock."""

    filename_patterns = ("requirements*.txt", "*requirements.txt", "*.in", "Pipfile", "Pipfile.lock")

    def check_required_files(self) -> None:
        """A requirements file or a Pipfile is required."""
        if not self.requirement_files() and self.get_original_file("Pipfile") is None:
            raise RequiredFileNotFound("requirements.txt")

    def requirement_files(self) -> list[DependencyFile]:
        """Requirements files (`.txt` and pip-compile `.in` files)."""
        return [f for f in self.dependency_files if f.name.endswith((".txt", ".in")) and not f.support_file]

    @cached_property
    def pipfile_lock(self) -> dict[str, Any] | None:
        """The parsed Pipfile.lock, if there is one."""
        lockfile = self.get_original_file("Pipfile.lock")
        if lockfile is None:
            return None
        parsed = self.load_json(lockfile)
        if not isinstance(parsed, dict):
            msg = f"{lockfile.path} is not a JSON object"
            raise DependencyFileNotParseable(lockfile.path, msg)
        return parsed

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        for file in self.requirement_files():
            dependencies += self._requirement_file_dependencies(file)
        pipfile = self.get_original_file("Pipfile")
        if pipfile is not None:
            dependencies += self._pipfile_dependencies(pipfile)
        dependencies += self._lockfile_subdependencies(dependencies)
        return dependencies.dependencies

    def _requirement_file_dependencies(self, file: DependencyFile) -> list[Dependency]:
        dependencies = []
        for line in logical_lines(file.content or ""):
            parsed = parse_requirement_line(line)
            if parsed is None:
                continue
            name, requirement, _ = parsed
            if requirement is not None:
                try:
                    PipRequirement.requirements_array(requirement)
                except BadRequirement:
                    log.warning("Cannot parse requirement %r of %s in %s", requirement, name, file.name)
            version = pinned_version(requirement)
            if version is not None and not PipVersion.correct(version):
                version = None
            entry = RequirementEntry(file=file.name, requirement=requirement)
            dependencies.append(Dependency(canonicalize_name(name), version, [entry], Pip.name))
        return dependencies

    def _pipfile_dependencies(self, pipfile: DependencyFile) -> list[Dependency]:
        data = self.load_toml(pipfile)
        dependencies = []
        for section, group in PIPFILE_GROUPS.items():
            for name, declaration in (data.get(section) or {}).items():
                requirement, source = self._pipfile_declaration(declaration)
                entry = RequirementEntry(file=pipfile.name, requirement=requirement, groups=(group,), source=source)
                version = self._locked_version(name, group)
                dependencies.append(Dependency(canonicalize_name(name), version, [entry], Pip.name))
        return dependencies

    @staticmethod
    def _pipfile_declaration(declaration: str | dict[str, Any]) -> tuple[str | None, Source | None]:
        if isinstance(declaration, str):
            return declaration, None
        if "git" in declaration:
            return None, Source(SourceType.git, url=declaration["git"], ref=declaration.get("ref"))
        if "path" in declaration or "file" in declaration:
            return None, Source(SourceType.path, url=declaration.get("path") or declaration.get("file"))
        return declaration.get("version", "*"), None

    def _locked_version(self, name: str, group: str) -> str | None:
        if self.pipfile_lock is None:
            return None
        entries = {canonicalize_name(n): details for n, details in (self.pipfile_lock.get(group) or {}).items()}
        details = entries.get(canonicalize_name(name))
        if not isinstance(details, dict):
            return None
        if "git" in details:
            return details.get("ref")
        return pinned_version(details.get("version"))

    def _lockfile_subdependencies(self, known: DependencySet) -> list[Dependency]:
        if self.pipfile_lock is None:
            return []
        dependencies = []
        for group in PIPFILE_GROUPS.values():
            for name, details in (self.pipfile_lock.get(group) or {}).items():
                version = pinned_version(details.get("version")) if isinstance(details, dict) else None
                if canonicalize_name(name) in known or version is None:
                    continue
                dependencies.append(Dependency(canonicalize_name(name), version, (), Pip.name))
        return dependencies


class IndexFinder:
    """Collects the package index URLs configured for a project."""

    def __init__(self, dependency_files: Sequence[DependencyFile], credentials: Iterable[Any]) -> None:
        """Initialize with the project's files and credentials."""
        self.dependency_files: Sequence[DependencyFile] = dependency_files
        self.credentials: list[Any] = list(credentials)

    def _pipfile_sources(self) -> list[str]:
        pipfile = next((f for f in self.dependency_files if f.name == "Pipfile"), None)
        if pipfile is None:
            return []
        try:
            data = tomllib.loads(pipfile.content or "")
        except tomllib.TOMLDecodeError:
            log.debug("Ignoring the sources of an unparseable Pipfile")
            return []
        return [s["url"] for s in data.get("source") or [] if isinstance(s, dict) and s.get("url")]

    def _requirement_file_option(self, *options: str) -> list[str]:
        urls = []
        pattern = re.compile(rf"^\s*(?:{'|'.join(re.escape(o) for o in options)})[=\s]+(?P<url>\S+)", re.MULTILINE)
        for file in self.dependency_files:
            if file.name.endswith((".txt", ".in")):
                urls.extend(m.group("url") for m in pattern.finditer(file.content or ""))
        return urls

    def main_index_url(self) -> str:
        """The index replacing PyPI, if one is configured."""
        configured = self._requirement_file_option("--index-url", "-i") or self._pipfile_sources()[:1]
        return (configured[0] if configured else DEFAULT_INDEX_URL).rstrip("/")

    def extra_index_urls(self) -> list[str]:
        """Additional indexes, from requirement files, Pipfile sources and credentials."""
        urls = self._requirement_file_option("--extra-index-url") + self._pipfile_sources()[1:]
        for credential in self.credentials:
            if credential.type == "python_index" and credential.registry:
                url = credential.registry
                if credential.secret and "@" not in url:
                    user = credential.username or credential.secret
                    url = re.sub(r"^(https?://)", rf"\g<1>{user}:{credential.secret}@", url)
                urls.append(url)
        return [u.rstrip("/") for u in dict.fromkeys(urls)]

    def index_urls(self) -> list[str]:
        """Every index to look at, the main one first."""
        return [self.main_index_url(), *(u for u in self.extra_index_urls() if u != self.main_index_url())]


ANCHOR = re.compile(r"<a\s(?P<attributes>[^>]*)>\s*(?P<text>[^<]*?)\s*</a>", re.IGNORECASE | re.DOTALL)


def index_links(page: str) -> list[tuple[str, str, bool]]:
    """Return `(file name, href, yanked)` for every link of a simple index page."""
    links = []
    for match in ANCHOR.finditer(page):
        attributes = match.group("attributes")
        href = re.search(r"href\s*=\s*[\"']([^\"']*)[\"']", attributes)
        yanked = "data-yanked" in attributes
        links.append((html.unescape(match.group("text")), html.unescape(href.group(1)) if href else "", yanked))
    return links


def version_from_filename(name: str, filename: str) -> str | None:
    """Extract the version from a distribution file name."""
    match = re.match(
        rf"^{name_pattern(name)}-(?P<version>[0-9][^-]*?)"
        r"(?:\.tar\.gz|\.tar\.bz2|\.tgz|\.zip|\.egg|\.exe|-py.*|-[0-9].*\.whl|-cp.*|-.*\.(?:whl|egg))$",
        filename,
        re.IGNORECASE,
    )
    return None if match is None else match.group("version")


class PipRequirementsUpdater:
    """Rewrites requirement strings to admit a new version, keeping their operators."""

    def __init__(self, requirements: Iterable[RequirementEntry], latest_resolvable_version: PipVersion | None) -> None:
        """Initialize with the current entries and the version they must admit."""
        self.requirements: list[RequirementEntry] = list(requirements)
        self.version: PipVersion | None = latest_resolvable_version

    def updated_requirements(self) -> list[RequirementEntry]:
        """Return the rewritten entries."""
        if self.version is None:
            return self.requirements
        return [self._updated(entry) for entry in self.requirements]

    def _updated(self, entry: RequirementEntry) -> RequirementEntry:
        requirement = entry.requirement
        if requirement is None or requirement.strip() == "*" or entry.source is not None:
            return entry
        try:
            alternatives = PipRequirement.requirements_array(requirement)
        except BadRequirement:
            return entry
        if any(r.satisfied_by(self.version) for r in alternatives):  # type: ignore[arg-type]
            return entry
        updated = re.sub(
            r"(?P<op>===|==|~=|<=|<|\^|~)(?P<space>\s*)(?P<version>[0-9][0-9A-Za-z.!+\-_*]*)",
            self._replace,
            requirement,
        )
        try:
            satisfied = any(r.satisfied_by(self.version) for r in PipRequirement.requirements_array(updated))  # type: ignore[arg-type]
        except BadRequirement:
            satisfied = False
        return entry.replace(requirement=updated if satisfied else ":unfixable")

    def _replace(self, match: re.Match[str]) -> str:
        op, old = match.group("op"), match.group("version")
        assert self.version is not None  # noqa: S101
        new = str(self.version)
        precision = len(old.rstrip(".*").split("."))
        if op == "<":
            release = list(self.version.release[:precision]) + [0] * max(precision - len(self.version.release), 0)
            release[-1] += 1
            new = ".".join(str(s) for s in release)
        elif old.endswith("*") or op in ("~=", "^", "~"):
            release = list(self.version.release) + [0] * max(precision - len(self.version.release), 0)
            new = ".".join(str(s) for s in release[:precision]) + (".*" if old.endswith("*") else "")
        return f"{op}{match.group('space')}{new}"


class PipUpdateChecker(UpdateChecker):
    """Update checks against PEP 503 simple indexes."""

    version_class = PipVersion
    requirement_class = PipRequirement

    @cached_property
    def index_finder(self) -> IndexFinder:
        """The index URLs of the project."""
        return IndexFinder(self.dependency_files, self.credentials)

    @cached_property
    def available_versions(self) -> list[Version]:
        """Every non-yanked version on any configured index, after filtering, newest first."""
        versions: set[str] = set()
        for index_url in self.index_finder.index_urls():
            versions.update(self._versions_on(index_url))
        return sorted(self.filter_versions(self.parse_versions(versions)), reverse=True)

    def _versions_on(self, index_url: str) -> set[str]:
        url = f"{index_url}/{canonicalize_name(self.dependency.name)}/"
        response = self.http.get(url, source=re.sub(r"//[^@/]+@", "//", index_url))
        if response.status_code == 404:  # noqa: PLR2004
            return set()
        response.raise_for_status()
        versions = set()
        for filename, _, yanked in index_links(response.text):
            version = version_from_filename(self.dependency.name, filename)
            if version is not None and not yanked:
                versions.add(version)
        return versions

    def _has_registry_source(self) -> bool:
        return self.dependency.source_details() is None

    def _latest_version(self) -> Version | str | None:
        if not self._has_registry_source():
            return None
        return self.available_versions[0] if self.available_versions else None

    @property
    def pipfile(self) -> DependencyFile | None:
        """The project's Pipfile, if any."""
        return next((f for f in self.dependency_files if f.name == "Pipfile"), None)

    def _latest_resolvable_version(self) -> Version | str | None:
        latest = self.latest_version
        if not isinstance(latest, PipVersion) or self.pipfile is None:
            return latest
        current = self.current_version
        lower = f">={current}," if current is not None else ""
        return self._resolve_with_pipenv(f"{lower}<={latest}")

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        latest = self.latest_version
        if not isinstance(latest, PipVersion):
            return None
        if self.pipfile is not None and self.dependency.top_level:
            try:
                return self._resolve_with_pipenv(None)
            except DependencyFileNotResolvable as e:
                log.info("%s cannot be resolved without unlocking: %s", self.dependency.name, e)
                return None
        return next((v for v in self.available_versions if v <= latest and self.satisfies_requirements(v)), None)

    def _updated_requirements(self) -> list[RequirementEntry]:
        version = self.latest_resolvable_version
        return PipRequirementsUpdater(
            self.dependency.requirements,
            version if isinstance(version, PipVersion) else None,
        ).updated_requirements()

    def _resolve_with_pipenv(self, requirement: str | None) -> PipVersion | None:
        """Lock the Pipfile with every other package frozen and `requirement` (if given) for this one."""
        assert self.pipfile is not None  # noqa: S101
        pins = {d.name: f"=={d.version}" for d in PipFileParser(self.dependency_files).parse() if d.top_level and d.version}
        pins.pop(self.dependency.name, None)
        if requirement is not None:
            pins[self.dependency.name] = requirement
        content = freeze_pipfile(self.pipfile.content or "", pins)
        files = [f.with_content(content) if f is self.pipfile else f for f in self.dependency_files if f.name != "Pipfile.lock"]
        with in_a_temporary_directory() as sandbox:
            lock = run_pipenv_lock(self, sandbox, files)
        details = {canonicalize_name(n): d for group in PIPFILE_GROUPS.values() for n, d in (lock.get(group) or {}).items()}
        version = pinned_version((details.get(self.dependency.name) or {}).get("version"))
        return None if version is None else PipVersion(version)


def run_pipenv_lock(
    owner: PipUpdateChecker | PipFileUpdater,
    sandbox: Path,
    files: Sequence[DependencyFile],
) -> dict[str, Any]:
    """Run `pipenv lock` in `sandbox`, retrying once with the fallback Python on interpreter mismatches."""
    check_path_dependencies(path_declarations(files), files)
    write_dependency_files(sandbox, files)
    env = {**PIPENV_ENVIRONMENT, **git_environment(owner.credentials, sandbox)}
    command = [*owner.settings.helper_command(owner.settings.pipenv), "lock"]
    try:
        _run_pipenv(owner, command, sandbox, env)
    except HelperSubprocessFailed as e:
        if not any(m in str(e) or m in e.output for m in BAD_PYTHON_VERSION_MESSAGES):
            raise
        log.info("pipenv failed with an unsupported Python, retrying with Python %s", owner.settings.fallback_python)
        _run_pipenv(owner, [*owner.settings.helper_command(owner.settings.pipenv), "--python", owner.settings.fallback_python, "lock"], sandbox, env)
    try:
        return json.loads((sandbox / "Pipfile.lock").read_text())
    except (OSError, json.JSONDecodeError) as e:
        msg = f"pipenv did not produce a usable Pipfile.lock: {e!s}"
        raise DependencyFileNotResolvable(msg) from e


def _run_pipenv(
    owner: PipUpdateChecker | PipFileUpdater,
    command: list[str],
    sandbox: Path,
    env: Mapping[str, str],
) -> str:
    try:
        return run_shell_command(command, cwd=sandbox, env=env, runner=owner.runner)
    except HelperSubprocessFailed as e:
        if any(m in str(e) or m in e.output for m in RESOLUTION_FAILURE_MESSAGES):
            raise DependencyFileNotResolvable(str(e)) from e
        raise


def freeze_pipfile(content: str, pins: Mapping[str, str]) -> str:
    """Set the requirement of the named (normalised) packages in a Pipfile, leaving every other byte alone."""
    section = None
    lines = []
    for line in content.splitlines(keepends=True):
        header = re.match(r"^\s*\[(?P<section>[^\]]+)\]\s*$", line)
        if header is not None:
            section = header.group("section").strip()
            lines.append(line)
            continue
        declaration = re.match(r"^(?P<prefix>\s*[\"']?(?P<name>[A-Za-z0-9._-]+)[\"']?\s*=\s*)(?P<value>.*?)(?P<eol>\s*)$", line)
        if section not in PIPFILE_GROUPS or declaration is None or canonicalize_name(declaration.group("name")) not in pins:
            lines.append(line)
            continue
        pin = pins[canonicalize_name(declaration.group("name"))]
        value = declaration.group("value")
        if value.startswith(("'", '"')):
            value = f'"{pin}"'
        elif value.startswith("{") and re.search(r"\bversion\s*=", value):
            value = re.sub(r"(\bversion\s*=\s*)([\"'])[^\"']*\2", lambda m: f'{m.group(1)}"{pin}"', value)
        lines.append(f"{declaration.group('prefix')}{value}{declaration.group('eol')}")
    return "".join(lines)


class PipFileUpdater(FileUpdater):
    """Rewrites requirements files and Pipfiles, and regenerates Pipfile.lock with pipenv."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        updated_files: list[DependencyFile] = []
        for file in self.changed_manifests(self.dependency_files):
            if file.name == "Pipfile":
                updated_files.append(self.updated_file(file, self.updated_pipfile_content(file)))
            elif file.name.endswith((".txt", ".in")):
                updated_files.append(self.updated_file(file, self.updated_requirement_file_content(file)))
        if self.get_original_file("Pipfile.lock") is not None and self.get_original_file("Pipfile") is not None:
            updated_files.extend(self._updated_pipenv_files(updated_files))
        return updated_files

    @cached_property
    def http(self) -> HttpClient:
        """HTTP client used to refresh requirement hashes."""
        return HttpClient(self.settings)

    def _changed_pairs(self, dependency: Dependency, file_name: str) -> list[tuple[RequirementEntry, RequirementEntry]]:
        previous = [r for r in dependency.previous_requirements or () if r.file == file_name]
        pairs = []
        for new in dependency.requirements:
            if new.file != file_name:
                continue
            old = next((r for r in previous if r.groups == new.groups), None)
            if old is not None and old != new and old.requirement and new.requirement:
                pairs.append((old, new))
        return pairs

    def updated_pipfile_content(self, file: DependencyFile) -> str:
        """Rewrite the Pipfile declarations whose requirement changed."""
        content = file.content or ""
        for dependency in self.dependencies:
            for old, new in self._changed_pairs(dependency, file.name):
                declaration = re.compile(rf"(?:^|[\"']){name_pattern(dependency.name)}[\"']?\s*=.*$", re.IGNORECASE | re.MULTILINE)
                updated = declaration.sub(
                    lambda m, o=old.requirement, n=new.requirement: m.group(0).replace(o, n),
                    content,
                )
                if updated == content:
                    raise ContentUnchanged(file.path)
                content = updated
        return content

    def updated_requirement_file_content(self, file: DependencyFile) -> str:
        """Rewrite the requirement lines whose requirement changed, refreshing hashes when the version moved."""
        content = file.content or ""
        for dependency in self.dependencies:
            for old, new in self._changed_pairs(dependency, file.name):
                line_pattern = re.compile(
                    rf"^(?P<head>{name_pattern(dependency.name)}\s*(?:\[[^\]]*\])?\s*)"
                    rf"{re.escape(old.requirement or '')}(?P<tail>(?:.*\\[ \t]*\n)*.*)$",
                    re.IGNORECASE | re.MULTILINE,
                )
                content = line_pattern.sub(
                    lambda m, d=dependency, n=new.requirement, f=file: self._updated_line(m, d, n or "", f),
                    content,
                )
        return content

    def _updated_line(self, match: re.Match[str], dependency: Dependency, requirement: str, file: DependencyFile) -> str:
        tail = match.group("tail")
        if "--hash" in tail and dependency.version != dependency.previous_version and dependency.version:
            hashes = self._hashes_for(dependency.name, dependency.version, file)
            algorithm_hashes = " \\\n    ".join(f"--hash=sha256:{h}" for h in hashes)
            tail = re.sub(r"(\s*\\?\s*--hash[=\s]\S+)+", f" \\\n    {algorithm_hashes}" if hashes else "", tail)
        return f"{match.group('head')}{requirement}{tail}"

    def _hashes_for(self, name: str, version: str, file: DependencyFile) -> list[str]:
        index_url = IndexFinder([file], self.credentials).main_index_url()
        response = self.http.get(f"{index_url}/{canonicalize_name(name)}/")
        response.raise_for_status()
        hashes = []
        for filename, href, _ in index_links(response.text):
            digest = re.search(r"#sha256=([0-9a-f]{64})", href)
            if digest is not None and version_from_filename(name, filename) == version:
                hashes.append(digest.group(1))
        return sorted(hashes)

    def _updated_pipenv_files(self, updated_files: list[DependencyFile]) -> list[DependencyFile]:
        pipfile = next((f for f in updated_files if f.name == "Pipfile"), None) or self.get_original_file("Pipfile")
        lockfile = self.get_original_file("Pipfile.lock")
        assert pipfile is not None and lockfile is not None  # noqa: S101
        try:
            original_lock = json.loads(lockfile.content or "")
        except json.JSONDecodeError as e:
            raise DependencyFileNotParseable(lockfile.path) from e

        pins = {d.name: f"=={d.version}" for d in PipFileParser(self.dependency_files).parse() if d.top_level and d.version}
        pins.update({d.name: f"=={d.version}" for d in self.dependencies if d.version})
        prepared = pipfile.with_content(freeze_pipfile(pipfile.content or "", pins))
        files = [prepared if f.name == "Pipfile" else f for f in self.dependency_files if f.name != "Pipfile.lock"]
        generated = self._generated_requirement_files(original_lock)

        with in_a_temporary_directory() as sandbox:
            new_lock = run_pipenv_lock(self, sandbox, files)
            requirements = {}
            for group, targets in generated.items():
                if targets:
                    command = [*self.settings.helper_command(self.settings.pipenv), "requirements"] + (["--dev-only"] if group == "develop" else [])
                    requirements[group] = run_shell_command(command, cwd=sandbox, env=PIPENV_ENVIRONMENT, runner=self.runner)

        meta = new_lock.setdefault("_meta", {})
        original_meta = original_lock.get("_meta") or {}
        meta.setdefault("hash", {})["sha256"] = pipfile_hash(pipfile.content or "")
        meta["requires"] = original_meta.get("requires", {})
        meta["sources"] = original_meta.get("sources", [])
        content = re.sub(r"\{\n\s*\}", "{}", json.dumps(new_lock, indent=4)) + "\n"
        if content == lockfile.content:
            msg = "Expected Pipfile.lock to change!"
            raise FileUpdateError(msg)

        updated = [lockfile.with_content(content)]
        for group, targets in generated.items():
            for target in targets:
                if requirements.get(group) and requirements[group] != target.content:
                    updated.append(target.with_content(requirements[group]))
        return updated

    def _generated_requirement_files(self, lock: dict[str, Any]) -> dict[str, list[DependencyFile]]:
        """Requirement files listing exactly the packages of one lockfile group (they were generated from it)."""
        generated: dict[str, list[DependencyFile]] = {}
        for group in PIPFILE_GROUPS.values():
            locked = sorted(canonicalize_name(n) for n in lock.get(group) or {})
            generated[group] = []
            for file in self.dependency_files:
                if not file.name.endswith(".txt"):
                    continue
                names = sorted(
                    canonicalize_name(parsed[0])
                    for parsed in (parse_requirement_line(line) for line in logical_lines(file.content or ""))
                    if parsed is not None
                )
                if locked and names == locked:
                    generated[group].append(file)
        return generated


class Pip(PackageManager):
    """pip and pipenv projects."""

    name = "pip"
    description = "updates Python dependencies declared in requirements files or a Pipfile"
    version_class = PipVersion
    requirement_class = PipRequirement
    file_parser = PipFileParser
    update_checker = PipUpdateChecker
    file_updater = PipFileUpdater
