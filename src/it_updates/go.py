"""Go modules: go.mod and go.sum.

Go resolves with minimal version selection, so the newest published version is always resolvable once the
requirement is raised, and nothing can move without raising it.
"""

from __future__ import annotations

import re
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING

from .errors import BadRequirement, DependencyFileNotParseable, DependencyFileNotResolvable, HelperSubprocessFailed
from .file_parser import FileParser
from .file_updater import FileUpdater
from .models import Dependency, DependencySet, RequirementEntry
from .package_manager import PackageManager
from .requirement import Requirement
from .sandbox import git_environment, in_a_temporary_directory, run_shell_command, write_dependency_files
from .update_checker import UpdateChecker
from .version import SemverVersion

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .models import DependencyFile
    from .version import Version

log = getLogger(__name__)

PSEUDO_VERSION = re.compile(r"-(?:0\.)?(?:[0-9A-Za-z.]+\.)?\d{14}-[0-9a-f]{12}(?:\+incompatible)?$")
REQUIRE_LINE = re.compile(
    r"^(?P<path>[^\s\"]+|\"[^\"]+\")\s+(?P<version>v[0-9][^\s]*)\s*(?://\s*(?P<comment>.*))?$",
)
REPLACE_LINE = re.compile(r"^(?P<old>\S+)(?:\s+\S+)?\s*=>\s*(?P<new>\S+)(?:\s+(?P<version>\S+))?\s*$")
UNRESOLVABLE_MESSAGES = ("unknown revision", "invalid version", "no matching versions", "not found")


class GoVersion(SemverVersion):
    """A Go module version: SemVer with a mandatory `v`, pseudo-versions and `+incompatible`."""

    @property
    def is_pseudo_version(self) -> bool:
        """Whether this version names a commit rather than a tag."""
        return PSEUDO_VERSION.search(self.version_string) is not None

    @property
    def incompatible(self) -> bool:
        """Whether this is a v2+ version of a module without a go.mod."""
        return self.version_string.endswith("+incompatible")


class GoRequirement(Requirement):
    """A go.mod requirement: one exact (minimum) version."""

    version_class = GoVersion
    OR_SEPARATOR = None

    def split_constraints(self, requirement_string: str) -> list[str]:
        """A go.mod requirement is a single version."""
        return [requirement_string.strip()] if requirement_string.strip() else []

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """The requirement is the version itself."""
        if not GoVersion.correct(constraint):
            msg = f"Illformed requirement {constraint!r}"
            raise BadRequirement(msg)
        return [("=", constraint)]


def escape_module_path(path: str) -> str:
    """Escape a module path for the proxy protocol (upper-case letters become `!` and the lower-case letter)."""
    return re.sub(r"[A-Z]", lambda m: "!" + m.group(0).lower(), path)


def go_mod_statements(content: str) -> Iterator[tuple[str, str, int]]:
    """Yield `(verb, line, line index)` for every statement of a go.mod, expanding `verb ( ... )` blocks."""
    block: str | None = None
    for index, raw in enumerate(content.splitlines()):
        line = raw.strip()
        if block is not None:
            if line == ")":
                block = None
            elif line and not line.startswith("//"):
                yield block, line, index
            continue
        match = re.match(r"^(?P<verb>module|go|require|replace|exclude|retract|toolchain)\s*(?P<rest>.*)$", line)
        if match is None:
            continue
        if match.group("rest") == "(":
            block = match.group("verb")
        else:
            yield match.group("verb"), match.group("rest"), index


class GoModFileParser(FileParser):
    """Parses go.mod."""

    filename_patterns = ("go.mod", "go.sum")

    def check_required_files(self) -> None:
        """A go.mod is required."""
        self.require_file("go.mod")

    def _parse(self) -> list[Dependency]:
        go_mod = self.require_file("go.mod")
        statements = list(go_mod_statements(go_mod.content or ""))
        if not any(verb == "module" for verb, _, _ in statements):
            msg = f"{go_mod.path} has no module directive"
            raise DependencyFileNotParseable(go_mod.path, msg)
        local_replacements = set()
        for verb, line, _ in statements:
            match = REPLACE_LINE.match(line) if verb == "replace" else None
            if match is not None and match.group("new").startswith((".", "/")):
                local_replacements.add(match.group("old"))

        dependencies = DependencySet()
        for verb, line, _ in statements:
            if verb != "require":
                continue
            match = REQUIRE_LINE.match(line)
            if match is None:
                log.debug("Skipping unparseable require line %r", line)
                continue
            path = match.group("path").strip('"')
            if path in local_replacements:
                log.debug("Skipping %s: replaced by a local path", path)
                continue
            version = match.group("version")
            indirect = (match.group("comment") or "").strip().startswith("indirect")
            requirements = () if indirect else [RequirementEntry(file=go_mod.name, requirement=version)]
            dependencies += Dependency(path, version, requirements, GoModules.name)
        return dependencies.dependencies


class GoModulesUpdateChecker(UpdateChecker):
    """Update checks against the Go module proxy."""

    version_class = GoVersion
    requirement_class = GoRequirement

    @property
    def proxy_url(self) -> str:
        """The first HTTP proxy of the configured `GOPROXY` list."""
        proxies = [p for p in re.split(r"[,|]", self.settings.goproxy) if p.startswith("http")]
        return (proxies[0] if proxies else "https://proxy.golang.org").rstrip("/")

    @cached_property
    def available_versions(self) -> list[Version]:
        """Tagged versions from the proxy, filtered, newest first."""
        url = f"{self.proxy_url}/{escape_module_path(self.dependency.name)}/@v/list"
        response = self.http.get(url, source=self.proxy_url)
        if response.status_code in (404, 410):
            log.info("%s is not available from %s", self.dependency.name, self.proxy_url)
            return []
        response.raise_for_status()
        versions = self.parse_versions(line.strip() for line in response.text.splitlines() if line.strip())
        current = self.current_version
        wants_incompatible = isinstance(current, GoVersion) and current.incompatible
        candidates = [
            v
            for v in versions
            if isinstance(v, GoVersion) and not v.is_pseudo_version and (wants_incompatible or not v.incompatible)
        ]
        return sorted(self.filter_versions(candidates), reverse=True)

    def _latest_version(self) -> Version | str | None:
        latest = self.available_versions[0] if self.available_versions else None
        current = self.current_version
        if latest is not None and current is not None and latest < current:
            # a pseudo-version newer than every tag
            return current
        return latest

    def _latest_resolvable_version(self) -> Version | str | None:
        return self.latest_version

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        return None

    def _updated_requirements(self) -> list[RequirementEntry]:
        latest = self.latest_resolvable_version
        if latest is None:
            return list(self.dependency.requirements)
        return [r.replace(requirement=str(latest)) for r in self.dependency.requirements]


def update_go_mod(content: str, dependency: Dependency) -> str:
    """Move `dependency` to its new version in go.mod, marking it indirect if it no longer has requirements."""
    if dependency.version is None:
        return content
    lines = content.splitlines(keepends=True)
    found = False
    for verb, line, index in go_mod_statements(content):
        match = REQUIRE_LINE.match(line) if verb == "require" else None
        if match is None or match.group("path").strip('"') != dependency.name:
            continue
        found = True
        comment = (match.group("comment") or "").strip()
        if not dependency.requirements and not comment.startswith("indirect"):
            comment = f"indirect; {comment}" if comment else "indirect"
        raw = lines[index]
        prefix = raw[: raw.index(match.group("path"))]
        ending = "\n" if raw.endswith("\n") else ""
        rebuilt = f"{prefix}{match.group('path')} {dependency.version}"
        lines[index] = f"{rebuilt} // {comment}{ending}" if comment else f"{rebuilt}{ending}"
    if found:
        return "".join(lines)
    return _add_indirect_requirement(content, dependency)


def _add_indirect_requirement(content: str, dependency: Dependency) -> str:
    """Add a `// indirect` requirement for a module go.mod did not list yet."""
    addition = f"{dependency.name} {dependency.version} // indirect"
    block = re.search(r"^require\s*\(\n(?P<body>(?:.*\n)*?)\)", content, re.MULTILINE)
    if block is not None:
        first = block.group("body").split("\n", 1)[0]
        indent = first[: len(first) - len(first.lstrip())] or "\t"
        return f"{content[: block.end('body')]}{indent}{addition}\n{content[block.end('body') :]}"
    separator = "" if content.endswith("\n") else "\n"
    return f"{content}{separator}\nrequire {addition}\n"


class GoModFileUpdater(FileUpdater):
    """Rewrites go.mod and refreshes go.sum with `go mod download`."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        go_mod = self.get_original_file("go.mod")
        if go_mod is None:
            return []
        content = go_mod.content or ""
        for dependency in self.dependencies:
            if dependency.version != dependency.previous_version or dependency.changed_files():
                content = update_go_mod(content, dependency)
        updated_files = [self.updated_file(go_mod, content)]

        go_sum = self.get_original_file("go.sum")
        if go_sum is not None:
            go_sum_content = self._updated_go_sum(updated_files[0], go_sum)
            if go_sum_content != go_sum.content:
                updated_files.append(go_sum.with_content(go_sum_content))
        return updated_files

    def _updated_go_sum(self, go_mod: DependencyFile, go_sum: DependencyFile) -> str:
        with in_a_temporary_directory() as sandbox:
            write_dependency_files(sandbox, [go_mod, go_sum])
            env = {
                "GOPROXY": self.settings.goproxy,
                "GOFLAGS": "-mod=mod",
                "GO111MODULE": "on",
                "GOPATH": str(sandbox / ".gopath"),
                **git_environment(self.credentials, sandbox),
            }
            go = self.settings.helper_command(self.settings.go)
            for dependency in self.dependencies:
                command = [*go, "mod", "download", f"{dependency.name}@{dependency.version}"]
                try:
                    run_shell_command(command, cwd=sandbox, env=env, runner=self.runner)
                except HelperSubprocessFailed as e:
                    if any(m in str(e) for m in UNRESOLVABLE_MESSAGES):
                        raise DependencyFileNotResolvable(str(e)) from e
                    raise
            return (sandbox / "go.sum").read_text()


class GoModules(PackageManager):
    """Go modules projects."""

    name = "go_modules"
    description = "updates Go module requirements in go.mod and go.sum"
    version_class = GoVersion
    requirement_class = GoRequirement
    file_parser = GoModFileParser
    update_checker = GoModulesUpdateChecker
    file_updater = GoModFileUpdater
