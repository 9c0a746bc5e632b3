"""Maven: `pom.xml` dependencies, managed dependencies and build plugins."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING

import requests

from .errors import BadRequirement, BadVersion, PrivateSourceTimedOut
from .file_parser import FileParser
from .file_updater import FileUpdater
from .models import Dependency, DependencySet, RequirementEntry
from .package_manager import PackageManager
from .properties import (
    changed_pairs,
    find_property,
    property_metadata,
    property_reference,
    strip_namespaces,
    update_property_value,
)
from .requirement import Requirement
from .update_checker import UpdateChecker
from .version import Version, _cmp

if TYPE_CHECKING:
    from .models import DependencyFile

log = getLogger(__name__)

CENTRAL_REPO_URL = "https://repo.maven.apache.org/maven2"
DEFAULT_PLUGIN_GROUP = "org.apache.maven.plugins"
TYPE_SUFFIXES = ("jre", "android", "java")
DECLARATION_PATHS = (
    "dependencies/dependency",
    "dependencyManagement/dependencies/dependency",
    "build/plugins/plugin",
    "build/pluginManagement/plugins/plugin",
    "profiles/profile/dependencies/dependency",
    "profiles/profile/build/plugins/plugin",
)
# Properties every POM defines implicitly; dependencies versioned with them belong to the project itself
BUILT_IN_PROPERTY = re.compile(r"^(?:project|pom)\.|^version$")

MAVEN_VERSION_PATTERN = re.compile(r"^[vV]?[0-9][0-9A-Za-z.\-_]*$")
QUALIFIER_ALIASES = {"a": "alpha", "b": "beta", "m": "milestone", "cr": "rc", "ga": "", "final": "", "release": ""}
QUALIFIER_RANKS = {"alpha": 0, "beta": 1, "milestone": 2, "rc": 3, "snapshot": 4, "": 5, "sp": 6}
PRERELEASE_QUALIFIERS = frozenset({"alpha", "beta", "milestone", "rc", "snapshot", "pre", "preview", "dev", "ea"})
# What a missing item compares as: after every prerelease qualifier, before `sp` and any number
NEUTRAL_ITEM = (1, QUALIFIER_RANKS[""], "")


class MavenVersion(Version):
    """A Maven version, ordered the way Maven's `ComparableVersion` orders them.

    The version splits into numbers and qualifiers. Known qualifiers order
    `alpha < beta < milestone < rc < snapshot < (release) < sp`, unknown qualifiers (`jre`, `android`) come after
    them and numbers after everything. Trailing zeros and release qualifiers are ignored, so `1.0.0 == 1.0-final`.
    """

    LOWEST_PRERELEASE_SUFFIX = "-alpha"

    def _parse(self, version_string: str) -> None:
        if not MAVEN_VERSION_PATTERN.match(version_string):
            msg = f"Malformed version string {version_string!r}"
            raise BadVersion(msg)
        cleaned = version_string.lstrip("vV")
        numeric = re.match(r"[0-9]+(?:\.[0-9]+)*", cleaned)
        assert numeric is not None  # noqa: S101
        self._release: tuple[int, ...] = tuple(int(s) for s in numeric.group(0).split("."))
        self._qualifiers: tuple[int | str, ...] = tuple(
            int(token) if token.isdigit() else QUALIFIER_ALIASES.get(token.lower(), token.lower())
            for token in re.findall(r"[0-9]+|[A-Za-z]+", cleaned[numeric.end() :])
        )

    @property
    def release(self) -> tuple[int, ...]:
        """The leading dot-separated numbers."""
        return self._release

    @property
    def is_prerelease(self) -> bool:
        """Whether a qualifier marks a prerelease (or a snapshot)."""
        return any(q in PRERELEASE_QUALIFIERS for q in self._qualifiers if isinstance(q, str))

    @cached_property
    def _items(self) -> tuple[tuple[int, int | str] | tuple[int, int, str], ...]:
        release = list(self._release)
        while len(release) > 1 and release[-1] == 0:
            release.pop()
        items: list = [(3, n) for n in release]
        for qualifier in self._qualifiers:
            if isinstance(qualifier, int):
                items.append((3, qualifier))
            elif qualifier in QUALIFIER_RANKS:
                items.append((1, QUALIFIER_RANKS[qualifier], ""))
            else:
                items.append((2, 0, qualifier))
        while len(items) > 1 and items[-1] in (NEUTRAL_ITEM, (3, 0)):
            items.pop()
        return tuple(items)

    def _compare(self, other: MavenVersion) -> int:  # type: ignore[override]
        ours, theirs = self._items, other._items
        length = max(len(ours), len(theirs))
        for index in range(length):
            a = ours[index] if index < len(ours) else NEUTRAL_ITEM
            b = theirs[index] if index < len(theirs) else NEUTRAL_ITEM
            result = _cmp(a, b)
            if result:
                return result
        return 0

    def _hash_key(self) -> object:
        return self._items


class MavenRequirement(Requirement):
    """Maven requirements.

    A bare ("soft") version asks for exactly that version. Intervals (`[1.0,2.0)`, `(,1.0]`, `[1.0]`) joined by
    commas are alternatives; Gradle's dynamic versions (`1.+`) are accepted as well.
    """

    version_class = MavenVersion
    OR_SEPARATOR = re.compile(r"(?<=[\])])\s*,\s*(?=[\[(])")

    def split_constraints(self, requirement_string: str) -> list[str]:
        """An interval contains a comma, so a requirement is never split."""
        return [requirement_string.strip()] if requirement_string.strip() else []

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Expand intervals, dynamic versions and soft versions."""
        constraint = constraint.strip()
        if constraint.startswith(("[", "(")):
            return self.interval_constraints(constraint)
        if constraint.endswith("+"):
            prefix = constraint[:-1].rstrip(".")
            return [("~>", f"{prefix}.0")] if prefix else [(">=", "0")]
        match = self.CONSTRAINT_PATTERN.match(constraint)
        if match is not None and match.group("op"):
            return super().expand_constraint(constraint)
        if not MavenVersion.correct(constraint):
            msg = f"Illformed requirement {constraint!r}"
            raise BadRequirement(msg)
        return [("=", constraint)]


def coordinates(root: ET.Element) -> str | None:
    """`groupId:artifactId` of a POM (the group may be inherited from the parent)."""
    group = root.findtext("groupId") or root.findtext("parent/groupId")
    artifact = root.findtext("artifactId")
    if not group or not artifact:
        return None
    return f"{group.strip()}:{artifact.strip()}"


class MavenFileParser(FileParser):
    """Parses every `pom.xml` of a (possibly multi-module) project."""

    filename_patterns = ("pom.xml",)

    def check_required_files(self) -> None:
        """The root `pom.xml` is required."""
        self.require_file("pom.xml")

    @cached_property
    def documents(self) -> list[tuple[DependencyFile, ET.Element]]:
        """Every POM, parsed with namespaces stripped."""
        return [(f, strip_namespaces(self.load_xml(f))) for f in self.files_matching("pom.xml")]

    def inheritance_chain(self, file: DependencyFile, root: ET.Element) -> list[tuple[DependencyFile, ET.Element]]:
        """The POM followed by the parents available among the dependency files."""
        by_coordinates = {coordinates(r): (f, r) for f, r in self.documents}
        chain = [(file, root)]
        while True:
            parent = chain[-1][1].find("parent")
            if parent is None:
                break
            key = f"{(parent.findtext('groupId') or '').strip()}:{(parent.findtext('artifactId') or '').strip()}"
            document = by_coordinates.get(key)
            if document is None or document in chain:
                break
            chain.append(document)
        return chain

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        for file, root in self.documents:
            for path in DECLARATION_PATHS:
                for element in root.findall(path):
                    dependency = self._dependency_from(file, root, element, plugin=path.endswith("plugin"))
                    if dependency is not None:
                        dependencies += dependency
        return dependencies.dependencies

    def _dependency_from(
        self,
        file: DependencyFile,
        root: ET.Element,
        element: ET.Element,
        *,
        plugin: bool,
    ) -> Dependency | None:
        group = (element.findtext("groupId") or (DEFAULT_PLUGIN_GROUP if plugin else "")).strip()
        artifact = (element.findtext("artifactId") or "").strip()
        declared = (element.findtext("version") or "").strip()
        if not group or not artifact or not declared or "${" in group + artifact:
            return None
        name = f"{group}:{artifact}"
        metadata: tuple[tuple[str, str], ...] = ()
        property_name = property_reference(declared)
        if property_name is not None:
            if BUILT_IN_PROPERTY.match(property_name):
                log.debug("Skipping %s: versioned with the project", name)
                return None
            details = find_property(property_name, self.inheritance_chain(file, root))
            if details is None:
                log.debug("Skipping %s: property %s is not defined", name, property_name)
                return None
            declared, metadata = details.value, property_metadata(details)
        if "${" in declared:
            return None
        version = declared if MavenVersion.correct(declared) else None
        entry = RequirementEntry(file=file.name, requirement=declared, metadata=metadata)
        return Dependency(name, version, [entry], Maven.name)


class MavenUpdateChecker(UpdateChecker):
    """Update checks against `maven-metadata.xml` of each configured repository."""

    version_class = MavenVersion
    requirement_class = MavenRequirement

    @cached_property
    def repository_urls(self) -> list[str]:
        """Repositories declared by the declaring POMs and the credentials, then Maven Central."""
        urls: list[str] = []
        files = {r.file for r in self.dependency.requirements}
        for file in self.dependency_files:
            if file.name not in files:
                continue
            root = strip_namespaces(FileParser.load_xml(file))
            nodes = [*root.findall("repositories/repository/url"), *root.findall("profiles/profile/repositories/repository/url")]
            for node in nodes:
                if node.text and node.text.strip().startswith("http"):
                    urls.append(node.text.strip())
        urls.extend(c.registry for c in self.credentials if c.type == "maven_repository" and c.registry)
        urls.append(CENTRAL_REPO_URL)
        return list(dict.fromkeys(url.rstrip("/") for url in urls))

    def _auth_for(self, url: str) -> tuple[str, str] | None:
        for credential in self.credentials:
            if credential.type != "maven_repository" or not credential.registry:
                continue
            if url.startswith(credential.registry.rstrip("/")):
                return credential.username or "", credential.secret or ""
        return None

    def metadata_versions(self, repository_url: str) -> list[str]:
        """Versions listed by a repository's `maven-metadata.xml` for the dependency."""
        group, artifact = self.dependency.name.split(":", 1)
        url = f"{repository_url}/{group.replace('.', '/')}/{artifact}/maven-metadata.xml"
        try:
            response = self.http.get(url, auth=self._auth_for(repository_url), source=repository_url)
        except (requests.ConnectionError, PrivateSourceTimedOut) as e:
            if repository_url == CENTRAL_REPO_URL:
                raise
            log.warning("Skipping repository %s: %s", repository_url, e)
            return []
        if response.status_code != 200:  # noqa: PLR2004
            log.debug("No metadata for %s at %s (%d)", self.dependency.name, repository_url, response.status_code)
            return []
        try:
            root = ET.fromstring(response.text)  # noqa: S314
        except ET.ParseError:
            log.debug("Unparseable metadata for %s at %s", self.dependency.name, repository_url)
            return []
        return [(v.text or "").strip() for v in strip_namespaces(root).findall("versioning/versions/version")]

    @cached_property
    def available_versions(self) -> list[Version]:
        """Every version published in any repository."""
        version_strings = [v for url in self.repository_urls for v in self.metadata_versions(url)]
        return list(dict.fromkeys(self.parse_versions(version_strings)))

    def _wants_date_based_version(self) -> bool:
        current = self.current_version
        return current is not None and current >= MavenVersion("100")

    def _version_type(self, version: str | None) -> str | None:
        parts = re.split(r"[.\-]", version or "")
        return next((t for t in TYPE_SUFFIXES if t in parts), None)

    def _latest_version(self) -> Version | str | None:
        candidates = self.filter_versions(self.available_versions)
        if not self._wants_date_based_version():
            candidates = [v for v in candidates if v <= MavenVersion("1900")]
        if self.dependency.version is not None:
            current_type = self._version_type(self.dependency.version)
            candidates = [v for v in candidates if self._version_type(str(v)) == current_type]
        return max(candidates, default=None)

    def _latest_resolvable_version(self) -> Version | str | None:
        # Maven picks declared versions as written: nothing to resolve against
        return self.latest_version

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        # the declaration is the lock
        return None

    def _updated_requirements(self) -> list[RequirementEntry]:
        latest = self.latest_resolvable_version
        if not isinstance(latest, MavenVersion):
            return list(self.dependency.requirements)
        return [self._updated_entry(entry, latest) for entry in self.dependency.requirements]

    def _updated_entry(self, entry: RequirementEntry, latest: MavenVersion) -> RequirementEntry:
        requirement = entry.requirement
        if requirement is None:
            return entry
        if MavenVersion.correct(requirement):
            return entry.replace(requirement=str(latest))
        try:
            if any(r.satisfied_by(latest) for r in MavenRequirement.requirements_array(requirement)):
                return entry
        except BadRequirement:
            return entry
        if requirement.endswith("+"):
            precision = len(requirement[:-1].rstrip(".").split(".")) if requirement != "+" else 0
            prefix = ".".join(str(s) for s in latest.release[:precision])
            return entry.replace(requirement=f"{prefix}.+")
        return entry.replace(requirement=":unfixable")


DECLARATION = re.compile(r"<(?P<tag>dependency|plugin)>(?P<body>.*?)</(?P=tag)>", re.DOTALL)


def update_declaration(content: str, name: str, old_version: str, new_version: str) -> str:
    """Rewrite `<version>` in every `<dependency>`/`<plugin>` block declaring `name` at `old_version`."""
    group, artifact = name.split(":", 1)
    version = re.compile(rf"(<version>\s*){re.escape(old_version)}(\s*</version>)")

    def _replace(match: re.Match[str]) -> str:
        body = match.group("body")
        if not re.search(rf"<artifactId>\s*{re.escape(artifact)}\s*</artifactId>", body):
            return match.group(0)
        declared_group = re.search(r"<groupId>\s*([^<]*?)\s*</groupId>", body)
        default_group = DEFAULT_PLUGIN_GROUP if match.group("tag") == "plugin" else None
        if (declared_group.group(1) if declared_group else default_group) != group:
            return match.group(0)
        updated = version.sub(lambda m: f"{m.group(1)}{new_version}{m.group(2)}", body, count=1)
        tag = match.group("tag")
        return f"<{tag}>{updated}</{tag}>"

    return DECLARATION.sub(_replace, content)


class MavenFileUpdater(FileUpdater):
    """Rewrites declaration versions, or the property that drives them (once)."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        contents = {f.name: f.content or "" for f in self.dependency_files}
        touched: list[str] = []
        rewritten_properties: set[tuple[str, str]] = set()
        for dependency in self.dependencies:
            for old, new in changed_pairs(dependency.previous_requirements or (), dependency.requirements):
                if old.requirement is None or new.requirement is None:
                    continue
                property_name, property_file = old.meta("property_name"), old.meta("property_file")
                if property_name is not None and property_file is not None:
                    if (property_file, property_name) in rewritten_properties:
                        continue
                    rewritten_properties.add((property_file, property_name))
                    target = property_file
                    contents[target] = update_property_value(
                        contents[target], property_name, old.requirement, new.requirement
                    )
                else:
                    target = old.file
                    contents[target] = update_declaration(contents[target], dependency.name, old.requirement, new.requirement)
                if target not in touched:
                    touched.append(target)
        return [self.updated_file(f, contents[f.name]) for f in self.dependency_files if f.name in touched]


class Maven(PackageManager):
    """Maven projects."""

    name = "maven"
    description = "updates dependency and plugin versions in pom.xml files"
    version_class = MavenVersion
    requirement_class = MavenRequirement
    file_parser = MavenFileParser
    update_checker = MavenUpdateChecker
    file_updater = MavenFileUpdater
