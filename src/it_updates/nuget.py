"""NuGet: SDK-style project files, `packages.config` and MSBuild properties.

Version ranges follow https://learn.microsoft.com/nuget/concepts/package-versioning: a bare version is a minimum,
intervals and floating (`1.*`) versions are accepted.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING

from .errors import BadRequirement, BadVersion, RequiredFileNotFound
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
from .version import GenericVersion

if TYPE_CHECKING:
    from .models import DependencyFile
    from .version import Version

log = getLogger(__name__)

NUGET_ORG = "https://api.nuget.org/v3/index.json"
PROJECT_FILE_PATTERNS = ("*.csproj", "*.vbproj", "*.fsproj")
PROPERTY_FILE_PATTERNS = ("Directory.Build.props", "Directory.Build.targets", "Directory.Packages.props")
NUGET_VERSION_PATTERN = re.compile(r"^[vV]?[0-9]+(?:\.[0-9]+){0,3}(?:-[0-9A-Za-z.\-]+)?(?:\+[0-9A-Za-z.\-]+)?$")
VERSION_TOKEN = re.compile(r"[0-9a-zA-Z]+(?:\.[a-zA-Z0-9\-]+)*")
REFERENCE_ELEMENT = re.compile(
    r"<(?P<tag>PackageReference|PackageVersion|package)\b(?P<attributes>[^>]*?)(?:/>|>(?P<body>.*?)</(?P=tag)\s*>)",
    re.DOTALL,
)


class NugetVersion(GenericVersion):
    """Up to four numeric parts, then an optional SemVer prerelease and build metadata."""

    def _parse(self, version_string: str) -> None:
        if not NUGET_VERSION_PATTERN.match(version_string):
            msg = f"Malformed version string {version_string!r}"
            raise BadVersion(msg)
        super()._parse(version_string)


class NugetRequirement(Requirement):
    """NuGet version ranges (one range per requirement, no OR)."""

    version_class = NugetVersion
    OR_SEPARATOR = None

    def split_constraints(self, requirement_string: str) -> list[str]:
        """An interval contains a comma, so only comma lists outside brackets split."""
        requirement_string = requirement_string.strip()
        if requirement_string.startswith(("[", "(")):
            return [requirement_string]
        return super().split_constraints(requirement_string)

    def expand_constraint(self, constraint: str) -> list[tuple[str, str]]:
        """Expand intervals, floating versions and minimum versions."""
        constraint = constraint.strip()
        if constraint.startswith(("[", "(")):
            return self.interval_constraints(constraint)
        if constraint == "*":
            return [(">=", "0")]
        if constraint.endswith("-*"):
            return [(">=", f"{constraint[:-2]}-0")]
        if "*" in constraint:
            return self.wildcard_constraints(constraint)
        match = self.CONSTRAINT_PATTERN.match(constraint)
        if match is None:
            msg = f"Illformed requirement {constraint!r}"
            raise BadRequirement(msg)
        # a bare version is a minimum
        return [(match.group("op") or ">=", match.group("version"))]


class NugetFileParser(FileParser):
    """Parses project files and `packages.config`, resolving `$(Property)` versions."""

    filename_patterns = (
        *PROJECT_FILE_PATTERNS,
        "packages.config",
        *PROPERTY_FILE_PATTERNS,
        "nuget.config",
        "NuGet.Config",
    )

    def check_required_files(self) -> None:
        """A project file or `packages.config` is required."""
        if not self.files_matching(*PROJECT_FILE_PATTERNS, "packages.config"):
            raise RequiredFileNotFound("*.csproj")

    @cached_property
    def property_documents(self) -> list[tuple[DependencyFile, ET.Element]]:
        """Shared property files, searched after the project file itself."""
        return [(f, strip_namespaces(self.load_xml(f))) for f in self.files_matching(*PROPERTY_FILE_PATTERNS)]

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        for file in self.files_matching(*PROJECT_FILE_PATTERNS, *PROPERTY_FILE_PATTERNS):
            root = strip_namespaces(self.load_xml(file))
            documents = [(file, root), *(d for d in self.property_documents if d[0] is not file)]
            for element in (*root.iter("PackageReference"), *root.iter("PackageVersion")):
                dependency = self._reference_dependency(file, element, documents)
                if dependency is not None:
                    dependencies += dependency
        for file in self.files_matching("packages.config"):
            for element in strip_namespaces(self.load_xml(file)).iter("package"):
                name, version = element.get("id"), element.get("version")
                if not name or not version:
                    continue
                groups = ("devDependencies",) if element.get("developmentDependency") == "true" else ("dependencies",)
                entry = RequirementEntry(file=file.name, requirement=version, groups=groups)
                dependencies += Dependency(name, self._version_from(version), [entry], Nuget.name)
        return dependencies.dependencies

    def _reference_dependency(
        self,
        file: DependencyFile,
        element: ET.Element,
        documents: list[tuple[DependencyFile, ET.Element]],
    ) -> Dependency | None:
        name = element.get("Include") or element.get("Update")
        declared = element.get("Version") or element.get("VersionOverride") or element.findtext("Version")
        if not name or not declared:
            return None
        declared = declared.strip()
        metadata: tuple[tuple[str, str], ...] = ()
        property_name = property_reference(declared)
        if property_name is not None:
            details = find_property(property_name, documents)
            if details is None:
                log.debug("Skipping %s: property %s is not defined", name, property_name)
                return None
            declared, metadata = details.value, property_metadata(details)
        if "$(" in declared:
            return None
        entry = RequirementEntry(file=file.name, requirement=declared, groups=("dependencies",), metadata=metadata)
        return Dependency(name, self._version_from(declared), [entry], Nuget.name)

    @staticmethod
    def _version_from(requirement: str) -> str | None:
        exact = re.match(r"^\[\s*([^,\]]+?)\s*\]$", requirement)
        if exact is not None:
            requirement = exact.group(1)
        return requirement if NugetVersion.correct(requirement) else None


class NugetUpdateChecker(UpdateChecker):
    """Update checks against every configured feed (v3 flat containers and v2 OData feeds)."""

    version_class = NugetVersion
    requirement_class = NugetRequirement

    @cached_property
    def feed_urls(self) -> list[str]:
        """Feeds from `nuget.config` and the credentials, with nuget.org unless `<clear />` removed it."""
        urls: list[str] = []
        include_default = True
        for file in self.dependency_files:
            if file.name.lower().rsplit("/", 1)[-1] != "nuget.config":
                continue
            root = strip_namespaces(FileParser.load_xml(file))
            sources = root.find("packageSources")
            if sources is None:
                continue
            for node in sources:
                if node.tag == "clear":
                    urls, include_default = [], False
                elif node.tag == "add" and node.get("value", "").startswith("http"):
                    urls.append(node.get("value", ""))
        urls.extend(c.registry for c in self.credentials if c.type == "nuget_feed" and c.registry)
        if include_default:
            urls.append(NUGET_ORG)
        return list(dict.fromkeys(urls))

    def _auth_for(self, url: str) -> tuple[str, str] | None:
        credential = next((c for c in self.credentials if c.type == "nuget_feed" and c.registry == url), None)
        if credential is None or credential.secret is None:
            return None
        return credential.username or "user", credential.secret

    def _v3_versions(self, index_url: str) -> list[str]:
        auth = self._auth_for(index_url)
        index = self.http.get_json(index_url, auth=auth)
        base = next(
            (r["@id"] for r in index.get("resources", []) if str(r.get("@type", "")).startswith("PackageBaseAddress")),
            None,
        )
        if base is None:
            log.debug("%s has no flat container", index_url)
            return []
        response = self.http.get(f"{base.rstrip('/')}/{self.dependency.name.lower()}/index.json", auth=auth)
        if response.status_code != 200:  # noqa: PLR2004
            return []
        return list(response.json().get("versions", []))

    def _v2_versions(self, feed_url: str) -> list[str]:
        url = f"{feed_url.rstrip('/')}/FindPackagesById()?id='{self.dependency.name}'"
        response = self.http.get(url, auth=self._auth_for(feed_url))
        if response.status_code != 200:  # noqa: PLR2004
            return []
        root = strip_namespaces(ET.fromstring(response.text))  # noqa: S314
        versions = []
        for entry in root.iter("entry"):
            if (entry.findtext("properties/Listed") or "").strip().lower() == "false":
                continue
            version = (entry.findtext("properties/Version") or "").strip()
            if version:
                versions.append(version)
        return versions

    @cached_property
    def available_versions(self) -> list[Version]:
        """Every version listed by any feed."""
        version_strings: list[str] = []
        for url in self.feed_urls:
            fetch = self._v3_versions if url.endswith(".json") else self._v2_versions
            version_strings.extend(fetch(url))
        return list(dict.fromkeys(self.parse_versions(version_strings)))

    @cached_property
    def wants_prerelease(self) -> bool:
        """Whether the current version is a prerelease or a requirement names one."""
        current = self.current_version
        if current is not None and current.is_prerelease:
            return True
        return any(
            "-" in part for r in self.dependency.requirements for part in (r.requirement or "").split(",")
        )

    def _latest_version(self) -> Version | str | None:
        return max(self.filter_versions(self.available_versions), default=None)

    def _latest_resolvable_version(self) -> Version | str | None:
        return self.latest_version

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        # restore picks the lowest version allowed, so nothing moves without a new declaration
        return None

    def _updated_requirements(self) -> list[RequirementEntry]:
        latest = self.latest_resolvable_version
        if latest is None:
            return list(self.dependency.requirements)
        return [self._updated_entry(entry, str(latest)) for entry in self.dependency.requirements]

    def _updated_entry(self, entry: RequirementEntry, latest: str) -> RequirementEntry:
        requirement = entry.requirement
        if requirement is None or "," in requirement or requirement.strip() == "*":
            return entry
        if "*" in requirement:
            updated = update_wildcard_requirement(requirement, NugetVersion(latest))
        else:
            updated = VERSION_TOKEN.sub(latest, requirement)
        return entry if updated == requirement else entry.replace(requirement=updated)


def update_wildcard_requirement(requirement: str, latest: NugetVersion) -> str:
    """Keep the wildcard at the same precision: `1.2.*` becomes `5.3.*` for 5.3.1."""
    precision = len([p for p in re.split(r"[.\-]", requirement.split("*", 1)[0]) if p])
    wildcard = re.split(r"(?=[.\-]\*)", requirement, maxsplit=1)
    section = wildcard[1] if len(wildcard) > 1 else requirement
    return ".".join(str(s) for s in latest.release[:precision]) + section


def update_reference(content: str, name: str, old_version: str, new_version: str) -> str:
    """Rewrite the version of every `PackageReference`/`PackageVersion`/`package` element for `name`."""
    name_attribute = re.compile(rf"\b(?:Include|Update|id)\s*=\s*\"{re.escape(name)}\"", re.IGNORECASE)
    attribute = re.compile(rf"(\b(?:Version|version|VersionOverride)\s*=\s*\"){re.escape(old_version)}\"")
    child = re.compile(rf"(<Version>\s*){re.escape(old_version)}(\s*</Version>)")

    def _replace(match: re.Match[str]) -> str:
        if not name_attribute.search(match.group("attributes")):
            return match.group(0)
        element = attribute.sub(lambda m: f'{m.group(1)}{new_version}"', match.group(0))
        return child.sub(lambda m: f"{m.group(1)}{new_version}{m.group(2)}", element)

    return REFERENCE_ELEMENT.sub(_replace, content)


class NugetFileUpdater(FileUpdater):
    """Rewrites reference versions, or the property that drives them (once)."""

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
                    contents[target] = update_reference(
                        contents[target], dependency.name, old.requirement, new.requirement
                    )
                if target not in touched:
                    touched.append(target)
        return [self.updated_file(f, contents[f.name]) for f in self.dependency_files if f.name in touched]


class Nuget(PackageManager):
    """.NET projects."""

    name = "nuget"
    description = "updates NuGet package references in project files and packages.config"
    version_class = NugetVersion
    requirement_class = NugetRequirement
    file_parser = NugetFileParser
    update_checker = NugetUpdateChecker
    file_updater = NugetFileUpdater
