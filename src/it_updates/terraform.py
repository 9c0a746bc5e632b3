"""Terraform: module blocks of `.tf` files and terragrunt `terraform` blocks.

Only modules sourced from a registry or a git repository can be updated. Registry modules carry a `version`
constraint; git modules are pinned with a `?ref=` query parameter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from .errors import DependencyFileNotEvaluatable, DependencyFileNotParseable, RequiredFileNotFound
from .file_parser import FileParser
from .file_updater import FileUpdater
from .git_commit_checker import VERSION_REGEX, source_from_url
from .models import Dependency, DependencySet, RequirementEntry, Source, SourceType
from .package_manager import PackageManager
from .requirement import Requirement, raise_upper_bounds, update_version_string
from .update_checker import UpdateChecker
from .version import SemverVersion

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .models import DependencyFile
    from .version import Version

log = getLogger(__name__)

PUBLIC_REGISTRY = "registry.terraform.io"
ARCHIVE_EXTENSIONS = (".zip", ".tbz2", ".tgz", ".txz", ".tar.gz", ".tar.bz2", ".tar.xz")
BLOCK_START = re.compile(r"^[ \t]*(?P<kind>module|terraform)(?:[ \t]+\"(?P<label>[^\"]+)\")?[ \t]*\{", re.MULTILINE)
ATTRIBUTE = re.compile(r"^[ \t]*(?P<key>[A-Za-z_][\w-]*)[ \t]*=[ \t]*\"(?P<value>(?:[^\"\\]|\\.)*)\"")


class TerraformRequirement(Requirement):
    """Terraform version constraints: `= != > >= < <= ~>` joined by commas, with no OR."""

    version_class = SemverVersion
    OR_SEPARATOR = None


@dataclass(frozen=True)
class HclBlock:
    """A `module "label" { ... }` or `terraform { ... }` block and its top-level string attributes."""

    kind: str
    label: str | None
    start: int
    end: int
    attributes: dict[str, str]


def _block_end(content: str, open_brace: int) -> int:
    """Return the index just past the brace closing the one at `open_brace`, skipping strings and comments."""
    depth = 0
    i = open_brace
    while i < len(content):
        char = content[i]
        if char == '"':
            i += 1
            while i < len(content) and content[i] != '"':
                i += 2 if content[i] == "\\" else 1
        elif char == "#" or content.startswith("//", i):
            i = content.find("\n", i)
            if i == -1:
                break
        elif content.startswith("/*", i):
            i = content.find("*/", i)
            if i == -1:
                break
            i += 1
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    msg = "Unbalanced braces"
    raise ValueError(msg)


def _top_level_attributes(body: str) -> dict[str, str]:
    attributes: dict[str, str] = {}
    depth = 0
    for line in body.splitlines():
        if depth == 0:
            match = ATTRIBUTE.match(line)
            if match is not None:
                attributes.setdefault(match.group("key"), match.group("value"))
        stripped = re.sub(r'"(?:[^"\\]|\\.)*"', '""', line.split("#", 1)[0])
        depth += stripped.count("{") - stripped.count("}")
    return attributes


def hcl_blocks(content: str, kind: str) -> Iterator[HclBlock]:
    """Yield the blocks of the given kind in an HCL document."""
    for match in BLOCK_START.finditer(content):
        if match.group("kind") != kind:
            continue
        open_brace = match.end() - 1
        end = _block_end(content, open_brace)
        body = content[open_brace + 1 : end - 1]
        yield HclBlock(kind, match.group("label"), match.start(), end, _top_level_attributes(body))


def split_subdirectory(source: str) -> str:
    """Drop the `//subdir` part of a module source (a `://` scheme separator is kept)."""
    return re.split(r"(?<!:)//", source, maxsplit=1)[0]


def source_type(source: str) -> str:
    """Classify a module source string (https://developer.hashicorp.com/terraform/language/modules/sources)."""
    if source.startswith("."):
        return "path"
    if source.startswith(("github.com/", "bitbucket.org/", "git::", "git@")):
        return "git"
    if source.startswith("hg::"):
        return "mercurial"
    if source.startswith("s3::"):
        return "s3"
    if "::" in source.split("/")[0]:
        msg = f"Unknown module source {source!r}"
        raise DependencyFileNotEvaluatable(msg)
    if not source.startswith("http"):
        return "registry"
    if urlparse(split_subdirectory(source)).path.endswith(ARCHIVE_EXTENSIONS) or "archive=" in urlparse(source).query:
        return "http_archive"
    msg = f"HTTP module source {source!r} is not an archive"
    raise DependencyFileNotEvaluatable(msg)


def registry_source(source: str) -> Source:
    """Source details of a registry module (`namespace/name/provider`, optionally behind a hostname)."""
    parts = source.split("/")
    if len(parts) == 3:  # noqa: PLR2004
        return Source(SourceType.registry, registry=PUBLIC_REGISTRY, module_identifier=source)
    if len(parts) == 4:  # noqa: PLR2004
        return Source(SourceType.registry, registry=parts[0], module_identifier="/".join(parts[1:]))
    msg = f"Invalid registry source specified: '{source}'"
    raise DependencyFileNotEvaluatable(msg)


def git_source(source: str) -> Source:
    """Source details of a git module, with the ref taken from the `?ref=` query parameter."""
    git_url = re.sub(r"^git::", "", source.strip())
    if not git_url.startswith("git@") and "://" not in git_url:
        git_url = f"https://{git_url}"
    bare = git_url.split("git@")[-1].replace(":", "/", 1) if "git@" in git_url else re.sub(r"^.*?://", "", git_url)
    query = urlparse(f"https://{bare}").query
    git_url = split_subdirectory(git_url).replace(f"?{query}", "") if query else split_subdirectory(git_url)
    ref = parse_qs(query).get("ref", [None])[0]
    return Source(SourceType.git, url=git_url, ref=ref)


def version_from_ref(ref: str | None) -> str | None:
    """The version named by a version-shaped git ref."""
    match = VERSION_REGEX.search(ref or "")
    return match.group("version") if match else None


class TerraformFileParser(FileParser):
    """Parses `module` blocks of `.tf` files and `terraform` blocks of terragrunt files."""

    filename_patterns = ("*.tf", "*.tfvars", "terragrunt.hcl")

    @property
    def terraform_files(self) -> list[DependencyFile]:
        """The `.tf` files."""
        return self.files_matching("*.tf")

    @property
    def terragrunt_files(self) -> list[DependencyFile]:
        """The terragrunt configuration files."""
        return self.files_matching("*.tfvars", "terragrunt.hcl")

    def check_required_files(self) -> None:
        """At least one Terraform configuration file is required."""
        if not self.terraform_files and not self.terragrunt_files:
            raise RequiredFileNotFound("*.tf")

    def _blocks(self, file: DependencyFile, kind: str) -> list[HclBlock]:
        try:
            return list(hcl_blocks(file.content or "", kind))
        except ValueError as e:
            msg = f"{file.path} is not valid HCL: {e!s}"
            raise DependencyFileNotParseable(file.path, msg) from e

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        for file in self.terraform_files:
            for block in self._blocks(file, "module"):
                if "source" in block.attributes:
                    dependency = self._module_dependency(file, block)
                    if dependency is not None:
                        dependencies += dependency
        for file in self.terragrunt_files:
            for block in self._blocks(file, "terraform"):
                if "source" in block.attributes:
                    dependency = self._terragrunt_dependency(file, block)
                    if dependency is not None:
                        dependencies += dependency
        return dependencies.dependencies

    def _source(self, raw_source: str) -> Source | None:
        bare_source = self._proxied_source(raw_source)
        kind = source_type(bare_source)
        if kind == "registry":
            return registry_source(bare_source)
        if kind == "git":
            return git_source(bare_source)
        log.debug("Skipping module sourced from %s (%s)", bare_source, kind)
        return None

    def _proxied_source(self, raw_source: str) -> str:
        """Follow an HTTP module source to the location it redirects Terraform to with `X-Terraform-Get`."""
        if not raw_source.startswith("http"):
            return raw_source
        url = split_subdirectory(raw_source)
        if urlparse(url).path.endswith(ARCHIVE_EXTENSIONS) or "archive=" in urlparse(raw_source).query:
            return raw_source
        response = self.http.get(f"{url}?terraform-get=1")
        if "X-Terraform-Get" in response.headers:
            return response.headers["X-Terraform-Get"]
        meta = re.search(r"<meta\s+name=\"terraform-get\"\s+content=\"([^\"]+)\"", response.text)
        return meta.group(1) if meta else raw_source

    def _entry(self, file: DependencyFile, requirement: str | None, source: Source, raw_source: str) -> RequirementEntry:
        return RequirementEntry(file=file.name, requirement=requirement, source=source, metadata=(("source", raw_source),))

    def _module_dependency(self, file: DependencyFile, block: HclBlock) -> Dependency | None:
        raw_source = block.attributes["source"]
        source = self._source(raw_source)
        if source is None:
            return None
        requirement = block.attributes.get("version", "").strip() or None
        if source.type is SourceType.git:
            name = block.label or raw_source
            version = version_from_ref(source.ref)
        else:
            name = source.module_identifier or raw_source
            version = requirement if requirement and requirement[0].isdigit() else None
        return Dependency(name, version, [self._entry(file, requirement, source, raw_source)], Terraform.name)

    def _terragrunt_dependency(self, file: DependencyFile, block: HclBlock) -> Dependency | None:
        raw_source = block.attributes["source"]
        source = self._source(raw_source)
        if source is None or source.type is not SourceType.git:
            return None
        repo = source_from_url(source.url)
        name = repo[1] if repo else source.url or raw_source
        return Dependency(name, version_from_ref(source.ref), [self._entry(file, None, source, raw_source)], Terraform.name)


class TerraformUpdateChecker(UpdateChecker):
    """Update checks against a module registry, or the module's git repository."""

    version_class = SemverVersion
    requirement_class = TerraformRequirement

    @property
    def source(self) -> Source | None:
        """The module's source."""
        return self.dependency.source_details()

    def _registry_headers(self, host: str) -> dict[str, str]:
        credential = next((c for c in self.credentials if c.type == "terraform_registry" and c.host == host), None)
        if credential is None or credential.secret is None:
            return {}
        return {"Authorization": f"Bearer {credential.secret}"}

    def modules_url(self, host: str) -> str:
        """Discover the modules API of a registry host with Terraform's remote service discovery."""
        if host == PUBLIC_REGISTRY:
            return f"https://{host}/v1/modules/"
        services = self.http.get_json(f"https://{host}/.well-known/terraform.json", headers=self._registry_headers(host))
        path = services.get("modules.v1")
        if not path:
            msg = f"{host} does not provide a module registry"
            raise DependencyFileNotEvaluatable(msg)
        return path if path.startswith("http") else f"https://{host}{path}"

    @cached_property
    def available_versions(self) -> list[Version]:
        """Published versions of a registry module, filtered."""
        source = self.source
        assert source is not None  # noqa: S101
        host = source.registry or PUBLIC_REGISTRY
        url = f"{self.modules_url(host).rstrip('/')}/{source.module_identifier}/versions"
        body = self.http.get_json(url, headers=self._registry_headers(host), source=host)
        version_strings = [v["version"] for module in body.get("modules", []) for v in module.get("versions", [])]
        return self.filter_versions(self.parse_versions(version_strings))

    def _latest_version(self) -> Version | str | None:
        source = self.source
        if source is None:
            return None
        if source.type is SourceType.git:
            return self._latest_git_version()
        return max(self.available_versions, default=None)

    def _latest_git_version(self) -> Version | None:
        checker = self.git_commit_checker
        if not checker.pinned_ref_looks_like_version():
            return None
        tag = checker.local_tag_for_latest_version()
        version = version_from_ref(tag["tag"]) if tag else None
        return self.version_class(version) if version else None

    def _latest_resolvable_version(self) -> Version | str | None:
        # Modules are not resolved against each other
        return self.latest_version

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        source = self.source
        if source is None or source.type is SourceType.git:
            return None
        candidates = [v for v in self.available_versions if self.satisfies_requirements(v)]
        return max(candidates, default=None)

    def _updated_requirements(self) -> list[RequirementEntry]:
        source = self.source
        if source is not None and source.type is SourceType.git:
            return self.updated_git_requirements()
        latest = self.latest_resolvable_version
        if not isinstance(latest, SemverVersion):
            return list(self.dependency.requirements)
        return [self._updated_entry(entry, latest) for entry in self.dependency.requirements]

    def _updated_entry(self, entry: RequirementEntry, latest: SemverVersion) -> RequirementEntry:
        if entry.requirement is None:
            return entry
        requirement = TerraformRequirement(entry.requirement)
        if requirement.satisfied_by(latest):
            return entry
        ops = {op for op, _ in requirement.constraints}
        if ops <= {"=", "~>"}:
            return entry.replace(requirement=update_version_string(entry.requirement, latest))
        if ops & {"<", "<="}:
            return entry.replace(requirement=raise_upper_bounds(entry.requirement, latest))
        return entry.replace(requirement=":unfixable")


def updated_block(text: str, old: RequirementEntry, new: RequirementEntry) -> str:
    """Rewrite the `version` attribute or the git ref of one module block."""
    if old.requirement != new.requirement and old.requirement is not None and new.requirement is not None:
        text = re.sub(
            rf"(?m)^(?P<key>[ \t]*version[ \t]*=[ \t]*\"){re.escape(old.requirement)}\"",
            lambda m: f'{m.group("key")}{new.requirement}"',
            text,
            count=1,
        )
    old_ref = old.source.ref if old.source else None
    new_ref = new.source.ref if new.source else None
    if old_ref and new_ref and old_ref != new_ref:
        text = re.sub(rf"([?&]ref=){re.escape(old_ref)}(?=[&\"/]|$)", lambda m: f"{m.group(1)}{new_ref}", text)
    return text


class TerraformFileUpdater(FileUpdater):
    """Rewrites module blocks in place."""

    def _updated_dependency_files(self) -> list[DependencyFile]:
        updated_files = []
        for file in self.changed_manifests(self.dependency_files):
            content = file.content or ""
            for dependency in self.dependencies:
                content = self._updated_content(content, dependency, file)
            updated_files.append(self.updated_file(file, content))
        return updated_files

    @staticmethod
    def _updated_content(content: str, dependency: Dependency, file: DependencyFile) -> str:
        previous = [r for r in dependency.previous_requirements or () if r.file == file.name]
        for new in dependency.changed_requirements():
            if new.file != file.name:
                continue
            old = next((r for r in previous if r.meta("source") == new.meta("source")), None)
            if old is None:
                continue
            kind = "terraform" if file.name.endswith((".tfvars", ".hcl")) else "module"
            for block in reversed(list(hcl_blocks(content, kind))):
                if block.attributes.get("source") != old.meta("source"):
                    continue
                rewritten = updated_block(content[block.start : block.end], old, new)
                content = content[: block.start] + rewritten + content[block.end :]
        return content


class Terraform(PackageManager):
    """Terraform configurations."""

    name = "terraform"
    description = "updates Terraform module versions and git refs"
    version_class = SemverVersion
    requirement_class = TerraformRequirement
    file_parser = TerraformFileParser
    update_checker = TerraformUpdateChecker
    file_updater = TerraformFileUpdater
