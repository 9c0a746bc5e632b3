"""Docker: base images named by the FROM lines of Dockerfiles."""

from __future__ import annotations

import re
from functools import cached_property
from logging import getLogger
from typing import TYPE_CHECKING, Any

import requests

from .errors import BadVersion, ContentUnchanged, PrivateSourceAuthenticationFailure, RequiredFileNotFound
from .file_parser import FileParser
from .file_updater import FileUpdater
from .models import Dependency, DependencySet, RequirementEntry, Source, SourceType
from .package_manager import PackageManager
from .requirement import Requirement
from .update_checker import UpdateChecker
from .version import GenericVersion, _cmp, _strip_trailing_zeros

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .http_client import HttpClient
    from .models import DependencyFile
    from .sandbox import Credential
    from .version import Version

log = getLogger(__name__)

# Reference grammar from https://github.com/distribution/reference/blob/main/regexp.go
DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
DOMAIN = rf"(?:{DOMAIN_COMPONENT}(?:\.{DOMAIN_COMPONENT})+)"
REGISTRY = rf"(?P<registry>{DOMAIN}(?::[0-9]+)?)"
NAME_COMPONENT = r"(?:[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*)"
IMAGE = rf"(?P<image>{NAME_COMPONENT}(?:/{NAME_COMPONENT})*)"
TAG = r":(?P<tag>[\w][\w.-]{0,127})"
DIGEST = r"@(?P<digest>[^\s]+)"
NAME = r"\s+AS\s+(?P<name>[a-zA-Z0-9_-]+)"
FROM_LINE = re.compile(
    rf"^[Ff][Rr][Oo][Mm]\s+(?:--platform=\S+\s+)?(?:{REGISTRY}/)?{IMAGE}(?:{TAG})?(?:{DIGEST})?(?:{NAME})?",
)

DOCKER_HUB = "registry.hub.docker.com"
MANIFEST_TYPES = ", ".join(
    (
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    )
)
TAG_PATTERN = re.compile(r"^(?P<prefix>[vV]?)(?P<release>\d+(?:\.\d+)*)(?P<suffix>[-_.+][\w.-]*)?$")
PRERELEASE_SUFFIX = re.compile(r"(?:^|[-_.])(?:rc|beta|alpha|pre|dev|preview)\d*(?:$|[-_.])", re.IGNORECASE)


class DockerVersion(GenericVersion):
    """A version-shaped image tag.

    The numeric part orders tags; the suffix (`-alpine`, `-slim-buster`) is part of the tag's shape and only orders
    tags through the numbers it contains.
    """

    def _parse(self, version_string: str) -> None:
        match = TAG_PATTERN.match(version_string)
        if match is None:
            msg = f"Tag {version_string!r} is not version-shaped"
            raise BadVersion(msg)
        self._release = tuple(int(s) for s in match.group("release").split("."))
        self.prefix: str = match.group("prefix")
        self.suffix: str = match.group("suffix") or ""
        self._prerelease = ("pre",) if PRERELEASE_SUFFIX.search(self.suffix) else ()
        self._local = None
        self._suffix_numbers: tuple[int, ...] = tuple(int(n) for n in re.findall(r"\d+", self.suffix))

    @property
    def shape(self) -> tuple[str, int, str]:
        """What a candidate tag must share with the current one: prefix, precision and suffix text."""
        return self.prefix, len(self._release), re.sub(r"\d+", "#", self.suffix)

    def _compare(self, other: DockerVersion) -> int:  # type: ignore[override]
        length = max(len(self._release), len(other._release))
        ours = self._release + (0,) * (length - len(self._release))
        theirs = other._release + (0,) * (length - len(other._release))
        return _cmp(ours, theirs) or _cmp(self._suffix_numbers, other._suffix_numbers)

    def _hash_key(self) -> object:
        return _strip_trailing_zeros(self._release), self._suffix_numbers


class DockerRequirement(Requirement):
    """Dockerfiles pin tags, they carry no requirements."""

    version_class = DockerVersion
    OR_SEPARATOR = None


def docker_repo_name(image: str, registry: str | None) -> str:
    """The repository name on the registry (official Docker Hub images live under `library/`)."""
    if not is_standard_registry(registry) or "/" in image:
        return image
    return f"library/{image}"


def is_standard_registry(registry: str | None) -> bool:
    """Whether `registry` is Docker Hub."""
    return registry in (None, DOCKER_HUB, "docker.io", "index.docker.io", "registry-1.docker.io")


class DockerRegistryClient:
    """A minimal registry v2 API client: tag listing and manifest digests, with token authentication."""

    def __init__(self, registry: str | None, credentials: Iterable[Credential], http: HttpClient) -> None:
        """Initialize a client for `registry` (Docker Hub when None)."""
        self.registry: str = registry or DOCKER_HUB
        self.standard: bool = is_standard_registry(registry)
        self.http: HttpClient = http
        self.base_url: str = f"https://{DOCKER_HUB if self.standard else self.registry}"
        credential = next(
            (c for c in credentials if c.type == "docker_registry" and c.registry == self.registry),
            None,
        )
        self.basic_auth: tuple[str, str] | None = (
            (credential.username or "", credential.secret or "") if credential is not None else None
        )
        self._token: str | None = None

    def _fetch_token(self, challenge: str) -> str | None:
        params = dict(re.findall(r'(\w+)="([^"]*)"', challenge))
        realm = params.pop("realm", None)
        if realm is None:
            return None
        response = self.http.get(realm, params=params, auth=self.basic_auth, source=self.registry, raise_on_auth_failure=False)
        if not response.ok:
            return None
        body = response.json()
        return body.get("token") or body.get("access_token")

    def _request(self, method: str, path: str, headers: dict[str, str] | None = None) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = dict(headers or {})
        for attempt in range(2):
            if self._token is not None:
                headers["Authorization"] = f"Bearer {self._token}"
            auth = self.basic_auth if self._token is None else None
            response = self.http.request(
                method, url, headers=headers, auth=auth, source=self.registry, raise_on_auth_failure=False
            )
            challenge = response.headers.get("WWW-Authenticate", "")
            if response.status_code == 401 and attempt == 0 and challenge.lower().startswith("bearer"):  # noqa: PLR2004
                log.debug("Fetching a registry token for %s", self.registry)
                self._token = self._fetch_token(challenge)
                if self._token is not None:
                    continue
            break
        if response.status_code in (401, 403):
            if self.standard:
                response.raise_for_status()
            raise PrivateSourceAuthenticationFailure(self.registry)
        return response

    def tags(self, repo: str) -> list[str]:
        """Every tag of `repo`, following pagination."""
        tags: list[str] = []
        path: str | None = f"/v2/{repo}/tags/list?n=1000"
        while path is not None:
            response = self._request("GET", path)
            response.raise_for_status()
            tags.extend(response.json().get("tags") or [])
            link = re.search(r"<([^>]+)>;\s*rel=\"?next\"?", response.headers.get("Link", ""))
            path = link.group(1) if link else None
        return tags

    def digest(self, repo: str, tag: str) -> str | None:
        """The manifest digest of `repo:tag`, or None if the manifest does not exist."""
        response = self._request("HEAD", f"/v2/{repo}/manifests/{tag}", headers={"Accept": MANIFEST_TYPES})
        if response.status_code == 404:  # noqa: PLR2004
            return None
        response.raise_for_status()
        return response.headers.get("Docker-Content-Digest")


class DockerFileParser(FileParser):
    """Parses the FROM lines of Dockerfiles."""

    filename_patterns = ("Dockerfile", "*.Dockerfile", "Dockerfile.*", "*.dockerfile")

    def check_required_files(self) -> None:
        """At least one Dockerfile is required."""
        if not self.dependency_files:
            raise RequiredFileNotFound("Dockerfile")

    def _parse(self) -> list[Dependency]:
        dependencies = DependencySet()
        stages: set[str] = set()
        for dockerfile in self.dependency_files:
            for line in (dockerfile.content or "").splitlines():
                match = FROM_LINE.match(line.strip())
                if match is None:
                    continue
                if match.group("name"):
                    stages.add(match.group("name"))
                if match.group("image") in stages and not match.group("registry"):
                    continue
                version = self._version_from(match)
                if version is None:
                    continue
                entry = RequirementEntry(
                    file=dockerfile.name,
                    requirement=None,
                    source=Source(
                        SourceType.registry,
                        registry=match.group("registry"),
                        tag=match.group("tag"),
                        digest=match.group("digest"),
                    ),
                    metadata=(("line", line.strip()),),
                )
                dependencies += Dependency(match.group("image"), version, [entry], Docker.name)
        return dependencies.dependencies

    def _version_from(self, match: re.Match[str]) -> str | None:
        if match.group("tag"):
            return match.group("tag")
        digest = match.group("digest")
        if not digest:
            return None
        registry = match.group("registry")
        client = DockerRegistryClient(registry, self.credentials, self.http)
        repo = docker_repo_name(match.group("image"), registry)
        for tag in client.tags(repo):
            try:
                if client.digest(repo, tag) == digest:
                    return tag
            except requests.HTTPError as e:
                log.debug("Skipping tag %s of %s: %s", tag, repo, e)
        return None


class DockerUpdateChecker(UpdateChecker):
    """Update checks against the image's registry."""

    version_class = DockerVersion
    requirement_class = DockerRequirement

    @property
    def source(self) -> Source | None:
        """The registry details of the image."""
        return self.dependency.source_details()

    @cached_property
    def client(self) -> DockerRegistryClient:
        """The registry client for the image."""
        return DockerRegistryClient(self.source.registry if self.source else None, self.credentials, self.http)

    @property
    def repo(self) -> str:
        """The repository name on the registry."""
        return docker_repo_name(self.dependency.name, self.source.registry if self.source else None)

    def _latest_version(self) -> Version | str | None:
        current = self.current_version
        if not isinstance(current, DockerVersion):
            log.debug("%s:%s is not version-shaped, not updating it", self.dependency.name, self.dependency.version)
            return None
        candidates = [
            v
            for v in self.parse_versions(self.client.tags(self.repo))
            if isinstance(v, DockerVersion) and v.shape == current.shape
        ]
        filtered = self.filter_versions(candidates)
        return max(filtered, default=None)

    def _latest_resolvable_version(self) -> Version | str | None:
        return self.latest_version

    def _latest_resolvable_version_with_no_unlock(self) -> Version | str | None:
        # The tag is the requirement: nothing moves without rewriting it
        return None

    @cached_property
    def latest_digest(self) -> str | None:
        """The digest of the latest tag."""
        if self.latest_version is None:
            return None
        return self.client.digest(self.repo, str(self.latest_version))

    def _updated_requirements(self) -> list[RequirementEntry]:
        latest = self.latest_resolvable_version
        if latest is None:
            return list(self.dependency.requirements)
        updated = []
        for entry in self.dependency.requirements:
            source = entry.source
            if source is None:
                updated.append(entry)
                continue
            changes: dict[str, Any] = {}
            if source.tag is not None:
                changes["tag"] = str(latest)
            if source.digest is not None:
                changes["digest"] = self.latest_digest or source.digest
            updated.append(entry.replace(source=source.replace(**changes)))
        return updated


def updated_from_line(line: str, old: Source, new: Source) -> str:
    """Rewrite the tag and digest of a FROM line."""
    if old.tag and new.tag and old.tag != new.tag:
        line = re.sub(rf":{re.escape(old.tag)}(?=[@\s]|$)", f":{new.tag}", line, count=1)
    if old.digest and new.digest and old.digest != new.digest:
        line = line.replace(f"@{old.digest}", f"@{new.digest}", 1)
    return line


class DockerFileUpdater(FileUpdater):
    """Rewrites the FROM lines of changed requirement entries."""

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
        for new in dependency.requirements:
            if new.file != file.name or new.source is None:
                continue
            old = next((r for r in previous if r.meta("line") == new.meta("line")), None)
            if old is None or old.source is None or old == new:
                continue
            old_line = old.meta("line") or ""
            new_line = updated_from_line(old_line, old.source, new.source)
            pattern = re.compile(rf"^(?P<indent>[ \t]*){re.escape(old_line)}[ \t]*$", re.MULTILINE)
            updated = pattern.sub(lambda m, line=new_line: f"{m.group('indent')}{line}", content)
            if updated == content:
                raise ContentUnchanged(file.path)
            content = updated
        return content


class Docker(PackageManager):
    """Dockerfiles."""

    name = "docker"
    description = "updates the base image tags and digests of Dockerfiles"
    version_class = DockerVersion
    requirement_class = DockerRequirement
    file_parser = DockerFileParser
    update_checker = DockerUpdateChecker
    file_updater = DockerFileUpdater
