"""Inspect git-sourced dependencies: are they pinned, and is there something newer to move to?

Everything here is answered from the refs a git host advertises over smart HTTP
(`<repo>.git/info/refs?service=git-upload-pack`), plus the commit comparison APIs of GitHub, GitLab and Bitbucket when
we need to know whether a release already contains the commit a dependency is pinned to.
"""

from __future__ import annotations

import base64
import binascii
import logging
import random
import re
import time
from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import requests

from .errors import BadRequirement, BadVersion, GitDependenciesNotReachable, GitDependencyReferenceNotFound
from .http_client import HttpClient
from .requirement import Requirement
from .version import GenericVersion, Version

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .models import Dependency, Source
    from .sandbox import Credential

logger = logging.getLogger(__name__)

VERSION_REGEX = re.compile(r"(?P<version>[0-9]+\.[0-9]+(?:\.[a-zA-Z0-9\-]+)*)$")
KNOWN_HOSTS = re.compile(r"github\.com|bitbucket\.org|gitlab\.com")
SOURCE_URL = re.compile(
    r"(?:[a-z+]+://)?(?:[^@/\s]+@)?(?:www\.)?(?P<host>github\.com|gitlab\.com|bitbucket\.org)[/:]"
    r"(?P<repo>[^/\s]+/[^/\s#?]+?)(?:\.git)?(?:[/#?].*)?$",
    re.IGNORECASE,
)
PROVIDERS = {"github.com": "github", "gitlab.com": "gitlab", "bitbucket.org": "bitbucket"}


def source_from_url(url: str | None) -> tuple[str, str] | None:
    """Extract `(provider, owner/repo)` from a GitHub, GitLab or Bitbucket URL.

    Examples:
        >>> source_from_url("https://github.com/owner/repo.git")
        ('github', 'owner/repo')
        >>> source_from_url("git@gitlab.com:owner/repo")
        ('gitlab', 'owner/repo')

    """
    if not url:
        return None
    match = SOURCE_URL.search(url.strip())
    if match is None:
        return None
    return PROVIDERS[match.group("host").lower()], match.group("repo")


@dataclass(frozen=True)
class GitTag:
    """A tag advertised by a git host. `commit_sha` is the peeled commit for annotated tags."""

    name: str
    tag_sha: str
    commit_sha: str


def sha_for_upload_pack_line(line: str) -> str:
    """Return the SHA of an upload pack line (its first token may carry a pkt-line length prefix)."""
    return line.split()[0][-40:]


class GitCommitChecker:
    """Answers questions about one git-sourced dependency."""

    def __init__(  # noqa: PLR0913
        self,
        dependency: Dependency,
        credentials: Iterable[Credential] = (),
        ignored_versions: Iterable[str] = (),
        *,
        version_class: type[Version] = GenericVersion,
        requirement_class: type[Requirement] = Requirement,
        listing_source_url: str | None = None,
        http: HttpClient | None = None,
    ) -> None:
        """Initialize a checker.

        Args:
            dependency: The dependency to inspect
            credentials: Credentials; `git_source` ones are used for the matching hosts
            ignored_versions: Requirement strings of versions never to move to
            version_class: Version class of the dependency's ecosystem, used to order tags
            requirement_class: Requirement class of the dependency's ecosystem, used for ignore rules
            listing_source_url: Repository URL of the registry-published package, if known
            http: HTTP client to use

        """
        self.dependency: Dependency = dependency
        self.credentials: tuple[Credential, ...] = tuple(credentials)
        self.ignored_versions: tuple[str, ...] = tuple(ignored_versions)
        self.version_class: type[Version] = version_class
        self.requirement_class: type[Requirement] = requirement_class
        self.listing_source_url: str | None = listing_source_url
        self.http: HttpClient = http or HttpClient(retries=0)

    @cached_property
    def source_details(self) -> Source | None:
        """The dependency's single source (raises if it has several)."""
        return self.dependency.source_details()

    def _git_source(self) -> Source:
        if not self.git_dependency():
            msg = f"{self.dependency.name} is not a git dependency"
            raise ValueError(msg)
        assert self.source_details is not None  # noqa: S101
        return self.source_details

    def git_dependency(self) -> bool:
        """Whether the dependency comes from a git repository."""
        return self.source_details is not None and self.source_details.type.value == "git"

    def pinned(self) -> bool:
        """Whether the dependency is fixed to a ref rather than tracking a branch."""
        source = self._git_source()
        ref, branch = source.ref, source.branch
        if ref is None:
            return False
        if branch == ref:
            return False
        if branch:
            return True
        if self.dependency.version and self.dependency.version.startswith(ref):
            return True
        # the ref might really be a branch name
        return f"refs/heads/{ref}" not in self.local_upload_pack

    def pinned_ref_looks_like_version(self) -> bool:
        """Whether the dependency is pinned to a version-shaped ref such as `v1.2.0`."""
        if not self.pinned():
            return False
        return VERSION_REGEX.search(self._git_source().ref or "") is not None

    def branch_or_ref_in_release(self, version: Version | str) -> bool:
        """Whether the registry release `version` already contains what the dependency points at."""
        return self._pinned_ref_in_release(version) or self._branch_behind_release(version)

    def head_commit_for_current_branch(self) -> str:
        """Return the commit at the head of the tracked branch (or the pinned version when pinned)."""
        if self.pinned() and self.dependency.version:
            return self.dependency.version
        ref_or_branch = self._ref_or_branch
        branch_ref = f"refs/heads/{ref_or_branch}" if ref_or_branch else "HEAD"
        # Drop the service announcement; some hosts don't follow it with a line break
        upload_pack = re.sub(r"^.*git-upload-pack", "", self.local_upload_pack, count=1, flags=re.DOTALL)
        for line in upload_pack.splitlines():
            if f" {branch_ref}" in line:
                return sha_for_upload_pack_line(line)
        raise GitDependencyReferenceNotFound(self.dependency.name)

    def local_tag_for_latest_version(self) -> dict[str, str] | None:
        """Return the newest version-shaped tag that is neither ignored nor an unwanted prerelease."""
        candidates: list[tuple[Version, GitTag]] = []
        for tag in self.local_tags:
            version = self._tag_version(tag.name)
            if version is None:
                continue
            if self._ignored(version):
                continue
            if version.is_prerelease and not self._wants_prerelease():
                continue
            candidates.append((version, tag))
        if not candidates:
            return None
        _, tag = max(candidates, key=lambda c: c[0])
        return {"tag": tag.name, "commit_sha": tag.commit_sha, "tag_sha": tag.tag_sha}

    def git_repo_reachable(self) -> bool:
        """Whether the dependency's repository answers at all."""
        try:
            _ = self.local_upload_pack
        except GitDependenciesNotReachable:
            return False
        return True

    @property
    def _ref_or_branch(self) -> str | None:
        source = self._git_source()
        return source.ref or source.branch

    def _tag_version(self, tag_name: str) -> Version | None:
        match = VERSION_REGEX.search(tag_name)
        if match is None:
            return None
        try:
            return self.version_class(match.group("version"))
        except BadVersion:
            return None

    @cached_property
    def ignore_requirements(self) -> list[Requirement]:
        """One requirement per ignore rule, skipping rules that do not parse."""
        requirements = []
        for ignored in self.ignored_versions:
            try:
                requirements.append(self.requirement_class(*(part for part in ignored.split(",") if part.strip())))
            except BadRequirement:
                logger.warning("Ignoring illformed ignore rule %r for %s", ignored, self.dependency.name)
        return requirements

    def _ignored(self, version: Version) -> bool:
        return any(requirement.satisfied_by(version) for requirement in self.ignore_requirements)

    def _wants_prerelease(self) -> bool:
        source = self.source_details
        if source is None or not source.ref or not self.pinned_ref_looks_like_version():
            return False
        version = self._tag_version(source.ref)
        return version is not None and version.is_prerelease

    def _pinned_ref_in_release(self, version: Version | str) -> bool:
        source = self._git_source()
        if not self.pinned() or self.listing_source_url is None:
            return False
        tag = self._listing_tag_for_version(str(version))
        if tag is None:
            return False
        return self._commit_included_in_tag(tag=tag, commit=source.ref or "", allow_identical=True)

    def _branch_behind_release(self, version: Version | str) -> bool:
        ref_or_branch = self._ref_or_branch
        if ref_or_branch is None or self.listing_source_url is None:
            return False
        tag = self._listing_tag_for_version(str(version))
        if tag is None:
            return False
        # identical is not enough: we wouldn't move someone tracking a branch to a release
        return self._commit_included_in_tag(tag=tag, commit=ref_or_branch, allow_identical=False)

    @cached_property
    def local_upload_pack(self) -> str:
        """The refs advertised by the dependency's repository."""
        url = self._git_source().url
        if not url:
            raise GitDependenciesNotReachable([self.dependency.name])
        return self.fetch_upload_pack_for(url)

    @cached_property
    def local_tags(self) -> list[GitTag]:
        """Tags of the dependency's repository."""
        return self.tags_for_upload_pack(self.local_upload_pack)

    @cached_property
    def listing_tags(self) -> list[GitTag]:
        """Tags of the repository behind the registry-published package."""
        if self.listing_source_url is None:
            return []
        try:
            return self.tags_for_upload_pack(self.fetch_upload_pack_for(self.listing_source_url))
        except GitDependenciesNotReachable:
            return []

    def _listing_tag_for_version(self, version: str) -> str | None:
        pattern = re.compile(rf"(?:[^0-9.]|\A){re.escape(version)}\Z")
        return next((tag.name for tag in self.listing_tags if pattern.search(tag.name)), None)

    def tags_for_upload_pack(self, upload_pack: str) -> list[GitTag]:
        """Parse the tags out of an upload pack, pairing annotated tags with their peeled commits."""
        peeled: dict[str, str] = {}
        unpeeled: list[tuple[str, str]] = []
        for line in upload_pack.splitlines():
            parts = line.split()
            if len(parts) < 2 or not parts[-1].startswith("refs/tags"):  # noqa: PLR2004
                continue
            name = line.split(" refs/tags/")[-1].strip()
            if name.endswith("^{}"):
                peeled[name[: -len("^{}")]] = sha_for_upload_pack_line(line)
            else:
                unpeeled.append((name, sha_for_upload_pack_line(line)))

        prefix_tags = bool(self.source_details and (self.source_details.ref or "").startswith("tags/"))
        tags = []
        for name, tag_sha in unpeeled:
            tags.append(
                GitTag(
                    name=f"tags/{name}" if prefix_tags else name,
                    tag_sha=tag_sha,
                    commit_sha=peeled.get(name, tag_sha),
                )
            )
        return tags

    def fetch_upload_pack_for(self, uri: str) -> str:
        """Fetch the advertised refs of a repository.

        Network errors against well-known hosts are retried once after a short random pause; anything else that
        goes wrong is reported as `GitDependenciesNotReachable`.
        """
        known_host = KNOWN_HOSTS.search(uri) is not None
        attempts = 0
        while True:
            try:
                response = self.http.get(self.service_pack_uri(uri), raise_on_auth_failure=False)
            except (requests.ConnectionError, requests.Timeout) as e:
                attempts += 1
                if known_host and attempts < 2:  # noqa: PLR2004
                    time.sleep(random.uniform(0.0, 0.9))  # noqa: S311
                    continue
                if known_host:
                    raise
                raise GitDependenciesNotReachable([uri]) from e
            if response.status_code == 200:  # noqa: PLR2004
                return response.text
            if response.status_code >= 500 and known_host:  # noqa: PLR2004
                msg = f"Server error at {uri}: {response.text}"
                raise requests.HTTPError(msg, response=response)
            raise GitDependenciesNotReachable([uri])

    def service_pack_uri(self, uri: str) -> str:
        """Return the smart HTTP discovery URL for a repository."""
        service_uri = self.uri_with_auth(uri).rstrip("/")
        if not service_uri.endswith(".git"):
            service_uri += ".git"
        return f"{service_uri}/info/refs?service=git-upload-pack"

    def uri_with_auth(self, uri: str) -> str:
        """Return an HTTPS version of `uri`, with credentials for its host when we have some."""
        if "git@" in uri:
            bare_uri = uri.split("git@")[-1].replace(":", "/", 1)
        else:
            bare_uri = re.sub(r"^.*?://", "", uri)
        if re.match(r"[^/]+:[^/]+@", bare_uri):
            return f"https://{bare_uri}"
        credential = next(
            (
                c
                for c in self.credentials
                if c.type == "git_source" and c.host and bare_uri.startswith(c.host) and c.secret
            ),
            None,
        )
        if credential is None:
            return f"https://{bare_uri}"
        username = quote(credential.username or "x-access-token", safe="")
        return f"https://{username}:{quote(credential.secret or '', safe='')}@{bare_uri}"

    def _credential_token(self, host: str) -> str | None:
        credential = next((c for c in self.credentials if c.type == "git_source" and c.host == host), None)
        return None if credential is None else credential.secret

    def _commit_included_in_tag(self, *, tag: str, commit: str, allow_identical: bool) -> bool:
        source = source_from_url(self.listing_source_url)
        if source is None:
            msg = f"Unknown source {self.listing_source_url}"
            raise ValueError(msg)
        provider, repo = source
        if provider == "github":
            status = self._github_comparison_status(repo, tag, commit)
        elif provider == "gitlab":
            status = self._gitlab_comparison_status(repo, tag, commit)
        else:
            status = self._bitbucket_comparison_status(repo, tag, commit)
        logger.debug("Comparison of %s with %s in %s: %s", commit, tag, repo, status)
        if status == "behind":
            return True
        return allow_identical and status == "identical"

    def _github_comparison_status(self, repo: str, base: str, head: str) -> str | None:
        headers = {"Accept": "application/vnd.github.v3+json"}
        token = self._credential_token("github.com")
        if token:
            headers["Authorization"] = f"token {token}"
        response = self.http.get(
            f"https://api.github.com/repos/{repo}/compare/{base}...{head}",
            headers=headers,
            raise_on_auth_failure=False,
        )
        if response.status_code != 200:  # noqa: PLR2004
            return None
        data: dict[str, Any] = response.json()
        return data.get("status")

    def _gitlab_comparison_status(self, repo: str, base: str, head: str) -> str | None:
        headers = {}
        token = self._credential_token("gitlab.com")
        if token:
            headers["PRIVATE-TOKEN"] = token
        response = self.http.get(
            f"https://gitlab.com/api/v4/projects/{quote(repo, safe='')}/repository/compare",
            params={"from": base, "to": head},
            headers=headers,
            raise_on_auth_failure=False,
        )
        if response.status_code != 200:  # noqa: PLR2004
            return None
        comparison = response.json()
        if not comparison.get("commits"):
            return "behind"
        if comparison.get("compare_same_ref"):
            return "identical"
        return "ahead"

    def _bitbucket_comparison_status(self, repo: str, base: str, head: str) -> str:
        response = self.http.get(
            f"https://api.bitbucket.org/2.0/repositories/{repo}/commits/",
            params={"include": head, "exclude": base},
            headers=self._bitbucket_auth_header(),
            raise_on_auth_failure=False,
        )
        # Anything unexpected (a 404, say) counts as "ahead"
        try:
            values = response.json().get("values", ["x"])
        except ValueError:
            values = ["x"]
        return "ahead" if values else "behind"

    def _bitbucket_auth_header(self) -> dict[str, str]:
        token = self._credential_token("bitbucket.org")
        if token is None:
            return {}
        if ":" in token:
            return {"Authorization": f"Basic {base64.b64encode(token.encode()).decode()}"}
        try:
            decoded = base64.b64decode(token, validate=True).decode("ascii")
        except (binascii.Error, UnicodeDecodeError):
            decoded = ""
        if ":" in decoded:
            return {"Authorization": f"Basic {token.strip()}"}
        return {"Authorization": f"Bearer {token}"}
