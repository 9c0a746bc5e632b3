"""Tests for pip and pipenv."""

import json
from unittest import TestCase
from unittest.mock import MagicMock

import pytest

from it_updates.errors import DependencyFileNotResolvable, PathDependenciesNotReachable, RequiredFileNotFound
from it_updates.models import Dependency, DependencyFile, RequirementEntry, SourceType, UnlockLevel
from it_updates.pip import (
    IndexFinder,
    PipFileParser,
    PipFileUpdater,
    PipRequirement,
    PipRequirementsUpdater,
    PipUpdateChecker,
    PipVersion,
    freeze_pipfile,
    index_links,
    parse_requirement_line,
    pipfile_hash,
    version_from_filename,
)
from it_updates.sandbox import CommandOutput, Credential

HASH_A = "a" * 64
HASH_B = "b" * 64

PIPFILE = """[[source]]
url = "https://pypi.org/simple"
verify_ssl = true
name = "pypi"

[packages]
requests = "*"
Django = {version = ">=3.0"}
mylib = {git = "https://github.com/me/mylib.git", ref = "v1.0"}

[dev-packages]
pytest = "==7.0.0"
"""

PIPFILE_LOCK = json.dumps(
    {
        "_meta": {"hash": {"sha256": "old"}, "requires": {"python_version": "3.11"}, "sources": []},
        "default": {
            "requests": {"version": "==2.27.0"},
            "django": {"version": "==3.2.1"},
            "mylib": {"git": "https://github.com/me/mylib.git", "ref": "abc1234"},
            "urllib3": {"version": "==1.26.0"},
        },
        "develop": {"pytest": {"version": "==7.0.0"}},
    },
    indent=4,
)

SIMPLE_INDEX_PAGE = f"""<!DOCTYPE html>
<html><body>
<a href="https://files.example.com/requests-2.27.0.tar.gz#sha256={HASH_A}">requests-2.27.0.tar.gz</a>
<a href="https://files.example.com/requests-2.28.0-py3-none-any.whl#sha256={HASH_B}">requests-2.28.0-py3-none-any.whl</a>
<a href="https://files.example.com/requests-2.29.0.tar.gz" data-yanked="">requests-2.29.0.tar.gz</a>
<a href="https://files.example.com/requests-3.0.0b1.tar.gz">requests-3.0.0b1.tar.gz</a>
</body></html>
"""


def index_returning(page: str, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = page
    http = MagicMock()
    http.get.return_value = response
    return http


class PipenvRunner:
    """A runner standing in for `pipenv lock`: it records the Pipfile it saw and writes a lockfile."""

    def __init__(self, lock: dict, returncode: int = 0, stderr: str = "") -> None:
        self.lock = lock
        self.returncode = returncode
        self.stderr = stderr
        self.commands = []
        self.pipfiles = []

    def run(self, command, *, cwd, env, stdin, timeout):
        self.commands.append(list(command))
        self.pipfiles.append((cwd / "Pipfile").read_text())
        if self.returncode == 0:
            (cwd / "Pipfile.lock").write_text(json.dumps(self.lock))
        return CommandOutput(self.returncode, "", self.stderr)


class TestPipVersionAndRequirement(TestCase):
    """PEP 440 versions and specifiers."""

    def test_versions(self) -> None:
        """Pre-, post- and development releases order as PEP 440 says."""
        assert PipVersion("1.0rc1") < PipVersion("1.0")
        assert PipVersion("1.0.post1") > PipVersion("1.0")
        assert PipVersion("1.0.dev0") < PipVersion("1.0a1")
        assert PipVersion("1.0rc1").is_prerelease
        assert PipVersion("1.0+local").local == "local"

    def test_specifiers(self) -> None:
        """Compatible release, wildcards and Poetry's caret."""
        assert PipRequirement("~=1.4.2").satisfied_by("1.4.9")
        assert not PipRequirement("~=1.4.2").satisfied_by("1.5")
        assert PipRequirement("==1.*").satisfied_by("1.9")
        assert not PipRequirement("==1.*").satisfied_by("2.0")
        assert PipRequirement("^1.2").satisfied_by("1.9.0")
        assert not PipRequirement("^1.2").satisfied_by("2.0.0")
        assert PipRequirement(">=1.0,<2.0").satisfied_by("1.5")

    def test_excluded_series(self) -> None:
        """`!=` with a wildcard excludes the whole series, with or without Poetry shorthand alongside."""
        requirement = PipRequirement(">=3.2,!=3.2.*")
        assert requirement.specifier is not None
        assert not requirement.satisfied_by("3.2.5")
        assert requirement.satisfied_by("4.0")
        shorthand = PipRequirement("^3.0,!=3.2.*")
        assert shorthand.specifier is None
        assert not shorthand.satisfied_by("3.2.5")
        assert shorthand.satisfied_by("3.3")
        assert not shorthand.satisfied_by("4.0")

    def test_arbitrary_equality(self) -> None:
        """`===` compares the written strings."""
        assert PipRequirement("===1.0").satisfied_by("1.0")
        assert not PipRequirement("===1.0").satisfied_by("1.0.0")

    def test_trailing_operator_ignored(self) -> None:
        """An operator written straight after a version is ignored."""
        assert PipRequirement(">=2.0<2.1").satisfied_by("3.0")


class TestRequirementLines(TestCase):
    """Parsing requirements files."""

    def test_line_with_extras_and_markers(self) -> None:
        """Extras, markers and comments are separated from the requirement."""
        line = "requests[security]>=2.20,<3 ; python_version > '3.6'  # http"
        assert parse_requirement_line(line) == ("requests", ">=2.20,<3", "python_version > '3.6'")

    def test_hashes_stripped(self) -> None:
        """Hash options are not part of the requirement."""
        assert parse_requirement_line(f"Django==3.2.1 --hash=sha256:{HASH_A}") == ("Django", "==3.2.1", None)

    def test_non_requirements(self) -> None:
        """Options, URLs and paths are not requirements."""
        assert parse_requirement_line("-r other.txt") is None
        assert parse_requirement_line("git+https://github.com/a/b.git#egg=b") is None
        assert parse_requirement_line("./local") is None
        assert parse_requirement_line("# just a comment") is None
        assert parse_requirement_line("flask") == ("flask", None, None)

    def test_names_canonicalised(self) -> None:
        """Names compare case- and separator-insensitively."""
        content = "Zope.Interface==5.0\nzope_interface>=4.0\n"
        (dependency,) = PipFileParser([DependencyFile("requirements.txt", content)]).parse()
        assert dependency.name == "zope-interface"
        assert len(dependency.requirements) == 2

    def test_excluded_series(self) -> None:
        """A `!=` wildcard is part of the requirement, not a reason to drop the line."""
        assert parse_requirement_line("django>=3.2,!=3.2.* ; python_version >= '3.8'") == (
            "django",
            ">=3.2,!=3.2.*",
            "python_version >= '3.8'",
        )
        content = "django>=3.2,!=3.2.*\nrequests==2.0\n"
        dependencies = {d.name: d for d in PipFileParser([DependencyFile("requirements.txt", content)]).parse()}
        assert set(dependencies) == {"django", "requests"}
        assert dependencies["django"].requirements[0].requirement == ">=3.2,!=3.2.*"

    def test_loose_lines(self) -> None:
        """Lines PEP 508 rejects but pip accepts still parse."""
        assert parse_requirement_line("black^22.1") == ("black", "^22.1", None)
        assert parse_requirement_line("six>=1.0<2.0") == ("six", ">=1.0<2.0", None)
        assert parse_requirement_line("attrs (>=21.0)") == ("attrs", ">=21.0", None)

    def test_unparseable_requirement_kept(self) -> None:
        """A requirement that cannot be parsed keeps its dependency."""
        content = "weird>=1.0,>=abc\n"
        with self.assertLogs("it_updates.pip", "WARNING"):
            (dependency,) = PipFileParser([DependencyFile("requirements.txt", content)]).parse()
        assert dependency.name == "weird"
        assert dependency.requirements[0].requirement == ">=1.0,>=abc"


class TestPipFileParser(TestCase):
    """Parsing requirements files and Pipfiles."""

    def test_requirements_file(self) -> None:
        """Exact pins give the version; ranges do not."""
        content = "Django==3.2.1\nrequests>=2.0 \\\n    --hash=sha256:" + HASH_A + "\n-r dev.txt\n"
        dependencies = {d.name: d for d in PipFileParser([DependencyFile("requirements.txt", content)]).parse()}
        assert dependencies["django"].version == "3.2.1"
        assert dependencies["django"].requirements == (RequirementEntry("requirements.txt", "==3.2.1"),)
        assert dependencies["requests"].version is None

    def test_pipfile(self) -> None:
        """Pipfile declarations get their locked versions, sources and groups."""
        files = [DependencyFile("Pipfile", PIPFILE), DependencyFile("Pipfile.lock", PIPFILE_LOCK)]
        dependencies = {d.name: d for d in PipFileParser(files).parse()}
        assert set(dependencies) == {"requests", "django", "mylib", "pytest", "urllib3"}
        assert dependencies["requests"].version == "2.27.0"
        assert dependencies["requests"].requirements[0].requirement == "*"
        assert dependencies["django"].requirements[0].requirement == ">=3.0"
        assert dependencies["pytest"].requirements[0].groups == ("develop",)
        mylib = dependencies["mylib"]
        assert mylib.version == "abc1234"
        assert mylib.requirements[0].source.type is SourceType.git
        assert mylib.requirements[0].source.ref == "v1.0"
        assert not dependencies["urllib3"].top_level

    def test_required_files(self) -> None:
        """A requirements file or Pipfile is needed."""
        with pytest.raises(RequiredFileNotFound):
            PipFileParser([DependencyFile("Pipfile.lock", PIPFILE_LOCK)]).parse()


class TestIndexes(TestCase):
    """Index configuration and simple index pages."""

    def test_index_urls(self) -> None:
        """The main index comes first, then extra indexes and credentialed ones."""
        requirements = DependencyFile(
            "requirements.txt",
            "--index-url https://my.index/simple/\n--extra-index-url https://extra.index/simple\nflask\n",
        )
        credentials = [Credential("python_index", registry="https://private.index/simple", username="u", password="p")]
        finder = IndexFinder([requirements], credentials)
        assert finder.index_urls() == [
            "https://my.index/simple",
            "https://extra.index/simple",
            "https://u:p@private.index/simple",
        ]

    def test_pipfile_sources(self) -> None:
        """Pipfile sources are indexes too."""
        finder = IndexFinder([DependencyFile("Pipfile", PIPFILE)], [])
        assert finder.index_urls() == ["https://pypi.org/simple"]

    def test_index_links(self) -> None:
        """Links carry their file name, href and yanked state."""
        links = index_links(SIMPLE_INDEX_PAGE)
        assert len(links) == 4
        assert links[2] == ("requests-2.29.0.tar.gz", "https://files.example.com/requests-2.29.0.tar.gz", True)

    def test_version_from_filename(self) -> None:
        """Versions are read from sdist and wheel names."""
        assert version_from_filename("requests", "requests-2.28.0-py3-none-any.whl") == "2.28.0"
        assert version_from_filename("requests", "requests-2.29.0.tar.gz") == "2.29.0"
        assert version_from_filename("zope.interface", "zope_interface-5.4.0-cp39-cp39-manylinux1_x86_64.whl") == "5.4.0"
        assert version_from_filename("requests", "requests_oauthlib-1.0.tar.gz") is None


class TestPipRequirementsUpdater(TestCase):
    """Rewriting specifiers for a new version."""

    def updated(self, requirement: str, version: str) -> str:
        entries = [RequirementEntry("requirements.txt", requirement)]
        (entry,) = PipRequirementsUpdater(entries, PipVersion(version)).updated_requirements()
        return entry.requirement

    def test_pins(self) -> None:
        """Exact pins move to the new version."""
        assert self.updated("==2.27.0", "2.28.0") == "==2.28.0"

    def test_satisfied_unchanged(self) -> None:
        """Specifiers that already admit the version are left alone."""
        assert self.updated("~=2.27", "2.28.0") == "~=2.27"
        assert self.updated(">=2.0", "2.28.0") == ">=2.0"

    def test_precision_kept(self) -> None:
        """Compatible releases and upper bounds keep their precision."""
        assert self.updated("~=2.27.0", "2.28.1") == "~=2.28.1"
        assert self.updated(">=2.0,<2.28", "2.28.0") == ">=2.0,<2.29"
        assert self.updated("==2.27.*", "2.28.1") == "==2.28.*"

    def test_unfixable(self) -> None:
        """A specifier that cannot be made to admit the version is flagged."""
        assert self.updated("!=2.28.0", "2.28.0") == ":unfixable"


class TestPipUpdateChecker(TestCase):
    """Update checks against simple indexes."""

    def test_latest_version(self) -> None:
        """Yanked versions and prereleases are skipped."""
        dependency = Dependency("requests", "2.27.0", [RequirementEntry("requirements.txt", "==2.27.0")], "pip")
        http = index_returning(SIMPLE_INDEX_PAGE)
        checker = PipUpdateChecker(dependency, [DependencyFile("requirements.txt", "requests==2.27.0\n")], http=http)
        assert checker.latest_version == PipVersion("2.28.0")
        assert http.get.call_args.args[0] == "https://pypi.org/simple/requests/"

    def test_pinned_requirement_needs_own_unlock(self) -> None:
        """A pinned requirement moves with the version."""
        dependency = Dependency("requests", "2.27.0", [RequirementEntry("requirements.txt", "==2.27.0")], "pip")
        files = [DependencyFile("requirements.txt", "requests==2.27.0\n")]
        result = PipUpdateChecker(dependency, files, http=index_returning(SIMPLE_INDEX_PAGE)).check()
        assert result.unlock_level is UnlockLevel.own
        (updated,) = result.dependencies
        assert updated.version == "2.28.0"
        assert updated.requirements[0].requirement == "==2.28.0"

    def test_git_dependency_has_no_latest_version(self) -> None:
        """Only registry dependencies are looked up on an index."""
        files = [DependencyFile("Pipfile", PIPFILE), DependencyFile("Pipfile.lock", PIPFILE_LOCK)]
        mylib = next(d for d in PipFileParser(files).parse() if d.name == "mylib")
        http = index_returning(SIMPLE_INDEX_PAGE)
        assert PipUpdateChecker(mylib, files, http=http).latest_version is None
        http.get.assert_not_called()

    def test_pipenv_resolution(self) -> None:
        """With a Pipfile, pipenv decides, with every other package frozen."""
        files = [DependencyFile("Pipfile", PIPFILE), DependencyFile("Pipfile.lock", PIPFILE_LOCK)]
        requests_dependency = next(d for d in PipFileParser(files).parse() if d.name == "requests")
        runner = PipenvRunner({"default": {"requests": {"version": "==2.28.0"}}})
        checker = PipUpdateChecker(requests_dependency, files, http=index_returning(SIMPLE_INDEX_PAGE), runner=runner)
        assert checker.latest_resolvable_version == PipVersion("2.28.0")
        assert runner.commands == [["pipenv", "lock"]]
        assert 'requests = ">=2.27.0,<=2.28.0"' in runner.pipfiles[0]
        assert 'Django = {version = "==3.2.1"}' in runner.pipfiles[0]

    def test_pipenv_resolution_failure(self) -> None:
        """A resolution failure means the version cannot be reached."""
        files = [DependencyFile("Pipfile", PIPFILE), DependencyFile("Pipfile.lock", PIPFILE_LOCK)]
        requests_dependency = next(d for d in PipFileParser(files).parse() if d.name == "requests")
        runner = PipenvRunner({}, 1, "ResolutionFailure: Could not find a version that matches requests")
        checker = PipUpdateChecker(requests_dependency, files, http=index_returning(SIMPLE_INDEX_PAGE), runner=runner)
        with pytest.raises(DependencyFileNotResolvable):
            _ = checker.latest_resolvable_version


class TestPipfileHelpers(TestCase):
    """Pipfile freezing and hashing."""

    def test_freeze_pipfile(self) -> None:
        """Only the named packages change; other bytes are kept."""
        frozen = freeze_pipfile(PIPFILE, {"requests": "==2.28.0", "django": "==3.2.1"})
        assert 'requests = "==2.28.0"' in frozen
        assert 'Django = {version = "==3.2.1"}' in frozen
        assert 'pytest = "==7.0.0"' in frozen
        assert 'url = "https://pypi.org/simple"' in frozen

    def test_pipfile_hash(self) -> None:
        """The hash depends on the declarations, not on formatting."""
        assert pipfile_hash(PIPFILE) == pipfile_hash(PIPFILE.replace("requests = ", "requests    =   "))
        assert pipfile_hash(PIPFILE) != pipfile_hash(PIPFILE.replace('"*"', '"==2.28.0"'))


class TestPipFileUpdater(TestCase):
    """Rewriting requirements files, Pipfiles and Pipfile.lock."""

    def test_requirements_file_with_hashes(self) -> None:
        """Pins move and their hashes are refreshed from the index."""
        content = f"requests==2.27.0 \\\n    --hash=sha256:{HASH_A}\nflask==2.0\n"
        original = Dependency("requests", "2.27.0", [RequirementEntry("requirements.txt", "==2.27.0")], "pip")
        updated = original.updated("2.28.0", [RequirementEntry("requirements.txt", "==2.28.0")])
        updater = PipFileUpdater([updated], [DependencyFile("requirements.txt", content)])
        updater.http = index_returning(SIMPLE_INDEX_PAGE)
        (file,) = updater.updated_dependency_files()
        assert file.content == f"requests==2.28.0 \\\n    --hash=sha256:{HASH_B}\nflask==2.0\n"

    def test_pipfile_declaration(self) -> None:
        """Pipfile requirements are rewritten in place."""
        original = Dependency("django", "3.2.1", [RequirementEntry("Pipfile", ">=3.0", ("default",))], "pip")
        updated = original.updated(None, [RequirementEntry("Pipfile", ">=4.0", ("default",))])
        (pipfile,) = PipFileUpdater([updated], [DependencyFile("Pipfile", PIPFILE)]).updated_dependency_files()
        assert 'Django = {version = ">=4.0"}' in pipfile.content

    def test_pipfile_lock(self) -> None:
        """Pipfile.lock is regenerated by pipenv with the original metadata and a fresh hash."""
        files = [DependencyFile("Pipfile", PIPFILE), DependencyFile("Pipfile.lock", PIPFILE_LOCK)]
        original = next(d for d in PipFileParser(files).parse() if d.name == "requests")
        updated = original.updated("2.28.0")
        new_lock = {
            "_meta": {"hash": {"sha256": "whatever"}},
            "default": {"requests": {"version": "==2.28.0"}, "django": {"version": "==3.2.1"}},
            "develop": {},
        }
        runner = PipenvRunner(new_lock)
        (lockfile,) = PipFileUpdater([updated], files, runner=runner).updated_dependency_files()
        lock = json.loads(lockfile.content)
        assert lock["default"]["requests"]["version"] == "==2.28.0"
        assert lock["_meta"]["hash"]["sha256"] == pipfile_hash(PIPFILE)
        assert lock["_meta"]["requires"] == {"python_version": "3.11"}
        assert '"develop": {}' in lockfile.content
        assert 'requests = "==2.28.0"' in runner.pipfiles[0]

    def test_missing_path_dependencies(self) -> None:
        """Local Pipfile packages that were not supplied are all reported before pipenv runs."""
        pipfile = PIPFILE.replace(
            "[dev-packages]\n",
            'locallib = {path = "./libs/locallib", editable = true}\n'
            'wheel-lib = {file = "dist/wheel_lib-1.0-py3-none-any.whl"}\n'
            'remote = {file = "https://example.com/remote-1.0.tar.gz"}\n\n[dev-packages]\n',
        )
        files = [DependencyFile("Pipfile", pipfile), DependencyFile("Pipfile.lock", PIPFILE_LOCK)]
        original = next(d for d in PipFileParser(files).parse() if d.name == "requests")
        runner = PipenvRunner({})
        with pytest.raises(PathDependenciesNotReachable) as e:
            PipFileUpdater([original.updated("2.28.0")], files, runner=runner).updated_dependency_files()
        assert e.value.dependencies == ["./libs/locallib", "dist/wheel_lib-1.0-py3-none-any.whl"]
        assert runner.commands == []
