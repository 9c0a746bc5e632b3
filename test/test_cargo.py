"""Tests for Cargo."""

from unittest import TestCase
from unittest.mock import MagicMock

import pytest

from it_updates.cargo import (
    CRATES_IO_API,
    CargoFileParser,
    CargoFileUpdater,
    CargoRequirement,
    CargoRequirementsUpdater,
    CargoUpdateChecker,
    update_cargo_toml,
)
from it_updates.errors import (
    ContentUnchanged,
    DependencyFileNotEvaluatable,
    DependencyFileNotResolvable,
    FileUpdateError,
    PathDependenciesNotReachable,
)
from it_updates.models import Dependency, DependencyFile, RequirementEntry, Source, SourceType, UnlockLevel
from it_updates.sandbox import CommandOutput
from it_updates.update_checker import CheckStatus
from it_updates.version import SemverVersion

CARGO_TOML = """[package]
name = "app"
version = "0.1.0"

[dependencies]
serde = "1.0.100"
rand = { version = "0.7", features = ["small_rng"] }
mylib = { git = "https://github.com/me/mylib", tag = "v0.1.0" }
local = { path = "crates/local" }

[dev-dependencies.tempfile]
version = "3.1"

[target.'cfg(unix)'.dependencies]
libc = "0.2"
"""

LOCAL_TOML = """[package]
name = "local"
version = "0.1.0"
"""

REGISTRY = 'source = "registry+https://github.com/rust-lang/crates.io-index"'
MYLIB_COMMIT = "abcdef1234567890abcdef1234567890abcdef12"


def cargo_lock(serde: str = "1.0.104") -> str:
    return f"""[[package]]
name = "app"
version = "0.1.0"

[[package]]
name = "serde"
version = "{serde}"
{REGISTRY}

[[package]]
name = "rand"
version = "0.7.3"
{REGISTRY}

[[package]]
name = "rand_core"
version = "0.5.1"
{REGISTRY}

[[package]]
name = "mylib"
version = "0.1.0"
source = "git+https://github.com/me/mylib?tag=v0.1.0#{MYLIB_COMMIT}"

[[package]]
name = "local"
version = "0.1.0"

[[package]]
name = "tempfile"
version = "3.1.0"
{REGISTRY}

[[package]]
name = "libc"
version = "0.2.66"
{REGISTRY}
"""


CRATE_DOCUMENT = {
    "crate": {"repository": "https://github.com/serde-rs/serde"},
    "versions": [
        {"num": "2.0.0-alpha.1", "yanked": False},
        {"num": "1.0.131", "yanked": True},
        {"num": "1.0.130", "yanked": False},
        {"num": "1.0.120", "yanked": False},
        {"num": "1.0.104", "yanked": False},
    ],
}


def crates_io(document: dict, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = document
    http = MagicMock()
    http.get.return_value = response
    return http


class CargoRunner:
    """A runner standing in for `cargo update`: it writes a Cargo.lock locking serde at the requested version."""

    def __init__(self, default: str = "1.0.120", unresolvable: tuple[str, ...] = ()) -> None:
        self.default = default
        self.unresolvable = unresolvable
        self.commands = []
        self.manifests = []

    def run(self, command, *, cwd, env, stdin, timeout):
        self.commands.append(list(command))
        self.manifests.append((cwd / "Cargo.toml").read_text())
        version = command[command.index("--precise") + 1] if "--precise" in command else self.default
        if version in self.unresolvable:
            message = f"error: failed to select a version for the requirement `serde = \"={version}\"`"
            return CommandOutput(101, "", message)
        (cwd / "Cargo.lock").write_text(cargo_lock(version))
        return CommandOutput(0, "", "")


def serde() -> Dependency:
    return Dependency("serde", "1.0.104", [RequirementEntry("Cargo.toml", "1.0.100", ("dependencies",))], "cargo")


class TestCargoRequirement(TestCase):
    """Cargo version requirements."""

    def test_bare_versions_are_carets(self) -> None:
        """A bare version allows compatible updates."""
        assert CargoRequirement("1.2.3").satisfied_by("1.9.0")
        assert not CargoRequirement("1.2.3").satisfied_by("2.0.0")
        assert CargoRequirement("0.3").satisfied_by("0.3.5")
        assert not CargoRequirement("0.3").satisfied_by("0.4.0")

    def test_other_forms(self) -> None:
        """Tilde, wildcard, exact and comma-joined requirements."""
        assert CargoRequirement("~1.2").satisfied_by("1.2.9")
        assert not CargoRequirement("~1.2").satisfied_by("1.3.0")
        assert CargoRequirement("1.*").satisfied_by("1.7.0")
        assert CargoRequirement("=1.2.3").satisfied_by("1.2.3")
        assert not CargoRequirement("=1.2.3").satisfied_by("1.2.4")
        assert CargoRequirement(">=1.0, <2.0").satisfied_by("1.5.0")


class TestCargoFileParser(TestCase):
    """Parsing Cargo.toml and Cargo.lock."""

    def test_parse(self) -> None:
        """Every dependency table is read; versions come from the lockfile."""
        files = [DependencyFile("Cargo.toml", CARGO_TOML), DependencyFile("Cargo.lock", cargo_lock())]
        dependencies = {d.name: d for d in CargoFileParser(files).parse()}
        assert set(dependencies) == {"serde", "rand", "rand_core", "mylib", "local", "tempfile", "libc"}
        assert dependencies["serde"].version == "1.0.104"
        assert dependencies["rand"].requirements[0].requirement == "0.7"
        assert dependencies["tempfile"].requirements[0].groups == ("dev-dependencies",)
        assert dependencies["libc"].version == "0.2.66"
        assert not dependencies["rand_core"].top_level
        mylib = dependencies["mylib"]
        assert mylib.version == MYLIB_COMMIT
        assert mylib.source_details() == Source(SourceType.git, url="https://github.com/me/mylib", ref="v0.1.0")
        assert dependencies["local"].source_details().type is SourceType.path

    def test_parse_without_lockfile(self) -> None:
        """Without a lockfile there are no versions and no subdependencies."""
        dependencies = CargoFileParser([DependencyFile("Cargo.toml", CARGO_TOML)]).parse()
        assert {d.name for d in dependencies} == {"serde", "rand", "mylib", "local", "tempfile", "libc"}
        assert all(d.version is None for d in dependencies)

    def test_patched_dependencies_skipped(self) -> None:
        """Dependencies replaced by a `[patch]` section are not updated."""
        manifest = CARGO_TOML + '\n[patch.crates-io]\nserde = { path = "../serde" }\n'
        dependencies = CargoFileParser([DependencyFile("Cargo.toml", manifest)]).parse()
        assert "serde" not in {d.name for d in dependencies}

    def test_workspace_member(self) -> None:
        """A workspace member cannot be updated on its own."""
        manifest = '[package]\nname = "member"\nversion = "0.1.0"\nworkspace = ".."\n'
        with pytest.raises(DependencyFileNotEvaluatable):
            CargoFileParser([DependencyFile("Cargo.toml", manifest, directory="crates/member")]).parse()


class TestCargoRequirementsUpdater(TestCase):
    """Rewriting requirements."""

    def updated(self, requirement: str, version: str) -> str:
        entries = [RequirementEntry("Cargo.toml", requirement, ("dependencies",))]
        (entry,) = CargoRequirementsUpdater(entries, SemverVersion(version)).updated_requirements()
        return entry.requirement

    def test_updates(self) -> None:
        """Requirements keep their precision; upper bounds move past the new version."""
        assert self.updated("1.0", "1.5.0") == "1.0"
        assert self.updated("1.0.100", "2.0.1") == "2.0.1"
        assert self.updated("0.7", "0.8.3") == "0.8"
        assert self.updated(">=1.0, <2.0", "3.4.0") == ">=1.0, <4.0"

    def test_update_cargo_toml(self) -> None:
        """Inline tables, dependency tables and target sections are all rewritten."""
        rand = Dependency("rand", "0.7.3", [RequirementEntry("Cargo.toml", "0.7", ("dependencies",))], "cargo")
        content = update_cargo_toml(
            CARGO_TOML, rand.updated("0.8.3", [RequirementEntry("Cargo.toml", "0.8", ("dependencies",))]), "Cargo.toml"
        )
        assert 'rand = { version = "0.8", features = ["small_rng"] }' in content

        tempfile = Dependency("tempfile", "3.1.0", [RequirementEntry("Cargo.toml", "3.1", ("dev-dependencies",))], "cargo")
        content = update_cargo_toml(
            CARGO_TOML,
            tempfile.updated("4.0.0", [RequirementEntry("Cargo.toml", "4.0", ("dev-dependencies",))]),
            "Cargo.toml",
        )
        assert '[dev-dependencies.tempfile]\nversion = "4.0"\n' in content

        libc = Dependency("libc", "0.2.66", [RequirementEntry("Cargo.toml", "0.2", ("dependencies",))], "cargo")
        content = update_cargo_toml(
            CARGO_TOML, libc.updated("0.3.0", [RequirementEntry("Cargo.toml", "0.3", ("dependencies",))]), "Cargo.toml"
        )
        assert "[target.'cfg(unix)'.dependencies]\nlibc = \"0.3\"\n" in content
        assert 'serde = "1.0.100"' in content

    def test_update_git_tag(self) -> None:
        """A git tag is replaced in place."""
        source = Source(SourceType.git, url="https://github.com/me/mylib", ref="v0.1.0")
        mylib = Dependency("mylib", MYLIB_COMMIT, [RequirementEntry("Cargo.toml", None, ("dependencies",), source)], "cargo")
        updated = mylib.updated(
            "1234567890abcdef1234567890abcdef12345678",
            [RequirementEntry("Cargo.toml", None, ("dependencies",), source.replace(ref="v0.2.0"))],
        )
        content = update_cargo_toml(CARGO_TOML, updated, "Cargo.toml")
        assert 'mylib = { git = "https://github.com/me/mylib", tag = "v0.2.0" }' in content


class TestCargoUpdateChecker(TestCase):
    """Update checks against crates.io and cargo."""

    def files(self) -> list[DependencyFile]:
        return [
            DependencyFile("Cargo.toml", CARGO_TOML),
            DependencyFile("Cargo.lock", cargo_lock()),
            DependencyFile("crates/local/Cargo.toml", LOCAL_TOML, file_type="path_dependency"),
        ]

    def test_latest_version(self) -> None:
        """Yanked releases and prereleases are skipped."""
        http = crates_io(CRATE_DOCUMENT)
        checker = CargoUpdateChecker(serde(), self.files(), http=http)
        assert checker.latest_version == SemverVersion("1.0.130")
        assert http.get.call_args.args[0] == f"{CRATES_IO_API}/serde"
        assert checker.listing_source_url() == "https://github.com/serde-rs/serde"

    def test_unknown_crate(self) -> None:
        """A crate crates.io does not know has no latest version."""
        checker = CargoUpdateChecker(serde(), self.files(), http=crates_io({}, 404))
        assert checker.latest_version is None
        assert checker.up_to_date()

    def test_update_within_lockfile(self) -> None:
        """`cargo update -p` finds the newest version the requirement allows."""
        runner = CargoRunner(default="1.0.120")
        checker = CargoUpdateChecker(serde(), self.files(), http=crates_io(CRATE_DOCUMENT), runner=runner)
        result = checker.check()
        assert result.status is CheckStatus.updatable
        assert result.unlock_level is UnlockLevel.none
        assert result.dependencies[0].version == "1.0.120"
        assert runner.commands == [["cargo", "update", "-p", "serde:1.0.104"]]

    def test_latest_resolvable_version(self) -> None:
        """The requirement is widened and cargo asked for the latest version precisely."""
        runner = CargoRunner()
        checker = CargoUpdateChecker(serde(), self.files(), http=crates_io(CRATE_DOCUMENT), runner=runner)
        assert checker.latest_resolvable_version == SemverVersion("1.0.130")
        assert runner.commands == [["cargo", "update", "-p", "serde:1.0.104", "--precise", "1.0.130"]]
        assert 'serde = ">=1.0.104, <=1.0.130"' in runner.manifests[0]

    def test_latest_not_resolvable(self) -> None:
        """When the latest version cannot be selected, cargo picks the best one it can."""
        runner = CargoRunner(default="1.0.120", unresolvable=("1.0.130",))
        checker = CargoUpdateChecker(serde(), self.files(), http=crates_io(CRATE_DOCUMENT), runner=runner)
        assert checker.latest_resolvable_version == SemverVersion("1.0.120")
        assert len(runner.commands) == 2


class TestCargoFileUpdater(TestCase):
    """Rewriting Cargo.toml and regenerating Cargo.lock."""

    def files(self) -> list[DependencyFile]:
        return [
            DependencyFile("Cargo.toml", CARGO_TOML),
            DependencyFile("Cargo.lock", cargo_lock()),
            DependencyFile("crates/local/Cargo.toml", LOCAL_TOML, file_type="path_dependency"),
        ]

    def test_lockfile_only(self) -> None:
        """A version allowed by the requirement only changes Cargo.lock."""
        runner = CargoRunner()
        updated = serde().updated("1.0.130")
        (lockfile,) = CargoFileUpdater([updated], self.files(), runner=runner).updated_dependency_files()
        assert lockfile.name == "Cargo.lock"
        assert 'version = "1.0.130"' in lockfile.content
        assert runner.commands == [["cargo", "update", "-p", "serde:1.0.104", "--precise", "1.0.130"]]

    def test_manifest_and_lockfile(self) -> None:
        """A changed requirement is written to Cargo.toml before cargo runs."""
        runner = CargoRunner()
        updated = serde().updated("2.0.1", [RequirementEntry("Cargo.toml", "2.0.1", ("dependencies",))])
        manifest, lockfile = CargoFileUpdater([updated], self.files(), runner=runner).updated_dependency_files()
        assert 'serde = "2.0.1"' in manifest.content
        assert 'serde = "2.0.1"' in runner.manifests[0]
        assert 'version = "2.0.1"' in lockfile.content

    def test_unresolvable(self) -> None:
        """A version cargo cannot select is unresolvable."""
        runner = CargoRunner(unresolvable=("1.0.130",))
        updater = CargoFileUpdater([serde().updated("1.0.130")], self.files(), runner=runner)
        with pytest.raises(DependencyFileNotResolvable):
            updater.updated_dependency_files()

    def test_stale_previous_requirement(self) -> None:
        """A previous requirement that Cargo.toml no longer declares leaves the manifest unchanged."""
        runner = CargoRunner()
        stale = Dependency("serde", "1.0.104", [RequirementEntry("Cargo.toml", "9.9", ("dependencies",))], "cargo")
        updated = stale.updated("2.0.1", [RequirementEntry("Cargo.toml", "2.0.1", ("dependencies",))])
        with pytest.raises(ContentUnchanged) as e:
            CargoFileUpdater([updated], self.files(), runner=runner).updated_dependency_files()
        assert e.value.file_path == "/Cargo.toml"
        assert runner.commands == []

    def test_nothing_changed(self) -> None:
        """An update that leaves every file as it was is an error."""
        runner = CargoRunner()
        updater = CargoFileUpdater([serde().updated("1.0.104")], self.files(), runner=runner)
        with pytest.raises(FileUpdateError, match="No files have changed!"):
            updater.updated_dependency_files()
        assert len(runner.commands) == 1

    def test_missing_path_dependencies(self) -> None:
        """Every path dependency without its manifest is reported at once, before cargo runs."""
        runner = CargoRunner()
        manifest = CARGO_TOML + '\n[patch.crates-io]\nrand = { path = "vendor/rand" }\n'
        files = [DependencyFile("Cargo.toml", manifest), DependencyFile("Cargo.lock", cargo_lock())]
        updater = CargoFileUpdater([serde().updated("1.0.130")], files, runner=runner)
        with pytest.raises(PathDependenciesNotReachable) as e:
            updater.updated_dependency_files()
        assert e.value.dependencies == ["crates/local", "vendor/rand"]
        assert runner.commands == []
