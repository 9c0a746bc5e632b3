"""Tests for the core data models."""

from unittest import TestCase

import pytest

from it_updates.errors import DependencyFileNotEvaluatable
from it_updates.models import (
    Dependency,
    DependencyFile,
    DependencySet,
    RequirementEntry,
    Source,
    SourceType,
    UnlockLevel,
)


def entry(requirement, file="package.json", groups=("dependencies",), source=None):
    return RequirementEntry(file=file, requirement=requirement, groups=groups, source=source)


class TestDependencyFile(TestCase):
    """File identity and paths."""

    def test_path(self) -> None:
        """Names are normalized and joined with the directory."""
        file = DependencyFile("./packages/a/package.json", "{}", directory="app/")
        assert file.name == "packages/a/package.json"
        assert file.directory == "/app"
        assert file.path == "/app/packages/a/package.json"
        assert DependencyFile("Gemfile", "").path == "/Gemfile"

    def test_with_content(self) -> None:
        """Updated copies keep the identity of the original."""
        file = DependencyFile("go.mod", "module a", support_file=True, file_type="symlink")
        updated = file.with_content("module b")
        assert updated.name == "go.mod"
        assert updated.support_file
        assert updated.type == "symlink"
        assert updated != file
        assert updated == DependencyFile("go.mod", "module b")


class TestDependency(TestCase):
    """Dependencies and their declarations."""

    def test_lockfile_presence(self) -> None:
        """Only a recorded version means the dependency is locked."""
        assert Dependency("a", "1.0.0", [entry("^1.0.0")], "npm_and_yarn").appears_in_lockfile
        assert not Dependency("a", None, [entry("^1.0.0")], "npm_and_yarn").appears_in_lockfile
        assert not Dependency("a", "1.0.0", [], "npm_and_yarn").top_level

    def test_updated_records_previous_state(self) -> None:
        """An updated dependency remembers what it was."""
        dependency = Dependency("a", "1.0.0", [entry("^1.0.0")], "npm_and_yarn")
        updated = dependency.updated("2.0.0", [entry("^2.0.0")])
        assert updated.previous_version == "1.0.0"
        assert updated.previous_requirements == (entry("^1.0.0"),)
        assert updated.changed_requirements() == [entry("^2.0.0")]
        assert updated.changed_files() == ["package.json"]

    def test_changed_files_deduplicated(self) -> None:
        """Each changed file is listed once, in declaration order."""
        dependency = Dependency(
            "a",
            None,
            [entry("^1.0.0", groups=("dependencies",)), entry("^1.0.0", file="b/package.json")],
            "npm_and_yarn",
        )
        updated = dependency.updated(
            None,
            [
                entry("^2.0.0", groups=("dependencies",)),
                entry("^2.0.0", groups=("devDependencies",)),
                entry("^2.0.0", file="b/package.json"),
            ],
        )
        assert updated.changed_files() == ["package.json", "b/package.json"]

    def test_source_details(self) -> None:
        """A single distinct source is returned; conflicting sources are an error."""
        git = Source(SourceType.git, url="https://github.com/a/b", ref="v1.0.0")
        dependency = Dependency("a", None, [entry(None, source=git), entry(None, file="b/package.json", source=git)], "x")
        assert dependency.source_details() == git
        assert Dependency("a", None, [entry("1.0")], "x").source_details() is None

        other = Source(SourceType.git, url="https://github.com/c/d")
        conflicting = Dependency("a", None, [entry(None, source=git), entry(None, source=other)], "x")
        with pytest.raises(DependencyFileNotEvaluatable):
            conflicting.source_details()

    def test_to_obj(self) -> None:
        """The JSON form includes the previous state and omits unset source fields."""
        source = Source(SourceType.registry, url="https://npm.example.com")
        dependency = Dependency("a", "1.0.0", [entry("^1.0.0", source=source)], "npm_and_yarn").updated("1.1.0")
        obj = dependency.to_obj()
        assert obj["version"] == "1.1.0"
        assert obj["previous_version"] == "1.0.0"
        assert obj["requirements"][0]["source"] == {"type": "registry", "url": "https://npm.example.com"}
        assert "metadata" not in obj["requirements"][0]

    def test_entry_metadata(self) -> None:
        """Metadata is looked up by key."""
        declared = RequirementEntry("pom.xml", "1.0", metadata=(("property_name", "lib.version"),))
        assert declared.meta("property_name") == "lib.version"
        assert declared.meta("missing") is None
        assert declared.to_obj()["metadata"] == {"property_name": "lib.version"}


class TestDependencySet(TestCase):
    """Merging repeated declarations."""

    def test_merge(self) -> None:
        """Requirements are combined and the more specific version wins."""
        dependencies = DependencySet()
        dependencies += Dependency("a", "1.2", [entry("^1.0.0")], "x")
        dependencies += Dependency("a", "1.2.3", [entry("^1.0.0"), entry("^1.2.0", file="b/package.json")], "x")
        dependencies += Dependency("b", None, [], "x")
        assert len(dependencies) == 2
        merged = dependencies.get("a")
        assert merged is not None
        assert merged.version == "1.2.3"
        assert len(merged.requirements) == 2
        assert "b" in dependencies
        assert [d.name for d in dependencies] == ["a", "b"]

    def test_missing_version_is_filled(self) -> None:
        """A later declaration can supply a version the first lacked."""
        dependencies = DependencySet([Dependency("a", None, [entry("^1.0.0")], "x"), Dependency("a", "1.0.1", [], "x")])
        assert dependencies.dependencies[0].version == "1.0.1"


class TestUnlockLevel(TestCase):
    """The unlock ladder."""

    def test_ladder(self) -> None:
        """Each level includes every stricter level, strictest first."""
        assert UnlockLevel.none.ladder == (UnlockLevel.none,)
        assert UnlockLevel.own.ladder == (UnlockLevel.none, UnlockLevel.own)
        assert UnlockLevel.all.ladder == (UnlockLevel.none, UnlockLevel.own, UnlockLevel.all)
