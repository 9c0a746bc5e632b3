"""Tests for the shared version classes."""

from unittest import TestCase

import pytest

from it_updates.errors import BadVersion
from it_updates.version import GenericVersion, SemverVersion


class TestGenericVersion(TestCase):
    """Ordering and parsing of dotted versions."""

    def test_trailing_zeros_are_equal(self) -> None:
        """`1.0` and `1.0.0` are the same version, and hash the same."""
        assert GenericVersion("1.0") == GenericVersion("1.0.0")
        assert hash(GenericVersion("1.0")) == hash(GenericVersion("1.0.0"))

    def test_numeric_ordering(self) -> None:
        """Segments compare numerically, not lexically."""
        assert GenericVersion("1.10") > GenericVersion("1.9")
        assert GenericVersion("2") > GenericVersion("1.99.99")

    def test_prerelease_orders_before_release(self) -> None:
        """A release orders after all of its prereleases."""
        assert GenericVersion("1.0.0.rc1") < GenericVersion("1.0.0")
        assert GenericVersion("1.0.0-1") < GenericVersion("1.0.0")
        assert GenericVersion("1.0.0.beta") < GenericVersion("1.0.0.rc1")
        assert GenericVersion("1.0.0.rc1").is_prerelease
        assert not GenericVersion("1.0.0").is_prerelease

    def test_compare_with_string(self) -> None:
        """Strings are coerced to the same version class."""
        assert GenericVersion("1.2.3") == "1.2.3"
        assert GenericVersion("1.2.3").compare("1.2.4") == -1

    def test_malformed(self) -> None:
        """Non-versions raise BadVersion and `correct` never raises."""
        with pytest.raises(BadVersion):
            GenericVersion("latest")
        with pytest.raises(BadVersion):
            GenericVersion("")
        assert not GenericVersion.correct("latest")
        assert not GenericVersion.correct(None)
        assert GenericVersion.correct("v1.2")

    def test_bump(self) -> None:
        """The last segment is dropped and the new last one incremented."""
        assert str(GenericVersion("1.2.3").bump()) == "1.3"
        assert str(GenericVersion("1.2").bump()) == "2"
        assert str(GenericVersion("4").bump()) == "5"

    def test_release_version(self) -> None:
        """Prerelease and local parts are dropped."""
        version = GenericVersion("1.2.3.rc1+build5")
        assert version.local == "build5"
        assert str(version.release_version()) == "1.2.3"

    def test_lowest_prerelease(self) -> None:
        """The lowest prerelease orders below every other prerelease and above the previous release."""
        lowest = GenericVersion.lowest_prerelease([2, 0, 0])
        assert lowest < GenericVersion("2.0.0.alpha1")
        assert lowest < GenericVersion("2.0.0")
        assert lowest > GenericVersion("1.99")


class TestSemverVersion(TestCase):
    """SemVer parsing via semantic_version."""

    def test_partial_versions(self) -> None:
        """Partial versions are padded with zeros, keeping the written precision."""
        version = SemverVersion("1.2")
        assert version.release == (1, 2)
        assert version == SemverVersion("1.2.0")

    def test_leading_v_and_build(self) -> None:
        """A leading `v` is ignored and build metadata never takes part in comparisons."""
        assert SemverVersion("v1.2.3") == SemverVersion("1.2.3")
        assert SemverVersion("1.2.3+abc") == SemverVersion("1.2.3+def")
        assert SemverVersion("1.2.3+abc").local == "abc"

    def test_prerelease(self) -> None:
        """Prereleases order before their release."""
        assert SemverVersion("1.0.0-rc.1") < SemverVersion("1.0.0")
        assert SemverVersion("1.0.0-alpha") < SemverVersion("1.0.0-beta")
        assert SemverVersion("1.0.0-rc.1").is_prerelease

    def test_lowest_prerelease(self) -> None:
        """`-0` is the lowest prerelease of a release."""
        lowest = SemverVersion.lowest_prerelease([2, 0, 0])
        assert str(lowest) == "2.0.0-0"
        assert lowest < SemverVersion("2.0.0-alpha")
        assert lowest > SemverVersion("1.9.9")

    def test_malformed(self) -> None:
        """Dist-tags and garbage are not versions."""
        assert not SemverVersion.correct("next")
        assert not SemverVersion.correct("1.2.3 || 2")
