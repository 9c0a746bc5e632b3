"""Tests for NuGet."""

from unittest import TestCase
from unittest.mock import MagicMock

import pytest

from it_updates.errors import RequiredFileNotFound
from it_updates.models import Dependency, DependencyFile, RequirementEntry, UnlockLevel
from it_updates.nuget import (
    NUGET_ORG,
    NugetFileParser,
    NugetFileUpdater,
    NugetRequirement,
    NugetUpdateChecker,
    NugetVersion,
    update_reference,
    update_wildcard_requirement,
)
from it_updates.sandbox import Credential
from it_updates.update_checker import CheckStatus

CSPROJ = """<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <TargetFramework>net6.0</TargetFramework>
  </PropertyGroup>
  <ItemGroup>
    <PackageReference Include="Newtonsoft.Json" Version="12.0.1" />
    <PackageReference Include="Serilog" Version="$(SerilogVersion)" />
    <PackageReference Include="Polly">
      <Version>[7.2.0]</Version>
    </PackageReference>
    <PackageReference Include="Dapper" Version="2.*" />
    <PackageReference Include="Undefined" Version="$(Nope)" />
  </ItemGroup>
</Project>
"""

PROPS = """<Project>
  <PropertyGroup>
    <SerilogVersion>2.10.0</SerilogVersion>
  </PropertyGroup>
</Project>
"""

PACKAGES_CONFIG = """<?xml version="1.0" encoding="utf-8"?>
<packages>
  <package id="NUnit" version="3.12.0" targetFramework="net48" />
  <package id="StyleCop.Analyzers" version="1.1.118" developmentDependency="true" />
</packages>
"""

NUGET_CONFIG = """<?xml version="1.0" encoding="utf-8"?>
<configuration>
  <packageSources>
    <clear />
    <add key="internal" value="https://nuget.example.com/api/v2" />
  </packageSources>
</configuration>
"""

FLAT_CONTAINER = "https://api.nuget.org/v3-flatcontainer/"
SERVICE_INDEX = {"resources": [{"@id": FLAT_CONTAINER, "@type": "PackageBaseAddress/3.0.0"}]}


def project_files() -> list[DependencyFile]:
    return [
        DependencyFile("App.csproj", CSPROJ),
        DependencyFile("Directory.Build.props", PROPS),
        DependencyFile("packages.config", PACKAGES_CONFIG),
    ]


def newtonsoft(requirement: str, version: str | None = None) -> Dependency:
    return Dependency("Newtonsoft.Json", version, [RequirementEntry("App.csproj", requirement)], "nuget")


def nuget_org(versions: list[str]) -> MagicMock:
    listing = MagicMock()
    listing.status_code = 200
    listing.json.return_value = {"versions": versions}
    http = MagicMock()
    http.get_json.return_value = SERVICE_INDEX
    http.get.return_value = listing
    return http


class TestNugetRequirement(TestCase):
    """NuGet version ranges."""

    def test_bare_version_is_minimum(self) -> None:
        """A bare version accepts anything newer."""
        assert NugetRequirement("1.0").satisfied_by("2.0")
        assert not NugetRequirement("1.0").satisfied_by("0.9")

    def test_intervals_and_floating(self) -> None:
        """Intervals and floating versions."""
        assert NugetRequirement("[1.0,2.0)").satisfied_by("1.5")
        assert not NugetRequirement("[1.0,2.0)").satisfied_by("2.0")
        assert NugetRequirement("[1.0]").satisfied_by("1.0.0")
        assert NugetRequirement("1.*").satisfied_by("1.9")
        assert not NugetRequirement("1.*").satisfied_by("2.0")
        assert NugetRequirement("*").satisfied_by("0.0.1")
        assert NugetRequirement("1.0.0-*").satisfied_by("1.0.1-beta")

    def test_versions(self) -> None:
        """Four numeric parts at most."""
        assert NugetVersion.correct("1.2.3.4")
        assert not NugetVersion.correct("1.2.3.4.5")
        assert NugetVersion("2.0.0-rc.1").is_prerelease


class TestNugetFileParser(TestCase):
    """Parsing project files and packages.config."""

    def test_parse(self) -> None:
        """References, property versions and packages.config entries are dependencies."""
        dependencies = {d.name: d for d in NugetFileParser(project_files()).parse()}
        assert set(dependencies) == {"Newtonsoft.Json", "Serilog", "Polly", "Dapper", "NUnit", "StyleCop.Analyzers"}
        assert dependencies["Newtonsoft.Json"].version == "12.0.1"
        assert dependencies["Polly"].version == "7.2.0"
        assert dependencies["Polly"].requirements[0].requirement == "[7.2.0]"
        assert dependencies["Dapper"].version is None
        assert dependencies["NUnit"].requirements[0].groups == ("dependencies",)
        assert dependencies["StyleCop.Analyzers"].requirements[0].groups == ("devDependencies",)

    def test_property_version(self) -> None:
        """A `$(Property)` version is read from a shared property file."""
        (serilog,) = [d for d in NugetFileParser(project_files()).parse() if d.name == "Serilog"]
        assert serilog.version == "2.10.0"
        entry = serilog.requirements[0]
        assert entry.file == "App.csproj"
        assert entry.meta("property_name") == "SerilogVersion"
        assert entry.meta("property_file") == "Directory.Build.props"

    def test_required_files(self) -> None:
        """A project file or packages.config is required."""
        with pytest.raises(RequiredFileNotFound):
            NugetFileParser([DependencyFile("Directory.Build.props", PROPS)]).parse()


class TestNugetUpdateChecker(TestCase):
    """Update checks against NuGet feeds."""

    def test_v3_feed(self) -> None:
        """nuget.org is read through its flat container; prereleases are skipped."""
        http = nuget_org(["12.0.1", "12.0.3", "13.0.1", "13.0.2-beta1"])
        checker = NugetUpdateChecker(newtonsoft("12.0.1", "12.0.1"), [], http=http)
        assert checker.feed_urls == [NUGET_ORG]
        assert checker.latest_version == NugetVersion("13.0.1")
        assert http.get_json.call_args.args[0] == NUGET_ORG
        assert http.get.call_args.args[0] == f"{FLAT_CONTAINER}newtonsoft.json/index.json"

    def test_check(self) -> None:
        """A new version is an update at the `own` level, rewriting the declared version."""
        http = nuget_org(["12.0.1", "13.0.1"])
        result = NugetUpdateChecker(newtonsoft("12.0.1", "12.0.1"), [], http=http).check()
        assert result.status is CheckStatus.updatable
        assert result.unlock_level is UnlockLevel.own
        assert result.dependencies[0].requirements[0].requirement == "13.0.1"

    def test_requirement_rewrites(self) -> None:
        """Exact pins and floating versions move; ranges are kept."""
        http = nuget_org(["12.0.1", "13.0.1"])

        def updated(requirement: str) -> str:
            return NugetUpdateChecker(newtonsoft(requirement), [], http=http).updated_requirements[0].requirement

        assert updated("[12.0.1]") == "[13.0.1]"
        assert updated("12.*") == "13.*"
        assert updated("[12.0,14.0)") == "[12.0,14.0)"
        assert update_wildcard_requirement("1.2.*", NugetVersion("5.3.1")) == "5.3.*"

    def test_private_v2_feed(self) -> None:
        """`<clear />` drops nuget.org; v2 feeds are queried with credentials and unlisted versions skipped."""
        feed = "https://nuget.example.com/api/v2"
        response = MagicMock()
        response.status_code = 200
        response.text = """<feed xmlns="http://www.w3.org/2005/Atom"
              xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata"
              xmlns:d="http://schemas.microsoft.com/ado/2007/08/dataservices">
          <entry><m:properties><d:Version>12.0.1</d:Version><d:Listed>true</d:Listed></m:properties></entry>
          <entry><m:properties><d:Version>13.0.1</d:Version></m:properties></entry>
          <entry><m:properties><d:Version>14.0.0</d:Version><d:Listed>false</d:Listed></m:properties></entry>
        </feed>"""
        http = MagicMock()
        http.get.return_value = response
        files = [DependencyFile("App.csproj", CSPROJ), DependencyFile("nuget.config", NUGET_CONFIG)]
        credentials = [Credential("nuget_feed", registry=feed, token="t")]
        checker = NugetUpdateChecker(newtonsoft("12.0.1", "12.0.1"), files, credentials=credentials, http=http)
        assert checker.feed_urls == [feed]
        assert checker.latest_version == NugetVersion("13.0.1")
        assert http.get.call_args.args[0] == f"{feed}/FindPackagesById()?id='Newtonsoft.Json'"
        assert http.get.call_args.kwargs["auth"] == ("user", "t")
        http.get_json.assert_not_called()


class TestNugetFileUpdater(TestCase):
    """Rewriting project files."""

    def update(self, name: str, version: str, requirement: str) -> list[DependencyFile]:
        files = project_files()
        dependency = next(d for d in NugetFileParser(files).parse() if d.name == name)
        updated = dependency.updated(version, [dependency.requirements[0].replace(requirement=requirement)])
        return NugetFileUpdater([updated], files).updated_dependency_files()

    def test_attribute_version(self) -> None:
        """The Version attribute of the matching reference changes."""
        (csproj,) = self.update("Newtonsoft.Json", "13.0.1", "13.0.1")
        assert csproj.content == CSPROJ.replace('Version="12.0.1"', 'Version="13.0.1"')

    def test_child_version(self) -> None:
        """A `<Version>` child element changes too."""
        (csproj,) = self.update("Polly", "7.3.1", "[7.3.1]")
        assert csproj.content == CSPROJ.replace("<Version>[7.2.0]</Version>", "<Version>[7.3.1]</Version>")

    def test_property_version(self) -> None:
        """A property-driven version is rewritten where the property is defined."""
        (props,) = self.update("Serilog", "2.12.0", "2.12.0")
        assert props.name == "Directory.Build.props"
        assert props.content == PROPS.replace("2.10.0", "2.12.0")

    def test_packages_config(self) -> None:
        """packages.config entries are rewritten by id."""
        (config,) = self.update("NUnit", "3.13.3", "3.13.3")
        assert config.content == PACKAGES_CONFIG.replace('version="3.12.0"', 'version="3.13.3"')

    def test_update_reference_other_package(self) -> None:
        """Other references are untouched."""
        assert update_reference(CSPROJ, "Other", "12.0.1", "13.0.1") == CSPROJ
