"""Tests for the command-line harness."""

import json
import sys
from io import StringIO
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import TestCase
from unittest.mock import MagicMock, patch

import pytest

from it_updates._cli import main, parse_ignores, read_dependency_files, write_dependency_files
from it_updates.maven import Maven, MavenFileParser
from it_updates.models import DependencyFile
from it_updates.update_checker import CheckStatus

POM = """<project>
  <groupId>com.example</groupId>
  <artifactId>app</artifactId>
  <dependencies>
    <dependency>
      <groupId>junit</groupId>
      <artifactId>junit</artifactId>
      <version>4.12</version>
    </dependency>
  </dependencies>
</project>
"""


def run_main(*args: str) -> str:
    with patch.object(sys, "argv", ["it-updates", *args]), patch("sys.stdout", new_callable=StringIO) as stdout:
        main()
    return stdout.getvalue()


class TestParseIgnores(TestCase):
    """Ignore options."""

    def test_parse(self) -> None:
        """Names may contain colons; the requirement follows the last one."""
        ignores = parse_ignores(["lodash:>=5.0.0", "org.slf4j:slf4j-api:[2.0,)", "lodash:4.17.21"])
        assert ignores == {"lodash": [">=5.0.0", "4.17.21"], "org.slf4j:slf4j-api": ["[2.0,)"]}

    def test_invalid(self) -> None:
        """A rule without a name is rejected."""
        with pytest.raises(ValueError, match="NAME:REQUIREMENT"):
            parse_ignores([">=5.0.0"])


class TestDependencyFiles(TestCase):
    """Reading and writing the target directory."""

    def test_read(self) -> None:
        """Matching files are read with paths relative to the root; vendored directories are skipped."""
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "module").mkdir()
            (root / "node_modules" / "dep").mkdir(parents=True)
            (root / "pom.xml").write_text(POM)
            (root / "module" / "pom.xml").write_text(POM)
            (root / "node_modules" / "dep" / "pom.xml").write_text(POM)
            (root / "README.md").write_text("# app\n")
            files = read_dependency_files(root, Maven())
        assert [f.name for f in files] == ["module/pom.xml", "pom.xml"]
        assert files[1].content == POM

    def test_write(self) -> None:
        """Updated files are written back in place."""
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "pom.xml").write_text(POM)
            write_dependency_files(root, [DependencyFile("pom.xml", "<project/>")])
            assert (root / "pom.xml").read_text() == "<project/>"


class TestMain(TestCase):
    """Running the harness."""

    def test_parse_only(self) -> None:
        """Without --check the parsed dependencies are printed."""
        with TemporaryDirectory() as tmp:
            (Path(tmp) / "pom.xml").write_text(POM)
            output = run_main("--target", tmp, "--package_manager", "maven")
        (dependency,) = json.loads(output)
        assert dependency["name"] == "junit:junit"

    def test_unknown_package_manager(self) -> None:
        """An unknown package manager is reported and nothing is printed."""
        with TemporaryDirectory() as tmp, self.assertLogs("it_updates._cli", "ERROR") as logs:
            output = run_main("--target", tmp, "--package_manager", "nope")
        assert output == ""
        assert "Unknown package manager" in logs.output[0]

    @patch("it_updates._cli.check_for_update")
    def test_check(self, check_for_update: MagicMock) -> None:
        """--check prints the result of every check."""
        check_for_update.return_value = MagicMock(status=CheckStatus.up_to_date, to_obj=lambda: {"status": "up_to_date"})
        with TemporaryDirectory() as tmp:
            (Path(tmp) / "pom.xml").write_text(POM)
            output = run_main("--target", tmp, "--package_manager", "maven", "--check", "--ignore", "junit:junit:>=5")
        assert json.loads(output) == {"junit:junit": {"status": "up_to_date"}}
        assert check_for_update.call_args.kwargs["ignored_versions"] == [">=5"]

    @patch("it_updates._cli.check_for_update")
    def test_unmatched_ignore(self, check_for_update: MagicMock) -> None:
        """An ignore rule naming no dependency is reported and applies to nothing."""
        check_for_update.return_value = MagicMock(status=CheckStatus.up_to_date, to_obj=lambda: {"status": "up_to_date"})
        with TemporaryDirectory() as tmp, self.assertLogs("it_updates._cli", "WARNING") as logs:
            (Path(tmp) / "pom.xml").write_text(POM)
            run_main("--target", tmp, "--package_manager", "maven", "--check", "--ignore", "junit:>=5")
        assert any("'junit'" in line and "matches no maven dependency" in line for line in logs.output)
        assert check_for_update.call_args.kwargs["ignored_versions"] == ()

    @patch("it_updates._cli.check_for_update")
    def test_write_updates(self, check_for_update: MagicMock) -> None:
        """--write rewrites the files of updatable dependencies."""
        (junit,) = MavenFileParser([DependencyFile("pom.xml", POM)]).parse()
        updated = junit.updated("4.13.2", [junit.requirements[0].replace(requirement="4.13.2")])
        check_for_update.return_value = MagicMock(
            status=CheckStatus.updatable,
            dependencies=[updated],
            to_obj=lambda: {"status": "updatable"},
        )
        with TemporaryDirectory() as tmp:
            pom = Path(tmp) / "pom.xml"
            pom.write_text(POM)
            run_main("--target", tmp, "--package_manager", "maven", "--write")
            assert pom.read_text() == POM.replace("4.12", "4.13.2")
