"""Configuration settings for it-updates."""

from __future__ import annotations

import functools
import shlex
from pathlib import Path
from typing import List  # `list` is shadowed by the CliSettings.list field

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    CliImplicitFlag,
    SettingsConfigDict,
)

from .it_updates import APP_DIRS
from .models import UnlockLevel


class Settings(BaseSettings):
    """Settings for it-updates, read from `IT_UPDATES_*` environment variables."""

    log_level: str = Field(default="info", description="Log level")
    http_connect_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for a registry or git host to accept a connection.",
    )
    http_read_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for a registry or git host to send data.",
    )
    http_retries: int = Field(
        default=2,
        description="""How many times a registry request is retried after a
        connection error or timeout. Other failures are never retried.""",
    )
    helper_timeout: float = Field(
        default=900.0,
        description="""Wall-clock limit, in seconds, for every native helper or
        package manager subprocess. A timed-out subprocess is a failure.""",
    )
    max_unlock_iterations: int = Field(
        default=10,
        description="""How many times a full unlock may widen the set of unlocked
        packages before giving up.""",
    )
    helpers_path: Path = Field(
        default=APP_DIRS.user_data_path / "helpers",
        description="""Directory holding the native helpers. Available as
        `{helpers_path}` in the helper commands below.""",
    )
    npm_helper: str = Field(
        default="node {helpers_path}/npm/bin/run.js",
        description="Command running the JavaScript helper (npm and yarn).",
    )
    composer_helper: str = Field(
        default="php {helpers_path}/php/bin/run.php",
        description="Command running the PHP helper (composer).",
    )
    pipenv: str = Field(default="pipenv", description="The `pipenv` executable.")
    fallback_python: str = Field(
        default="3",
        description="""Python version passed to `pipenv --python` when a lock
        fails because of an unsupported interpreter.""",
    )
    cargo: str = Field(default="cargo", description="The `cargo` executable.")
    go: str = Field(default="go", description="The `go` executable.")
    goproxy: str = Field(default="https://proxy.golang.org", description="Go module proxy.")
    container_image: str | None = Field(
        default=None,
        description="""Run native helpers inside this container image instead of
        on the host. The sandbox directory is bind-mounted into the container.""",
    )

    model_config = SettingsConfigDict(env_prefix="IT_UPDATES_")

    def helper_command(self, command: str) -> list[str]:
        """Split a configured command line into arguments."""
        return shlex.split(command.format(helpers_path=self.helpers_path))


class CliSettings(Settings):
    """Command line settings for the `it-updates` harness."""

    target: Path = Field(
        default=Path(),
        description="Directory containing the dependency files to inspect.",
    )
    package_manager: str = Field(
        default="",
        description="Package manager to use, as listed by `it-updates --list`.",
    )
    dependency: List[str] = Field(  # noqa: UP006
        default_factory=list,
        description="Only check these dependencies (default: all of them).",
    )
    ignore: List[str] = Field(  # noqa: UP006
        default_factory=list,
        description="""Ignore versions matching this requirement, in the form
        NAME:REQUIREMENT (e.g. `lodash:>=5.0.0`). May be repeated.""",
    )
    check: CliImplicitFlag[bool] = Field(
        default=False,
        description="Look for updates of every dependency.",
    )
    max_unlock: UnlockLevel = Field(
        default=UnlockLevel.own,
        description="The most permissive unlock level to try when checking for updates.",
    )
    write: CliImplicitFlag[bool] = Field(
        default=False,
        description="Write updated files back to the target directory (implies --check).",
    )
    list: CliImplicitFlag[bool] = Field(
        default=False,
        description="List available package managers.",
    )
    version: CliImplicitFlag[bool] = Field(
        default=False,
        description="Show the version of it-updates and exit.",
    )

    model_config = SettingsConfigDict(
        env_prefix="IT_UPDATES_",
        cli_parse_args=True,
        nested_model_default_partial_update=True,
    )


@functools.lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, read once from the environment."""
    return Settings()
