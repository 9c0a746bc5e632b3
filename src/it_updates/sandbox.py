"""Isolated execution of native package managers and helpers.

Native resolvers run inside a throwaway directory holding a copy of the dependency files. Helpers speak a tiny JSON
protocol: a `{"function": ..., "args": [...]}` request on stdin and a `{"result": ...}` or `{"error": ...}` response
on stdout. Credentials reach the subprocess through its environment and through files inside the sandbox only, so no
global state (working directory, git configuration) is ever modified.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import posixpath
import shlex
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import TYPE_CHECKING, Any, Protocol, Union
from urllib.parse import quote

import docker
import requests
from docker.errors import DockerException

from .config import get_settings
from .errors import DependencyFileNotEvaluatable, HelperSubprocessFailed, PathDependenciesNotReachable

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping, Sequence

    from .config import Settings
    from .models import DependencyFile

logger = logging.getLogger(__name__)


@contextmanager
def in_a_temporary_directory(prefix: str = "it-updates-") -> Iterator[Path]:
    """Yield a fresh directory that is removed on exit, whether or not an exception was raised."""
    with TemporaryDirectory(prefix=prefix) as tmpdir:
        logger.debug("Created sandbox %s", tmpdir)
        yield Path(tmpdir)


def write_dependency_files(root: Path, files: Iterable[DependencyFile]) -> None:
    """Materialize dependency files below `root`, refusing any path that would escape it."""
    root = root.resolve()
    for file in files:
        if file.content is None:
            continue
        target = (root / file.name).resolve()
        if root not in target.parents:
            msg = f"{file.name} is outside of the dependency directory"
            raise DependencyFileNotEvaluatable(msg)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(file.content)


def check_path_dependencies(
    declarations: Iterable[tuple[str, str]],
    files: Iterable[DependencyFile],
    manifest: str | None = None,
) -> None:
    """Raise `PathDependenciesNotReachable` listing every path dependency whose files were not provided.

    Args:
        declarations: `(declaring file name, relative path)` pairs
        files: The files that will be written to the sandbox
        manifest: File that must exist inside each path; any file below it will do when None

    """
    names = [f.name for f in files]
    unreachable: list[str] = []
    for declaring_file, path in declarations:
        target = posixpath.normpath(posixpath.join(posixpath.dirname(declaring_file), path))
        if target in (".", "") or fnmatch.filter(names, target):
            continue
        if manifest is not None:
            reachable = bool(fnmatch.filter(names, posixpath.join(target, manifest)))
        else:
            reachable = any(name.startswith(f"{target}/") for name in names)
        if not reachable and path not in unreachable:
            unreachable.append(path)
    if unreachable:
        raise PathDependenciesNotReachable(unreachable)


@dataclass(frozen=True)
class Credential:
    """Credentials for one private source."""

    type: str
    host: str | None = None
    registry: str | None = None
    username: str | None = None
    password: str | None = None
    token: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Credential:
        """Build a credential from the mapping handed over by the caller."""
        return cls(
            type=str(data["type"]),
            host=data.get("host"),
            registry=data.get("registry"),
            username=data.get("username"),
            password=data.get("password"),
            token=data.get("token"),
        )

    @property
    def secret(self) -> str | None:
        """The token if there is one, otherwise the password."""
        return self.token or self.password


def credentials_from(credentials: Iterable[Credential | Mapping[str, Any]]) -> tuple[Credential, ...]:
    """Normalize a mix of `Credential`s and mappings."""
    return tuple(c if isinstance(c, Credential) else Credential.from_mapping(c) for c in credentials)


def git_environment(credentials: Iterable[Credential], sandbox: Path) -> dict[str, str]:
    """Return environment variables configuring git for one subprocess invocation.

    Configuration is passed through `GIT_CONFIG_COUNT`/`GIT_CONFIG_KEY_n`/`GIT_CONFIG_VALUE_n`, and `git_source`
    credentials are written to a credential store file inside the sandbox. SSH style URLs for every credentialed host
    are rewritten to HTTPS so the stored credentials apply to them.
    """
    store_lines: list[str] = []
    hosts = {"github.com"}
    for credential in credentials:
        if credential.type != "git_source" or not credential.host or not credential.secret:
            continue
        hosts.add(credential.host)
        username = credential.username or "x-access-token"
        store_lines.append(f"https://{quote(username, safe='')}:{quote(credential.secret, safe='')}@{credential.host}")

    config: list[tuple[str, str]] = []
    if store_lines:
        store = sandbox / ".git-credentials"
        store.write_text("\n".join(store_lines) + "\n")
        store.chmod(0o600)
        config.append(("credential.helper", f"store --file={store}"))
    for host in sorted(hosts):
        config.append((f"url.https://{host}/.insteadOf", f"ssh://git@{host}/"))
        config.append((f"url.https://{host}/.insteadOf", f"git@{host}:"))

    env = {
        "GIT_TERMINAL_PROMPT": "0",
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_CONFIG_COUNT": str(len(config)),
    }
    for i, (key, value) in enumerate(config):
        env[f"GIT_CONFIG_KEY_{i}"] = key
        env[f"GIT_CONFIG_VALUE_{i}"] = value
    return env


@dataclass(frozen=True)
class HelperRequest:
    """A request to a native helper."""

    function: str
    args: Any = ()

    def to_json(self) -> str:
        """Serialize the request for the helper's stdin."""
        args = self.args if isinstance(self.args, dict) else list(self.args)
        return json.dumps({"function": self.function, "args": args})


@dataclass(frozen=True)
class Ok:
    """A successful helper response."""

    value: Any


@dataclass(frozen=True)
class Err:
    """A failed helper response."""

    kind: str
    message: str


HelperResult = Union[Ok, Err]


def parse_helper_response(output: str, command: Sequence[str], returncode: int = 0) -> HelperResult:
    """Interpret the stdout of a helper.

    Raises:
        HelperSubprocessFailed: if the output is not a JSON object, or if it carries neither an error nor a result

    """
    try:
        response = json.loads(output)
    except json.JSONDecodeError as e:
        msg = output.strip() or "No output from command"
        raise HelperSubprocessFailed(msg, command, output) from e
    if not isinstance(response, dict):
        msg = f"Unexpected helper response: {output.strip()}"
        raise HelperSubprocessFailed(msg, command, output)
    if "error" in response:
        return Err(kind=str(response.get("error_class", "HelperError")), message=str(response["error"]))
    if returncode != 0:
        msg = f"Helper exited with status {returncode} without reporting an error"
        raise HelperSubprocessFailed(msg, command, output)
    if "result" not in response:
        msg = "Helper response has no result"
        raise HelperSubprocessFailed(msg, command, output)
    return Ok(response["result"])


def unwrap(result: HelperResult, command: Sequence[str] | str = "helper") -> Any:  # noqa: ANN401
    """Return the value of an `Ok`, raising `HelperSubprocessFailed` for an `Err`."""
    if isinstance(result, Err):
        raise HelperSubprocessFailed(result.message, command, error_class=result.kind)
    return result.value


@dataclass(frozen=True)
class CommandOutput:
    """What a finished command produced."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def combined(self) -> str:
        """Stdout followed by stderr."""
        return f"{self.stdout}{self.stderr}"


class Runner(Protocol):
    """Something that can run a command in a directory."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None,
        stdin: str | None,
        timeout: float,
    ) -> CommandOutput:
        """Run `command` to completion."""
        ...


class LocalRunner:
    """Runs commands on the host with `subprocess`."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None,
        stdin: str | None,
        timeout: float,
    ) -> CommandOutput:
        """Run `command` on the host, killing it after `timeout` seconds."""
        full_env = {**os.environ, **env} if env else None
        try:
            completed = subprocess.run(  # noqa: S603
                list(command),
                cwd=cwd,
                env=full_env,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            msg = f"Command timed out after {timeout} seconds"
            partial = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
            raise HelperSubprocessFailed(msg, command, partial) from e
        except FileNotFoundError as e:
            msg = f"Command not found: {command[0]}"
            raise HelperSubprocessFailed(msg, command) from e
        return CommandOutput(completed.returncode, completed.stdout, completed.stderr)


class ContainerRunner:
    """Runs commands inside a container, with the working directory bind-mounted."""

    MOUNT_POINT = "/sandbox"
    REQUEST_FILE = ".it-updates-request.json"

    def __init__(self, image: str, client: docker.DockerClient | None = None) -> None:
        """Initialize the runner for a container image."""
        self.image: str = image
        self._client: docker.DockerClient | None = client

    @property
    def client(self) -> docker.DockerClient:
        """Get the Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _translate(self, value: str, cwd: Path) -> str:
        return value.replace(str(cwd), self.MOUNT_POINT)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None,
        stdin: str | None,
        timeout: float,
    ) -> CommandOutput:
        """Run `command` in a fresh container, removing it afterwards."""
        args = [self._translate(arg, cwd) for arg in command]
        if stdin is not None:
            # containers cannot be attached to our stdin here, so the request travels through the mount
            (cwd / self.REQUEST_FILE).write_text(stdin)
            args = ["sh", "-c", f"{shlex.join(args)} < {self.MOUNT_POINT}/{self.REQUEST_FILE}"]
        environment = {key: self._translate(value, cwd) for key, value in (env or {}).items()}
        try:
            container = self.client.containers.run(
                self.image,
                args,
                detach=True,
                working_dir=self.MOUNT_POINT,
                environment=environment,
                volumes={str(cwd): {"bind": self.MOUNT_POINT, "mode": "rw"}},
            )
        except DockerException as e:
            msg = f"Could not start a {self.image} container: {e!s}"
            raise HelperSubprocessFailed(msg, command) from e
        try:
            try:
                status = container.wait(timeout=timeout)
            except requests.exceptions.RequestException as e:
                container.kill()
                msg = f"Command timed out after {timeout} seconds"
                raise HelperSubprocessFailed(msg, command) from e
            stdout = container.logs(stdout=True, stderr=False).decode(errors="replace")
            stderr = container.logs(stdout=False, stderr=True).decode(errors="replace")
        finally:
            container.remove(force=True)
        return CommandOutput(int(status.get("StatusCode", 1)), stdout, stderr)


def default_runner(settings: Settings | None = None) -> Runner:
    """Return the runner selected by the settings."""
    settings = settings or get_settings()
    if settings.container_image:
        return ContainerRunner(settings.container_image)
    return LocalRunner()


def run_shell_command(
    command: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    runner: Runner | None = None,
) -> str:
    """Run a native package manager command, returning its stdout.

    Raises:
        HelperSubprocessFailed: if the command exits with a non-zero status or times out

    """
    settings = get_settings()
    runner = runner or default_runner(settings)
    logger.debug("Running `%s` in %s", shlex.join(command), cwd)
    output = runner.run(command, cwd=cwd, env=env, stdin=None, timeout=timeout or settings.helper_timeout)
    if output.returncode != 0:
        msg = output.stderr.strip() or output.stdout.strip() or f"`{shlex.join(command)}` exited with {output.returncode}"
        raise HelperSubprocessFailed(msg, command, output.combined)
    return output.stdout


def call_helper(
    command: Sequence[str],
    request: HelperRequest,
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    runner: Runner | None = None,
) -> HelperResult:
    """Send one request to a helper and return its typed response."""
    settings = get_settings()
    runner = runner or default_runner(settings)
    logger.debug("Calling helper function %s via `%s`", request.function, shlex.join(command))
    output = runner.run(
        command,
        cwd=cwd,
        env=env,
        stdin=request.to_json(),
        timeout=timeout or settings.helper_timeout,
    )
    return parse_helper_response(output.stdout, command, output.returncode)


def run_helper_subprocess(  # noqa: PLR0913
    command: Sequence[str],
    function: str,
    args: Any,  # noqa: ANN401
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    runner: Runner | None = None,
) -> Any:  # noqa: ANN401
    """Call a helper function and return its result, raising `HelperSubprocessFailed` on any failure."""
    result = call_helper(
        command,
        HelperRequest(function, args),
        cwd=cwd,
        env=env,
        timeout=timeout,
        runner=runner,
    )
    return unwrap(result, command)


class ExternalResolver(Protocol):
    """A resolver: from a sandbox directory and a request to a typed response."""

    def __call__(
        self,
        sandbox: Path,
        request: HelperRequest,
        env: Mapping[str, str] | None = None,
    ) -> HelperResult:
        """Resolve `request` against the files in `sandbox`."""
        ...


class HelperSubprocessResolver:
    """An `ExternalResolver` backed by a native helper subprocess."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        runner: Runner | None = None,
    ) -> None:
        """Initialize a resolver for the given helper command."""
        self.command: list[str] = list(command)
        self.env: dict[str, str] = dict(env or {})
        self.timeout: float | None = timeout
        self.runner: Runner | None = runner

    def __call__(
        self,
        sandbox: Path,
        request: HelperRequest,
        env: Mapping[str, str] | None = None,
    ) -> HelperResult:
        """Run the helper inside `sandbox`, adding `env` to the configured environment."""
        return call_helper(
            self.command,
            request,
            cwd=sandbox,
            env={**self.env, **(env or {})},
            timeout=self.timeout,
            runner=self.runner,
        )
