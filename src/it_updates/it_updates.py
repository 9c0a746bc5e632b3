"""Version and directory utilities for it-updates."""

from importlib.metadata import version as meta_version

from platformdirs import PlatformDirs


def version() -> str:
    """Return the installed version of it-updates."""
    return meta_version("it-updates")


APP_DIRS = PlatformDirs("it-updates", "Trail of Bits")
