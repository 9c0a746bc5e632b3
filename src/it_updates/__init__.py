"""The `it-updates` APIs."""

__version__ = "0.1.0"

from importlib import import_module
from pathlib import Path
from pkgutil import iter_modules

from .it_updates import *
from .models import Dependency, DependencyFile, RequirementEntry, Source, SourceType, UnlockLevel
from .package_manager import (
    PackageManager,
    apply_update,
    check_for_update,
    is_known_package_manager,
    package_manager_by_name,
    package_managers,
    parse_files,
)

# Automatically load all modules in the `it_updates` package,
# so all PackageManagers will auto-register themselves:
package_dir = Path(__file__).resolve().parent
for _, module_name, _ in iter_modules([str(package_dir)]):  # type: ignore
    # import the module and iterate through its attributes
    if module_name != "__main__":
        module = import_module(f"{__name__}.{module_name}")
