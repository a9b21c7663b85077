"""Dynamic plugin installation for code-generation jobs."""

from dynpkg.manager import InstallationManager, build_manager, install_plugins
from dynpkg.types import BatchInstallResult, InstallOutcome, PluginInstallation

__all__ = [
    "BatchInstallResult",
    "InstallOutcome",
    "InstallationManager",
    "PluginInstallation",
    "build_manager",
    "install_plugins",
]
