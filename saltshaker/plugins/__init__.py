"""
Plugin system for Saltshaker.

Plugins are single Python modules shipped in a ``.tgz`` archive. Each one
runs in a restricted execution context and reaches the host only through
the ``api`` handle it is given:

    def on_init(api):
        api.log("hello")

    async def on_init(api):
        await api.host.dolphin.subscribe(events=["GameStart"])
        api.on("dolphin:GameStart", lambda settings: api.log(settings["stage_id"]))

    def on_dispose():
        ...

Components:
    - PluginRegistry: on-disk store of installed plugins and their grants
    - PluginSandbox: static validation and restricted execution
    - PluginApi: the per-plugin capability handle
    - SandboxEngine: owns the active-instance table
    - PluginManager: install / run / uninstall facade

Example:
    from saltshaker.plugins import InstallRequest

    result = await manager.install_plugin(InstallRequest(
        id="overlay", name="Overlay", version="1.0.0",
        archive_bytes=data, permissions={"file.read"},
    ))
    await manager.run_installed_plugin("overlay")
"""

from saltshaker.plugins.errors import (
    PluginError,
    PluginInstallError,
    PluginNotInstalledError,
    SandboxLoadError,
    SandboxRuntimeError,
    SandboxViolationError,
)
from saltshaker.plugins.models import (
    InstallRequest,
    InstallResult,
    PluginContext,
    PluginInstance,
    PluginMetadata,
    PluginResource,
    sanitize_id,
)
from saltshaker.plugins.sandbox import PluginSandbox, SandboxPolicy, SandboxViolation
from saltshaker.plugins.api import PluginApi
from saltshaker.plugins.registry import PluginRegistry
from saltshaker.plugins.engine import SandboxEngine
from saltshaker.plugins.manager import PluginManager

__all__ = [
    # Errors
    "PluginError",
    "PluginInstallError",
    "PluginNotInstalledError",
    "SandboxLoadError",
    "SandboxRuntimeError",
    "SandboxViolationError",
    # Models
    "InstallRequest",
    "InstallResult",
    "PluginContext",
    "PluginInstance",
    "PluginMetadata",
    "PluginResource",
    "sanitize_id",
    # Sandbox
    "PluginSandbox",
    "SandboxPolicy",
    "SandboxViolation",
    # Runtime
    "PluginApi",
    "PluginRegistry",
    "SandboxEngine",
    "PluginManager",
]
