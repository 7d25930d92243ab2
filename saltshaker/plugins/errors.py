"""Error types for loading, running and installing plugins."""


class PluginError(Exception):
    """Base error for plugin operations."""

    def __init__(self, message: str, plugin_id: str | None = None) -> None:
        super().__init__(message)
        self.plugin_id = plugin_id


class SandboxLoadError(PluginError):
    """Plugin code could not be compiled or its module body failed."""


class SandboxViolationError(SandboxLoadError):
    """Plugin code failed static validation or used a blocked capability."""


class SandboxRuntimeError(PluginError):
    """A lifecycle callback raised or timed out."""


class PluginInstallError(PluginError):
    """An archive could not be verified, extracted or recorded."""


class PluginNotInstalledError(PluginError):
    """No valid installation exists for the requested plugin id."""
