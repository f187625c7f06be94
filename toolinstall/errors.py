from typing import Optional


class ToolInstallError(Exception):
    """Base for failures that are recoverable per tool."""

    kind = "error"

    def __init__(self, message: str, tool: Optional[str] = None):
        self.tool = tool
        self.reason = message
        super().__init__(message)


class SourceNotFound(ToolInstallError):
    kind = "NotFound"


class CorruptOrUntrusted(ToolInstallError):
    kind = "CorruptOrUntrusted"


class InstallFailed(ToolInstallError):
    kind = "InstallFailed"


class LedgerWriteFailed(ToolInstallError):
    kind = "LedgerWriteFailed"


class ConfigError(ToolInstallError):
    kind = "ConfigError"
