"""
errors.py - Exception taxonomy for Deploy Toolkit.

Every fatal condition carries its underlying cause (stderr, protocol
message, cycle members) so callers can report it verbatim.
"""

from typing import Iterable, List, Optional


class DeployError(Exception):
    """Base class for all toolkit errors."""


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------
class TransportError(DeployError):
    """A device transport failed."""


class TransportUnavailable(TransportError):
    """The daemon socket or binary backing a transport is absent."""


class TransportProtocolError(TransportError):
    """The remote daemon refused a request or sent a malformed frame."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InstallFailed(TransportError):
    """The device-side installer rejected a package."""


# ---------------------------------------------------------------------------
# Device selection
# ---------------------------------------------------------------------------
class NotFound(DeployError):
    """No device matches a selector."""

    def __init__(self, selector: str):
        super().__init__(f"no device matches {selector!r}")
        self.selector = selector


class AmbiguousSelector(DeployError):
    """A selector matches more than one device."""

    def __init__(self, selector: str, matches: Iterable[str]):
        self.selector = selector
        self.matches: List[str] = list(matches)
        super().__init__(
            f"{selector!r} is ambiguous, matches: {', '.join(self.matches)}"
        )


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------
class BuildError(DeployError):
    """The build graph is invalid or could not be executed."""


class DependencyCycle(BuildError):
    def __init__(self, members: Iterable[str]):
        self.members: List[str] = list(members)
        super().__init__(f"dependency cycle: {' -> '.join(self.members)}")


class BuildTaskFailed(BuildError):
    def __init__(self, task_name: str, exit_code: int, stderr: str = ""):
        self.task_name = task_name
        self.exit_code = exit_code
        self.stderr = stderr
        msg = f"task {task_name!r} failed with exit code {exit_code}"
        if stderr.strip():
            msg += f"\n{stderr.rstrip()}"
        super().__init__(msg)


class MissingTaskInput(BuildError):
    def __init__(self, task_name: str, path):
        self.task_name = task_name
        self.path = path
        super().__init__(f"task {task_name!r}: input {path} does not exist")


class MissingTaskOutput(BuildError):
    def __init__(self, task_name: str, path):
        self.task_name = task_name
        self.path = path
        super().__init__(
            f"task {task_name!r} succeeded but did not produce {path}"
        )


# ---------------------------------------------------------------------------
# Packaging
# ---------------------------------------------------------------------------
class PackageError(DeployError):
    """Packaging failed."""


class PackageInvalid(PackageError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"invalid package: {reason}")


class UnsupportedPackageFormat(PackageError):
    def __init__(self, platform: str, detail: Optional[str] = None):
        self.platform = platform
        self.detail = detail
        msg = f"unsupported package format for {platform}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Debugging
# ---------------------------------------------------------------------------
class DebugError(DeployError):
    """A debug session failed."""


class DebugConnectFailed(DebugError):
    """The debug channel could not be established."""


class DebugSessionActive(DebugConnectFailed):
    """Another debug session is already active on the device."""


class InvalidDebugState(DebugError):
    def __init__(self, operation: str, state):
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} while session is {state}")
