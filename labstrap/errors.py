from typing import Optional


class LabstrapError(Exception):
    """Base class for every failure labstrap reports to the user"""


class ConfigError(LabstrapError):
    pass


class CommandError(LabstrapError):
    """A command exited non-zero (or could not be started at all)"""

    def __init__(self, cmd: str, returncode: int, output: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        super().__init__(f"command failed with exit code {returncode}: {cmd}")

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.output.splitlines()[-lines:])


class BuildError(LabstrapError):
    pass


class DownloadError(LabstrapError):
    pass


class ServiceError(LabstrapError):
    pass


class StepFailed(LabstrapError):
    def __init__(self, title: str, cause: Optional[BaseException] = None):
        self.title = title
        self.cause = cause
        msg = f"step '{title}' failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class WriteError(LabstrapError):
    pass
