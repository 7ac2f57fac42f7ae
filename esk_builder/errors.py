class BuildError(Exception):
    """Base class for every fatal condition of a build"""


class InvalidConfiguration(BuildError):
    pass


class MissingDependency(BuildError):
    pass


class PatchApplyFailed(BuildError):
    pass


class ExternalToolFailure(BuildError):
    def __init__(self, message, returncode=None, output=""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class NotificationFailure(BuildError):
    pass
