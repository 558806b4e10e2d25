"""Exception types raised by the packer and caught at the job boundary."""


class PackerError(Exception):
    """Base class for every error the packer reports to the operator."""


class SpawnError(PackerError):
    """The external tool could not be located, started or waited on."""


class StagingError(PackerError):
    """A staging directory could not be created, read or removed."""


class FinalizationError(PackerError):
    """The staged output could not be turned into the final layout."""


class ConflictCancelled(FinalizationError):
    """The operator chose to cancel when the output already existed."""


class ConflictPending(PackerError):
    """A conflict prompt is already waiting for an answer for this job."""


class JobAlreadyRunning(PackerError):
    """A second job was submitted while one is still running."""


class NotRunning(PackerError):
    """An operation needed a running child process and there was none."""
