"""tcmerge errors — everything fatal to a merge run derives from MergeError."""


class MergeError(Exception):
    """Base class; `exit_code` is what the CLI exits with."""

    exit_code = 1


class NotFound(MergeError):
    """An input store does not exist."""


class CorruptStore(MergeError):
    """A file is not a readable task store."""


class IncompatibleSchema(MergeError):
    """Inputs do not describe one logical task store."""


class EmptyInput(MergeError):
    """No operation logs were supplied to the merge engine."""


class WriteFailure(MergeError):
    """The merged store could not be written; the primary is untouched."""


class ConcurrentMergeDetected(MergeError):
    """Another merge holds the lock for this primary. Retry later."""

    exit_code = 75
