"""Custom exceptions for vmkeeper."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class InvalidSourceError(ManagerError):
    """A directory or machine bundle was passed where a drive image file is expected."""


class DuplicateNameError(ManagerError):
    """A non-shortcut machine with the same name is already registered."""


class InvalidSizeError(ManagerError):
    """Requested drive size is not positive."""


class ConversionError(ManagerError):
    """qemu-img could not create, convert, resize or inspect an image."""


class StaleMachineError(ManagerError):
    """A machine's bundle can no longer be read back from disk."""


class IOFailureError(ManagerError):
    """Generic filesystem failure."""


class NotSupportedError(ManagerError):
    """The operation is not available for this kind of machine or host."""


class DownloadError(ManagerError):
    """A download could not be completed."""


class DownloadCancelledError(DownloadError):
    """A download was cancelled by the caller."""
