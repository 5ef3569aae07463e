"""Exception hierarchy for VRF management failures."""


class VrfError(RuntimeError):
    """Base class for every failure reported by this package."""


class ValidationError(VrfError):
    """Rejected input: bad name, bad table id or reserved name."""


class NotFoundError(VrfError):
    """A VRF, device or table does not exist."""


class OperationalError(VrfError):
    """A call into the kernel or another external system failed."""


class InconsistencyError(VrfError):
    """Kernel state contradicts the expected configuration."""


class ResourceBusyError(OperationalError):
    """A resource is held by another actor; the caller may retry."""
