"""Errors raised by the vSphere configuration checks."""


class CheckError(Exception):
    """Base class for every failure reported by a check."""


class ConfigError(CheckError):
    pass


class TransportError(CheckError):
    """An API or network call to vSphere or Kubernetes failed."""


class CheckTimeout(TransportError):
    pass


class NotFoundError(CheckError):
    pass


class DatastoreFileNotFound(NotFoundError):
    """A path browsed on a datastore does not exist."""


class PolicyNotFound(CheckError):
    pass


class PolicyAmbiguous(CheckError):
    pass


class PathTooLong(CheckError):
    """The escaped kubelet mount path of a volume hits the OS name limit."""


class EscapeFailed(CheckError):
    pass


class MissingCapability(CheckError):
    """A node lacks something the vSphere cloud provider needs (providerID, disk.enableUUID)."""


class AggregateError(CheckError):
    """Several independent failures found by one check."""

    def __init__(self, errors, message=None):
        self.errors = list(errors)
        super().__init__(message or self._format())

    def _format(self):
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "[" + ", ".join(str(e) for e in self.errors) + "]"

    @classmethod
    def from_errors(cls, errors):
        """Return an AggregateError for a non-empty list, None otherwise."""
        errors = list(errors)
        if not errors:
            return None
        return cls(errors)


def with_context(error, context):
    """Return an error of the same kind as error with context prepended to its message."""
    message = f"{context}: {error}"
    if isinstance(error, AggregateError):
        return AggregateError(error.errors, message=message)
    return error.__class__(message)
