"""Logic of the different modes of the outpost command."""

from .common import Operations
from .local import LocalOperations
from .remote import ProbeOperations, RemoteOperations

__all__ = ["LocalOperations", "Operations", "ProbeOperations", "RemoteOperations"]
