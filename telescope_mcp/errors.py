"""Failure taxonomy shared by the storage layer and the tool handlers."""
from __future__ import annotations


class TelescopeError(Exception):
    """Base class for every failure a tool invocation can report."""


class ConnectionFailure(TelescopeError):
    """The Telescope database could not be reached."""


class QueryFailure(TelescopeError):
    """The database rejected a statement."""


class InvalidArgument(TelescopeError, ValueError):
    """A caller-supplied parameter is outside its allowed domain."""


class NotFound(TelescopeError, LookupError):
    """A lookup by identifier matched no entry."""
