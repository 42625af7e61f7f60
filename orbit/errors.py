"""Error taxonomy shared by the stores and the turn orchestration."""

from __future__ import annotations


class OrbitError(Exception):
    """Base class for all orbit errors."""


class NotFound(OrbitError, LookupError):
    """Missing agent, task, session or message."""


class AlreadyExists(OrbitError):
    """Duplicate agent name on create."""


class InvalidSchedule(OrbitError, ValueError):
    """Schedule value cannot produce a next-run time."""


class DelegationFailure(OrbitError):
    """The reasoning engine failed. Raised after the turn has committed."""


class Cancelled(OrbitError):
    """The turn was explicitly aborted while delegating."""
