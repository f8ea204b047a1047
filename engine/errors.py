"""
Exception types raised by the coverage engine.

Unknown catalog references and stale durable records are not errors; they
degrade silently (with a log line). The types below cover the conditions
that callers are expected to prevent.
"""

from typing import List


class CoverageError(Exception):
    """Base class for coverage engine errors."""


class HydrationError(CoverageError, ValueError):
    """A static source or template record is malformed and cannot be hydrated."""


class InvalidPolicyError(CoverageError, ValueError):
    """Parsed policy data failed required-field validation."""

    def __init__(self, policy_type: str, missing_fields: List[str]):
        self.policy_type = policy_type
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"{policy_type} policy is missing required fields: {', '.join(self.missing_fields)}"
        )


class IdentityRequiredError(CoverageError, RuntimeError):
    """A selection mutation was attempted while no identity is loaded."""


class IdentityMismatchError(CoverageError, RuntimeError):
    """A durable record namespaced for one identity names another identity."""
