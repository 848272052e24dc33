# SPDX-FileCopyrightText: 2025 - Canonical Ltd
# SPDX-License-Identifier: Apache-2.0

"""Exceptions shared across the e2e framework."""

from typing import Iterable, List, Optional


class E2EException(Exception):
    """Base exception for e2e framework operations."""

    pass


class AddonException(E2EException):
    """Raised when an addon cannot be driven through its lifecycle."""

    pass


class AggregateError(E2EException):
    """Several errors collected from independent operations."""

    def __init__(self, errors: List[BaseException]):
        self.errors = errors
        if len(errors) == 1:
            message = str(errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in errors) + "]"
        super().__init__(message)

    @classmethod
    def from_errors(
        cls, errors: Iterable[Optional[BaseException]]
    ) -> Optional["AggregateError"]:
        """Build an aggregate from errors, ignoring empty entries.

        Returns None when no error is left after filtering.
        """
        collected = [e for e in errors if e is not None]
        if not collected:
            return None
        return cls(collected)
