"""Typed failures raised by the Keystone core.

Store-level misses (update/delete on an unknown id) are NOT
errors: they return ``False`` or an empty result. Everything here is
something a caller is expected to catch and turn into a user-facing state.
"""

from __future__ import annotations


class KeystoneError(Exception):
    """Root exception for all Keystone domain errors."""


class RemoteUnavailable(KeystoneError):
    """An external service could not be reached or returned garbage.

    Always retryable from the user's point of view: the UI shows a
    connectivity warning and offers refresh.
    """

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message
        self.status_code = status_code


class ValidationFailure(KeystoneError):
    """Input rejected before it could reach the store."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class AnalysisNotFound(KeystoneError):
    """No scored or recorded requirement analysis has this id."""

    def __init__(self, analysis_id: str) -> None:
        super().__init__(f"Unknown requirement analysis '{analysis_id}'")
        self.analysis_id = analysis_id
