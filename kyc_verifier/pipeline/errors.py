"""Error taxonomy for the verification engine.

None of these are fatal to the process.  They are scoped to a single
entity (or a single run) and surface in ``VerificationResult`` /
``RunSummary`` instead of propagating out of the orchestrator.
"""

from __future__ import annotations


class KYCVerificationError(Exception):
    """Base class for all engine errors."""


class TransientCollaboratorError(KYCVerificationError):
    """Judge or Fact Store unreachable / timed out after all retries."""

    def __init__(self, collaborator: str, message: str, attempts: int = 0):
        self.collaborator = collaborator
        self.attempts = attempts
        super().__init__(f"{collaborator}: {message}")


class MalformedResponseError(KYCVerificationError):
    """Collaborator answered, but not in the expected shape."""

    def __init__(self, collaborator: str, message: str, raw: str = ""):
        self.collaborator = collaborator
        self.raw = raw
        super().__init__(f"{collaborator}: {message}")


class DataIntegrityError(KYCVerificationError):
    """Ownership cycle or missing requirement configuration."""

    def __init__(self, message: str, cycle: list[str] | None = None):
        self.cycle = list(cycle or [])
        super().__init__(message)


class InputError(KYCVerificationError):
    """Invalid request input, e.g. an unknown entity kind or entity id."""
