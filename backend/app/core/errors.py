"""Error taxonomy shared by the chain layer and the periodic services."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for failures raised by orchestrator components."""

    retryable: bool = False


class TransientChainError(OrchestratorError):
    """RPC or store unreachable, timed out, or the blockhash expired."""

    retryable = True


class ChainRejectionError(OrchestratorError):
    """The program refused the instruction; retrying the same call cannot succeed."""

    def __init__(self, message: str, *, code: int | None = None, name: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.name = name


class InvalidTransitionError(ChainRejectionError):
    """The authoritative on-chain state is not a legal source for the transition."""


class DataIntegrityError(OrchestratorError):
    """Malformed counts, unexpected nulls, or an undecodable account."""
