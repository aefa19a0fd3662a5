"""Service error hierarchy for token transitions and ledger operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, timeouts, busy token)
- PermanentError: Non-retryable errors (validation, funding, rejections)

Domain families sit across that split:
- ValidationError: Proposed next state is not a legal successor
- FundingError: Funding output missing or too small
- ExternalFailure: Prover, wallet, node or broadcast failure
- FormatError: Malformed identifiers or external responses
"""

from typing import Optional


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Node RPC unreachable or timing out
    - Prover timeout
    - Another transition for the same token in flight
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Invalid state transition
    - Insufficient funds
    - Transaction rejected by the node
    - Malformed identifiers
    """

    pass


# Validation errors
class ValidationError(PermanentError):
    """Base exception for state validation errors."""

    pass


class StateValidationError(ValidationError):
    """Proposed state is not a legal successor of the previous state."""

    def __init__(self, code: str, detail: str):
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {detail}")


class MissingOutputError(StateValidationError):
    """Transition is missing the token output it must spend or create."""

    pass


# Funding errors
class FundingError(PermanentError):
    """Base exception for funding errors."""

    pass


class InsufficientFundsError(FundingError):
    """Funding output value is below the required minimum."""

    def __init__(self, have: int, need: int):
        self.have = have
        self.need = need
        super().__init__(f"Insufficient funds. Have {have} sats, need at least {need} sats")


class NoFundingAvailableError(FundingError):
    """No spendable funding output in the wallet."""

    def __init__(self, address: str, network: str):
        self.address = address
        self.network = network
        super().__init__(
            f"No funding UTXOs available. Fund this address: {address} (network: {network})"
        )


# External collaborator failures
class ExternalFailure(ServiceError):
    """Base exception for prover, wallet, node and broadcast failures."""

    pass


class ProverError(ExternalFailure, PermanentError):
    """Prover rejected the spell or failed internally."""

    pass


class ProverTimeoutError(ExternalFailure, TransientError):
    """Proof generation did not finish within the configured timeout."""

    pass


class ProverUnavailableError(ExternalFailure, TransientError):
    """Prover endpoint could not be reached."""

    pass


class ContractNotFoundError(PermanentError):
    """Contract WASM binary or verification key missing."""

    pass


class LedgerConnectionError(ExternalFailure, TransientError):
    """Failed to reach the Bitcoin node RPC endpoint."""

    pass


class LedgerRpcError(ExternalFailure, PermanentError):
    """Bitcoin node returned a JSON-RPC error."""

    def __init__(self, method: str, code: Optional[int], message: str):
        self.method = method
        self.code = code
        self.message = message
        super().__init__(f"RPC {method} failed ({code}): {message}")


class SigningIncompleteError(ExternalFailure, PermanentError):
    """Wallet could not produce every required signature."""

    def __init__(self, tx_index: int, errors: list):
        self.tx_index = tx_index
        self.errors = errors
        label = "commit" if tx_index == 0 else "spell"
        super().__init__(f"Failed to sign {label} transaction. Errors: {errors}")


class BroadcastRejectedError(ExternalFailure, PermanentError):
    """Node rejected one of the two transactions."""

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        label = "commit" if index == 0 else "spell"
        super().__init__(f"{label} transaction (index {index}) rejected: {reason}")


class CommitOutcomeUnknownError(ExternalFailure, PermanentError):
    """Commit submission failed without a verdict from the node.

    The node may already hold the commit. Look up ``commit_txid`` before
    re-funding; spending the funding output again would double-spend it.
    """

    def __init__(self, commit_txid: str, reason: str):
        self.commit_txid = commit_txid
        self.reason = reason
        super().__init__(
            f"Commit transaction {commit_txid} may have been broadcast, outcome unknown: {reason}"
        )


class PackageRejectedError(BroadcastRejectedError):
    """Atomic package submission rejected; neither transaction was accepted."""

    pass


class PartialSettlementError(ExternalFailure, PermanentError):
    """Commit transaction broadcast but spell transaction was not.

    The funding input is already spent by the commit; complete the spell
    transaction instead of re-spending the funding output.
    """

    def __init__(self, commit_txid: str, reason: str):
        self.commit_txid = commit_txid
        self.reason = reason
        super().__init__(
            f"Commit transaction {commit_txid} broadcast but spell transaction failed: {reason}"
        )


# Format errors
class FormatError(PermanentError):
    """Base exception for malformed identifiers and responses."""

    pass


class MalformedOutpointError(FormatError):
    """Outpoint string is not ``txid:vout``."""

    pass


class MalformedTransactionError(FormatError):
    """Transaction bytes cannot be decoded or do not have the expected shape."""

    pass


class MalformedResponseError(FormatError):
    """External collaborator returned an unparsable response."""

    pass


# Concurrency
class TransitionInProgressError(TransientError):
    """Another transition for the same token is already in flight."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"A transition for token {token} is already in progress")
