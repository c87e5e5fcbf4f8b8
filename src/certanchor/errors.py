"""Error taxonomy for the issuance pipeline.

Four families, matching how callers have to react:

1. Input errors (roster, template, placeholders). Raised before any
   network cost is incurred; fix the input and re-run.
2. Encoding errors. A certificate that cannot be canonicalised is never
   skipped, because skipping it would shift every later leaf.
3. Chain errors (funding, signing, broadcast). Carry enough detail to
   re-run with the same deterministic inputs.
4. Issuance errors. Wrap any of the above with the stage that failed and
   whether funds were spent.

Verification problems are not exceptions; see certanchor.models.verification.
"""

from __future__ import annotations

import enum
from typing import Optional, Sequence


class CertAnchorError(Exception):
    """Base class for every error raised by certanchor."""


class ConfigError(CertAnchorError, ValueError):
    """Configuration value missing or malformed."""


# ------------------------------------------------------------------
# Input errors
# ------------------------------------------------------------------

class TemplateError(CertAnchorError, ValueError):
    """Template document is structurally invalid."""


class MalformedRosterError(CertAnchorError, ValueError):
    """A roster row is missing a field or carries a malformed public key."""

    def __init__(self, message: str, row: Optional[int] = None) -> None:
        self.row = row
        if row is not None:
            message = f"row {row}: {message}"
        super().__init__(message)


class DuplicateRecipientError(CertAnchorError, ValueError):
    """Two roster rows share the same public key."""

    def __init__(self, public_key: str, rows: Sequence[int]) -> None:
        self.public_key = public_key
        self.rows = tuple(rows)
        super().__init__(
            f"Duplicate public key {public_key} in rows "
            + ", ".join(str(r) for r in self.rows)
        )


class MissingFieldError(CertAnchorError, ValueError):
    """Template placeholder has no value in the roster entry."""

    def __init__(self, fields: Sequence[str], identity: str = "") -> None:
        self.fields = tuple(sorted(fields))
        self.identity = identity
        who = f" for {identity}" if identity else ""
        super().__init__(
            f"Missing value{who} for placeholder(s): {', '.join(self.fields)}"
        )


class EncodingError(CertAnchorError, ValueError):
    """Document cannot be expressed in the canonical grammar."""


class EmptyBatchError(CertAnchorError, ValueError):
    """A batch must contain at least one certificate."""


class ProofMismatchError(CertAnchorError):
    """Inclusion proof does not belong to the certificate it is attached to."""


# ------------------------------------------------------------------
# Chain errors
# ------------------------------------------------------------------

class ChainAnchorError(CertAnchorError):
    """Base class for failures while building or broadcasting an anchor."""


class InsufficientFundsError(ChainAnchorError):
    """Funding inputs cannot cover the transaction fee."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: need {required} sat, have {available} sat"
        )


class SigningError(ChainAnchorError):
    """The signing collaborator could not sign the transaction."""


class BroadcastRejectedError(ChainAnchorError):
    """The network refused the transaction (fee too low, input spent, ...)."""

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Broadcast rejected: {reason}")


class TransientBroadcastError(ChainAnchorError):
    """Broadcast failed for a reason worth retrying (timeout, 5xx)."""


class BroadcastOutcomeUnknownError(ChainAnchorError):
    """A signed transaction was sent but its acceptance could not be established.

    Raised when retries run out or the transport failed in a way that may
    have happened after the node received the bytes. The node may hold the
    transaction, so its inputs must be treated as possibly spent. ``txid``
    and ``raw_transaction`` allow the operator to look it up or re-send it.
    """

    def __init__(self, txid: str, raw_transaction: str, reason: str) -> None:
        self.txid = txid
        self.raw_transaction = raw_transaction
        super().__init__(f"Broadcast outcome unknown for {txid}: {reason}")


class ChainDataUnavailableError(CertAnchorError):
    """The chain data source could not be reached."""


# ------------------------------------------------------------------
# Pipeline errors
# ------------------------------------------------------------------

class IssuanceStage(str, enum.Enum):
    """Pipeline stage at which a batch failed."""
    ROSTER = "roster"
    ASSEMBLY = "assembly"
    COMMIT = "commit"
    ANCHOR = "anchor"
    EMBED = "embed"


class IssuanceError(CertAnchorError):
    """A batch failed. Reports the stage and whether funds were spent.

    funds_spent=True means the anchor transaction was accepted by the
    network; re-running would pay a second fee. funds_spent=False means
    nothing irrevocable happened and the batch is safe to retry.
    funds_spent=None means a transaction may have reached the network;
    look up ``txid`` (when set) before re-running.
    """

    def __init__(
        self,
        stage: IssuanceStage,
        message: str,
        funds_spent: Optional[bool] = False,
        txid: Optional[str] = None,
        failures: Sequence[tuple[int, str, str]] = (),
    ) -> None:
        self.stage = stage
        self.funds_spent = funds_spent
        self.txid = txid
        # (roster index, identity, error message)
        self.failures = tuple(failures)
        if funds_spent is None:
            spent = "funds possibly spent"
        else:
            spent = "funds spent" if funds_spent else "no funds spent"
        super().__init__(f"[{stage.value}] {message} ({spent})")

    @property
    def safe_to_retry(self) -> bool:
        return self.funds_spent is False
