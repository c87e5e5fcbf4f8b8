"""Verification outcome model.

Three outcomes, never collapsed into a boolean:
- VALID: every check passed against confirmed chain data.
- INVALID: a check ran and failed; the certificate must be rejected.
- INDETERMINATE: a check could not run (chain unreachable, transaction
  not yet confirmed); try again later.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional


class VerificationStatus(str, enum.Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    INDETERMINATE = "INDETERMINATE"


class ReasonCode(str, enum.Enum):
    OK = "OK"
    MALFORMED_CERTIFICATE = "MALFORMED_CERTIFICATE"
    HASH_MISMATCH = "HASH_MISMATCH"
    MERKLE_ROOT_MISMATCH = "MERKLE_ROOT_MISMATCH"
    ANCHOR_ROOT_MISMATCH = "ANCHOR_ROOT_MISMATCH"
    PREFIX_MISMATCH = "PREFIX_MISMATCH"
    NO_ANCHOR_DATA = "NO_ANCHOR_DATA"
    UNCONFIRMED = "UNCONFIRMED"
    CHAIN_UNAVAILABLE = "CHAIN_UNAVAILABLE"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    reason: ReasonCode
    message: str = ""
    certificate_id: Optional[str] = None
    txid: Optional[str] = None
    block_height: Optional[int] = None

    @property
    def valid(self) -> bool:
        return self.status is VerificationStatus.VALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "certificateId": self.certificate_id,
            "status": self.status.value,
            "reason": self.reason.value,
            "message": self.message,
            "txid": self.txid,
            "blockHeight": self.block_height,
        }
