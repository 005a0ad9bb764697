from decimal import Decimal
from typing import Any, Dict

from common.sql.datetime import DateTime
from common.sql.enum import Enum
from common.sql.fixed_point import FixedPoint
from common.sql.json_text import JSONText
from common.sql.uuid import UUID
from common.utils.datetime import datetime_to_iso, get_current_datetime
from common.utils.uuid import generate_uuid4
from sqlalchemy import Column, Index, Integer, String, Text

from flywheel.constants import ActivationKind, ActivationStatus
from flywheel.sql.base import Base


def make_open_key(owner_address: str, kind: ActivationKind) -> str:
    return f"{owner_address}:{kind.value}"


class ActivationRecord(Base):
    __tablename__ = "ActivationRecord"

    uuid = Column(UUID, primary_key=True, default=generate_uuid4)
    owner_address = Column(String(64), nullable=False, index=True)
    deposit_address = Column(String(64), nullable=False)
    kind = Column(Enum(ActivationKind), nullable=False)
    payload = Column(JSONText, nullable=False)
    status = Column(Enum(ActivationStatus), nullable=False, default=ActivationStatus.AWAITING_DEPOSIT)
    required_amount = Column(FixedPoint, nullable=False)
    # balance of the deposit address when the record was opened. Only what arrives on top of it counts
    baseline_amount = Column(FixedPoint, nullable=False, default=Decimal(0))
    observed_amount = Column(FixedPoint, nullable=False, default=Decimal(0))  # deposited above the baseline
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    last_error = Column(Text)
    expires_at = Column(DateTime, nullable=False)
    result_ref = Column(String(128))
    refund_ref = Column(String(128))

    # signature of the last side-effect transaction handed to the ledger. Once set, a retry
    # must look this transaction up before building a new one
    tx_signature = Column(String(128))
    prepared_ref = Column(String(128))  # what the submitted transaction yields once confirmed, e.g. the new mint

    challenge_uuid = Column(UUID)

    # "<owner>:<kind>" while the record is not terminal, NULL afterwards. The unique index
    # allows a single open record per owner and kind
    open_key = Column(String(128), unique=True)
    # the deposit address while the record awaits its deposit, NULL afterwards, so a single
    # deposit can never fund two records
    deposit_key = Column(String(64), unique=True)

    created_at = Column(DateTime, default=get_current_datetime, nullable=False)
    updated_at = Column(DateTime, default=get_current_datetime, nullable=False)

    def to_json(self) -> Dict[str, Any]:
        return {
            "activationId": self.uuid.hex,
            "ownerAddress": self.owner_address,
            "kind": self.kind.value,
            "status": self.status.value,
            "depositAddress": self.deposit_address,
            "requiredAmount": format(self.required_amount, "f"),
            "baselineAmount": format(self.baseline_amount, "f"),
            "observedAmount": format(self.observed_amount, "f"),
            "expiresAt": datetime_to_iso(self.expires_at),
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "resultRef": self.result_ref,
            "lastError": self.last_error,
            "txSignature": self.tx_signature,
            "refundRef": self.refund_ref,
        }


Index("activation_record_status_updated_at", ActivationRecord.status, ActivationRecord.updated_at)
