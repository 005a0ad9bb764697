"""Durable lifecycle of deposit-gated activations.

Every transition is a guarded update of the form ``UPDATE ... WHERE status IN (<expected>)``
and is decided by its row count, so concurrent callers (the watcher, the executor pool and
request handlers) serialize on the row without any process-level lock. The update always
runs before the row is read back, which keeps the write lock ordering identical across
callers.

Methods take the caller's session and never commit it.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from common.utils.datetime import get_current_datetime
from common.utils.uuid import generate_uuid4
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flywheel.constants import (
    EXECUTABLE_STATUSES,
    REFUNDABLE_STATUSES,
    ActivationKind,
    ActivationStatus,
)
from flywheel.exceptions import (
    ActivationAlreadyOpen,
    InvalidState,
    MaxAttemptsExceeded,
    NotFundedYet,
    RecordNotFound,
)
from flywheel.sql.activation_record import ActivationRecord, make_open_key

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outcome:
    success: bool
    result_ref: Optional[str] = None
    error: Optional[str] = None
    # true when the side effect may have happened (e.g. a submitted transaction that was never confirmed)
    uncertain: bool = False

    @classmethod
    def succeeded(cls, result_ref: str) -> "Outcome":
        return cls(success=True, result_ref=result_ref)

    @classmethod
    def failed(cls, error: str, uncertain: bool = False) -> "Outcome":
        return cls(success=False, error=error, uncertain=uncertain)


class ActivationRegistry:
    def __init__(self, max_attempts: int) -> None:
        self._max_attempts = max_attempts

    def open(
        self,
        session: Session,
        owner_address: str,
        kind: ActivationKind,
        payload: Mapping[str, Any],
        required_amount: Decimal,
        deposit_address: str,
        ttl: timedelta,
        baseline_amount: Decimal = Decimal(0),
        challenge_uuid: Optional[uuid.UUID] = None,
    ) -> ActivationRecord:
        """Creates a record awaiting ``required_amount`` on top of ``baseline_amount`` at ``deposit_address``.

        A record past its deadline keeps its slot until the deposit watcher settled it, since a
        deposit that landed before the deadline must still fund it.
        """
        current_datetime = get_current_datetime()
        open_key = make_open_key(owner_address, kind)
        if session.query(ActivationRecord).filter(ActivationRecord.open_key == open_key).count() > 0:
            raise ActivationAlreadyOpen(f"{owner_address} already has an open {kind.value} activation")
        if session.query(ActivationRecord).filter(ActivationRecord.deposit_key == deposit_address).count() > 0:
            raise ActivationAlreadyOpen(f"{deposit_address} is already awaiting the deposit of another activation")
        record = ActivationRecord(
            uuid=generate_uuid4(),
            owner_address=owner_address,
            deposit_address=deposit_address,
            kind=kind,
            payload=dict(payload),
            status=ActivationStatus.AWAITING_DEPOSIT,
            required_amount=required_amount,
            baseline_amount=baseline_amount,
            observed_amount=Decimal(0),
            attempts=0,
            max_attempts=self._max_attempts,
            expires_at=current_datetime + ttl,
            challenge_uuid=challenge_uuid,
            open_key=open_key,
            deposit_key=deposit_address,
            created_at=current_datetime,
            updated_at=current_datetime,
        )
        session.add(record)
        try:
            session.flush()
        except IntegrityError as e:
            raise ActivationAlreadyOpen(
                f"{owner_address} already has an open {kind.value} activation or {deposit_address} is already in use"
            ) from e
        LOGGER.info(
            "Opened %s activation %s for %s awaiting %s at %s (baseline %s)",
            kind,
            record.uuid,
            owner_address,
            required_amount,
            deposit_address,
            baseline_amount,
        )
        return record

    @staticmethod
    def find_open(session: Session, owner_address: str, kind: ActivationKind) -> Optional[ActivationRecord]:
        record = (
            session.query(ActivationRecord)
            .filter(ActivationRecord.open_key == make_open_key(owner_address, kind))
            .populate_existing()
            .one_or_none()
        )
        assert record is None or isinstance(record, ActivationRecord)
        return record

    @staticmethod
    def get(session: Session, activation_uuid: uuid.UUID) -> ActivationRecord:
        record = (
            session.query(ActivationRecord)
            .filter(ActivationRecord.uuid == activation_uuid)
            .populate_existing()
            .one_or_none()
        )
        if record is None:
            raise RecordNotFound(f"activation {activation_uuid} not found")
        assert isinstance(record, ActivationRecord)
        return record

    def cancel(self, session: Session, activation_uuid: uuid.UUID, owner_address: str) -> ActivationRecord:
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.AWAITING_DEPOSIT,),
            values={
                ActivationRecord.status: ActivationStatus.CANCELLED,
                ActivationRecord.open_key: None,
                ActivationRecord.deposit_key: None,
            },
            extra_filters=(ActivationRecord.owner_address == owner_address,),
        )
        record = self.get(session, activation_uuid)
        if record.owner_address != owner_address:
            raise RecordNotFound(f"activation {activation_uuid} not found")
        if row_count != 1:
            raise InvalidState(f"activation {activation_uuid} is {record.status.value} and can no longer be cancelled")
        LOGGER.info("Cancelled activation %s", activation_uuid)
        return record

    def mark_funded(self, session: Session, activation_uuid: uuid.UUID, balance: Decimal) -> bool:
        """Records the deposit seen in ``balance`` and funds the record once it covers the required amount.

        Only the part of the balance above the record's baseline counts as deposited, so funds that
        sat at the address before the record was opened never fund it. Returns whether this call
        moved the record to funded. Calling it for a record that already left the awaiting state
        is a no-op.
        """
        record = self.get(session, activation_uuid)
        if record.status != ActivationStatus.AWAITING_DEPOSIT:
            return False
        deposited = max(balance - record.baseline_amount, Decimal(0))
        if deposited >= record.required_amount:
            row_count = self._transition(
                session,
                activation_uuid,
                from_statuses=(ActivationStatus.AWAITING_DEPOSIT,),
                values={
                    ActivationRecord.status: ActivationStatus.FUNDED_PENDING_EXECUTION,
                    ActivationRecord.observed_amount: deposited,
                    ActivationRecord.deposit_key: None,
                },
            )
            if row_count == 1:
                LOGGER.info(
                    "Activation %s funded with %s (required %s)",
                    activation_uuid,
                    deposited,
                    record.required_amount,
                )
            return row_count == 1
        if deposited != record.observed_amount:
            self._transition(
                session,
                activation_uuid,
                from_statuses=(ActivationStatus.AWAITING_DEPOSIT,),
                values={ActivationRecord.observed_amount: deposited},
            )
        return False

    def mark_expired(self, session: Session, activation_uuid: uuid.UUID) -> bool:
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.AWAITING_DEPOSIT,),
            values={
                ActivationRecord.status: ActivationStatus.EXPIRED,
                ActivationRecord.open_key: None,
                ActivationRecord.deposit_key: None,
            },
            extra_filters=(ActivationRecord.expires_at < get_current_datetime(),),
        )
        if row_count == 1:
            LOGGER.info("Activation %s expired before it was funded", activation_uuid)
        return row_count == 1

    def begin_execution(self, session: Session, activation_uuid: uuid.UUID) -> ActivationRecord:
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=tuple(EXECUTABLE_STATUSES),
            values={
                ActivationRecord.status: ActivationStatus.EXECUTING,
                ActivationRecord.attempts: ActivationRecord.attempts + 1,
            },
            extra_filters=(ActivationRecord.attempts < ActivationRecord.max_attempts,),
        )
        record = self.get(session, activation_uuid)
        if row_count == 1:
            LOGGER.info("Starting attempt %d/%d of activation %s", record.attempts, record.max_attempts, record.uuid)
            return record
        if record.status == ActivationStatus.AWAITING_DEPOSIT:
            raise NotFundedYet(f"activation {activation_uuid} is still awaiting its deposit")
        if record.attempts >= record.max_attempts and record.status not in (
            ActivationStatus.EXECUTING,
            ActivationStatus.COMPLETED,
        ):
            raise MaxAttemptsExceeded(f"activation {activation_uuid} used all {record.max_attempts} attempts")
        raise InvalidState(f"activation {activation_uuid} is {record.status.value} and cannot be executed")

    def record_submission(
        self, session: Session, activation_uuid: uuid.UUID, tx_signature: str, prepared_ref: Optional[str] = None
    ) -> None:
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.EXECUTING,),
            values={
                ActivationRecord.tx_signature: tx_signature,
                ActivationRecord.prepared_ref: prepared_ref,
            },
        )
        if row_count != 1:
            raise InvalidState(f"activation {activation_uuid} is not executing")

    def clear_submission(self, session: Session, activation_uuid: uuid.UUID) -> None:
        """Forgets a transaction the ledger refused to accept, so the next attempt builds a new one"""
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.EXECUTING,),
            values={
                ActivationRecord.tx_signature: None,
                ActivationRecord.prepared_ref: None,
            },
        )
        if row_count != 1:
            raise InvalidState(f"activation {activation_uuid} is not executing")

    def record_outcome(
        self, session: Session, activation_uuid: uuid.UUID, outcome: Outcome, hold_for_refund: bool = False
    ) -> ActivationStatus:
        """Writes the outcome of the running attempt.

        A failure on the last attempt becomes ``FAILED``, unless ``hold_for_refund`` is set; then the
        record stays ``RETRY_PENDING`` with no attempts left until ``mark_refunded`` or
        ``mark_failed`` settles it.
        """
        if outcome.success:
            row_count = self._transition(
                session,
                activation_uuid,
                from_statuses=(ActivationStatus.EXECUTING,),
                values={
                    ActivationRecord.status: ActivationStatus.COMPLETED,
                    ActivationRecord.result_ref: outcome.result_ref,
                    ActivationRecord.last_error: None,
                    ActivationRecord.open_key: None,
                },
            )
            if row_count != 1:
                raise InvalidState(f"activation {activation_uuid} is not executing")
            LOGGER.info("Activation %s completed with %s", activation_uuid, outcome.result_ref)
            return ActivationStatus.COMPLETED

        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.EXECUTING,),
            values={
                ActivationRecord.status: ActivationStatus.RETRY_PENDING,
                ActivationRecord.last_error: outcome.error,
            },
            extra_filters=(ActivationRecord.attempts < ActivationRecord.max_attempts,),
        )
        if row_count == 1:
            LOGGER.warning("Activation %s failed and will be retried: %s", activation_uuid, outcome.error)
            return ActivationStatus.RETRY_PENDING
        if hold_for_refund:
            row_count = self._transition(
                session,
                activation_uuid,
                from_statuses=(ActivationStatus.EXECUTING,),
                values={
                    ActivationRecord.status: ActivationStatus.RETRY_PENDING,
                    ActivationRecord.last_error: outcome.error,
                },
            )
            if row_count != 1:
                raise InvalidState(f"activation {activation_uuid} is not executing")
            LOGGER.warning("Activation %s is out of attempts and awaits a refund: %s", activation_uuid, outcome.error)
            return ActivationStatus.RETRY_PENDING
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.EXECUTING,),
            values={
                ActivationRecord.status: ActivationStatus.FAILED,
                ActivationRecord.last_error: outcome.error,
                ActivationRecord.open_key: None,
            },
        )
        if row_count != 1:
            raise InvalidState(f"activation {activation_uuid} is not executing")
        LOGGER.error("Activation %s failed after exhausting its attempts: %s", activation_uuid, outcome.error)
        return ActivationStatus.FAILED

    def mark_refunded(self, session: Session, activation_uuid: uuid.UUID, refund_ref: str) -> None:
        """Settles a record whose deposit went back to the funder.

        Allowed for a ``RETRY_PENDING`` record with no attempts left and for an ``EXPIRED`` record
        holding a partial deposit.
        """
        record = self.get(session, activation_uuid)
        if record.status == ActivationStatus.EXPIRED and record.observed_amount <= 0:
            raise InvalidState(f"activation {activation_uuid} expired without a deposit to refund")
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=tuple(REFUNDABLE_STATUSES),
            values={
                ActivationRecord.status: ActivationStatus.REFUNDED,
                ActivationRecord.refund_ref: refund_ref,
                ActivationRecord.open_key: None,
            },
            extra_filters=(
                or_(
                    ActivationRecord.status == ActivationStatus.EXPIRED,
                    ActivationRecord.attempts >= ActivationRecord.max_attempts,
                ),
            ),
        )
        if row_count != 1:
            record = self.get(session, activation_uuid)
            raise InvalidState(f"activation {activation_uuid} is {record.status.value} and cannot be refunded")
        LOGGER.info("Activation %s refunded with %s", activation_uuid, refund_ref)

    def mark_failed(self, session: Session, activation_uuid: uuid.UUID, error: str) -> None:
        """Gives up on the refund of a record that exhausted its attempts"""
        row_count = self._transition(
            session,
            activation_uuid,
            from_statuses=(ActivationStatus.RETRY_PENDING,),
            values={
                ActivationRecord.status: ActivationStatus.FAILED,
                ActivationRecord.last_error: error,
                ActivationRecord.open_key: None,
            },
            extra_filters=(ActivationRecord.attempts >= ActivationRecord.max_attempts,),
        )
        if row_count != 1:
            record = self.get(session, activation_uuid)
            raise InvalidState(f"activation {activation_uuid} is {record.status.value} and cannot be failed")
        LOGGER.error("Activation %s failed: %s", activation_uuid, error)

    def recover_interrupted(self, session: Session) -> int:
        """Re-arms records left executing by a previous process.

        A stored transaction signature is checked before anything is resubmitted, so the
        interrupted attempt is never blindly repeated. Records that were waiting on their refund
        are failed, since the refund may or may not have been sent.
        """
        current_datetime = get_current_datetime()
        rearmed = (
            session.query(ActivationRecord)
            .filter(
                ActivationRecord.status == ActivationStatus.EXECUTING,
                ActivationRecord.attempts < ActivationRecord.max_attempts,
            )
            .update(
                {
                    ActivationRecord.status: ActivationStatus.RETRY_PENDING,
                    ActivationRecord.last_error: "interrupted while executing",
                    ActivationRecord.updated_at: current_datetime,
                },
                synchronize_session=False,
            )
        )
        exhausted = (
            session.query(ActivationRecord)
            .filter(ActivationRecord.status == ActivationStatus.EXECUTING)
            .update(
                {
                    ActivationRecord.status: ActivationStatus.FAILED,
                    ActivationRecord.last_error: "interrupted while executing its last attempt",
                    ActivationRecord.open_key: None,
                    ActivationRecord.updated_at: current_datetime,
                },
                synchronize_session=False,
            )
        )
        unrefunded = (
            session.query(ActivationRecord)
            .filter(
                ActivationRecord.status == ActivationStatus.RETRY_PENDING,
                ActivationRecord.attempts >= ActivationRecord.max_attempts,
            )
            .update(
                {
                    ActivationRecord.status: ActivationStatus.FAILED,
                    ActivationRecord.last_error: "interrupted before its refund completed; reconcile it on chain",
                    ActivationRecord.open_key: None,
                    ActivationRecord.updated_at: current_datetime,
                },
                synchronize_session=False,
            )
        )
        failed = exhausted + unrefunded
        if rearmed + failed > 0:
            LOGGER.warning("Recovered %d interrupted activations (%d failed)", rearmed + failed, failed)
        return rearmed + failed

    @staticmethod
    def list_open(session: Session) -> List[ActivationRecord]:
        return (
            session.query(ActivationRecord)
            .filter(ActivationRecord.status == ActivationStatus.AWAITING_DEPOSIT)
            .order_by(ActivationRecord.created_at)
            .all()
        )

    @staticmethod
    def list_ready(session: Session, retry_delay: timedelta) -> List[ActivationRecord]:
        retry_cutoff = get_current_datetime() - retry_delay
        return (
            session.query(ActivationRecord)
            .filter(
                or_(
                    ActivationRecord.status == ActivationStatus.FUNDED_PENDING_EXECUTION,
                    (ActivationRecord.status == ActivationStatus.RETRY_PENDING)
                    & (ActivationRecord.updated_at <= retry_cutoff)
                    & (ActivationRecord.attempts < ActivationRecord.max_attempts),
                )
            )
            .order_by(ActivationRecord.updated_at)
            .all()
        )

    @staticmethod
    def _transition(
        session: Session,
        activation_uuid: uuid.UUID,
        from_statuses: Tuple[ActivationStatus, ...],
        values: Dict[Any, Any],
        extra_filters: Sequence[Any] = (),
    ) -> int:
        values = {**values, ActivationRecord.updated_at: get_current_datetime()}
        row_count = (
            session.query(ActivationRecord)
            .filter(
                ActivationRecord.uuid == activation_uuid,
                ActivationRecord.status.in_(from_statuses),
                *extra_filters,
            )
            .update(values, synchronize_session=False)
        )
        assert isinstance(row_count, int)
        return row_count
