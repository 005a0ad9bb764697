import logging
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Mapping, Optional, Set

import sqlalchemy.orm

from flywheel.constants import ActivationKind, ActivationStatus, TransactionStatus
from flywheel.exceptions import (
    FlywheelException,
    InvalidState,
    LaunchpadException,
    LedgerException,
    MaxAttemptsExceeded,
    NotFundedYet,
    TransactionRejected,
    TransactionTimeout,
)
from flywheel.sql.activation_record import ActivationRecord
from flywheel.utils.activation_handlers import ActivationHandler
from flywheel.utils.activation_registry import ActivationRegistry, Outcome
from flywheel.utils.ledger_client import LedgerClient

LOGGER = logging.getLogger(__name__)


class RefundHandler(ABC):
    @abstractmethod
    def refund(self, record: ActivationRecord) -> str:
        """Sends ``record.observed_amount`` back to the funder and returns a reference to the refund"""


class ActivationExecutor:
    """Runs the side effect of funded activations.

    ``begin_execution`` guarantees a single active attempt per record. Within an attempt, the
    signature of a transaction is stored before it is broadcast, and any later attempt asks the
    ledger about that transaction before building a new one.
    """

    def __init__(
        self,
        sessionmaker: sqlalchemy.orm.sessionmaker,
        registry: ActivationRegistry,
        ledger_client: LedgerClient,
        handlers: Mapping[ActivationKind, ActivationHandler],
        max_workers: int,
        refund_handler: Optional[RefundHandler] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._registry = registry
        self._ledger_client = ledger_client
        self._handlers = handlers
        self._refund_handler = refund_handler
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="activation-executor")
        self._in_flight: Set[uuid.UUID] = set()
        self._in_flight_lock = threading.Lock()

    def submit(self, activation_uuid: uuid.UUID) -> "Optional[Future[Optional[Outcome]]]":
        with self._in_flight_lock:
            if activation_uuid in self._in_flight:
                return None
            self._in_flight.add(activation_uuid)
        future = self._pool.submit(self.run, activation_uuid)

        def on_done(done: "Future[Optional[Outcome]]") -> None:
            with self._in_flight_lock:
                self._in_flight.discard(activation_uuid)
            exception = done.exception()
            if exception is not None:
                LOGGER.error("Execution of activation %s raised", activation_uuid, exc_info=exception)

        future.add_done_callback(on_done)
        return future

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    def run(self, activation_uuid: uuid.UUID) -> Optional[Outcome]:
        with self._sessionmaker() as session:
            try:
                record = self._registry.begin_execution(session, activation_uuid)
            except (NotFundedYet, MaxAttemptsExceeded, InvalidState) as e:
                # someone else is running it, or it is not executable anymore
                LOGGER.info("Not executing activation %s: %s", activation_uuid, e.details)
                return None
            session.commit()
            session.refresh(record)
            session.expunge(record)

        try:
            outcome = self.execute(record)
        except Exception as e:
            LOGGER.error("Unexpected error while executing activation %s", activation_uuid, exc_info=True)
            self._finish(record, Outcome.failed(f"unexpected error: {e}", uncertain=True))
            raise
        return self._finish(record, outcome)

    def execute(self, record: ActivationRecord) -> Outcome:
        handler = self._handlers[record.kind]

        if record.tx_signature is not None:
            try:
                previous_status = self._ledger_client.get_signature_status(record.tx_signature)
            except LedgerException as e:
                return Outcome.failed(f"could not look up transaction {record.tx_signature}: {e}", uncertain=True)
            if previous_status == TransactionStatus.CONFIRMED:
                LOGGER.info("Transaction %s of activation %s already landed", record.tx_signature, record.uuid)
                assert record.prepared_ref is not None
                return Outcome.succeeded(record.prepared_ref)
            if previous_status != TransactionStatus.FAILED:
                return Outcome.failed(
                    f"transaction {record.tx_signature} is {previous_status.value}; not resubmitting",
                    uncertain=True,
                )
            LOGGER.info("Transaction %s of activation %s failed; rebuilding it", record.tx_signature, record.uuid)

        try:
            prepared = handler.prepare(record)
        except (LaunchpadException, LedgerException) as e:
            return Outcome.failed(f"could not prepare the {record.kind.value}: {e}")
        if prepared.transaction is None:
            return Outcome.succeeded(prepared.result_ref)

        try:
            tx_signature = self._ledger_client.signature_of(prepared.transaction)
        except LedgerException as e:
            return Outcome.failed(f"invalid {record.kind.value} transaction: {e}")
        with self._sessionmaker() as session:
            self._registry.record_submission(session, record.uuid, tx_signature, prepared.result_ref)
            session.commit()

        try:
            self._ledger_client.submit(prepared.transaction)
        except TransactionRejected as e:
            with self._sessionmaker() as session:
                self._registry.clear_submission(session, record.uuid)
                session.commit()
            return Outcome.failed(f"transaction {tx_signature} was rejected: {e}")
        except LedgerException as e:
            return Outcome.failed(f"transaction {tx_signature} may not have been broadcast: {e}", uncertain=True)

        try:
            status = self._ledger_client.wait_for_confirmation(tx_signature)
        except TransactionTimeout as e:
            return Outcome.failed(str(e), uncertain=True)
        except LedgerException as e:
            return Outcome.failed(f"lost track of transaction {tx_signature}: {e}", uncertain=True)
        if status != TransactionStatus.CONFIRMED:
            return Outcome.failed(f"transaction {tx_signature} failed on chain")
        return Outcome.succeeded(prepared.result_ref)

    def _finish(self, record: ActivationRecord, outcome: Outcome) -> Outcome:
        if outcome.success:
            assert outcome.result_ref is not None
            try:
                with self._sessionmaker() as session:
                    result_ref = self._handlers[record.kind].complete(session, record, outcome.result_ref)
                    self._registry.record_outcome(session, record.uuid, Outcome.succeeded(result_ref))
                    session.commit()
                return Outcome.succeeded(result_ref)
            except FlywheelException as e:
                LOGGER.warning("Bookkeeping for activation %s failed", record.uuid, exc_info=True)
                with self._sessionmaker() as session:
                    submitted = self._registry.get(session, record.uuid).tx_signature is not None
                # a landed transaction spent the deposit, so such a failure is never refunded automatically
                outcome = Outcome.failed(f"completion failed: {e.details}", uncertain=submitted)

        # only a definite failure may be refunded, since an uncertain one may have spent the deposit
        hold_for_refund = self._refund_handler is not None and not outcome.uncertain
        with self._sessionmaker() as session:
            status = self._registry.record_outcome(session, record.uuid, outcome, hold_for_refund)
            session.commit()
        if status == ActivationStatus.FAILED:
            if outcome.uncertain:
                LOGGER.error(
                    "Activation %s failed with an uncertain outcome; reconcile it on chain before refunding %s",
                    record.uuid,
                    record.deposit_address,
                )
            else:
                LOGGER.warning(
                    "Activation %s failed; manual refund required for the deposit at %s",
                    record.uuid,
                    record.deposit_address,
                )
        elif status == ActivationStatus.RETRY_PENDING and record.attempts >= record.max_attempts:
            self.refund(record.uuid)
        return outcome

    def refund(self, activation_uuid: uuid.UUID) -> Optional[str]:
        """Returns the deposit of an exhausted or expired record through the refund handler.

        Returns the refund reference, or None when no refund was made.
        """
        with self._sessionmaker() as session:
            record = self._registry.get(session, activation_uuid)
            session.expunge(record)
        if self._refund_handler is None:
            LOGGER.warning(
                "Manual refund required for the %s deposited to %s by activation %s",
                record.observed_amount,
                record.deposit_address,
                activation_uuid,
            )
            return None
        try:
            refund_ref = self._refund_handler.refund(record)
        except (LedgerException, LaunchpadException) as e:
            LOGGER.error("Automatic refund of activation %s failed", activation_uuid, exc_info=True)
            if record.status == ActivationStatus.RETRY_PENDING:
                with self._sessionmaker() as session:
                    self._registry.mark_failed(session, activation_uuid, f"automatic refund failed: {e.details}")
                    session.commit()
            return None
        with self._sessionmaker() as session:
            self._registry.mark_refunded(session, activation_uuid, refund_ref)
            session.commit()
        return refund_ref
