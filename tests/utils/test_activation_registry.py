import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from flywheel.constants import ActivationKind, ActivationStatus
from flywheel.exceptions import (
    ActivationAlreadyOpen,
    FlywheelException,
    InvalidState,
    MaxAttemptsExceeded,
    NotFundedYet,
    RecordNotFound,
)
from flywheel.sql.activation_record import ActivationRecord
from flywheel.utils.activation_registry import ActivationRegistry, Outcome
from tests.base import BaseBackendTestCase
from tests.fixtures import ACTIVATION_TTL, MAX_ATTEMPTS, RETRY_DELAY, new_address


class TestActivationRegistry(BaseBackendTestCase):
    registry: ActivationRegistry

    def setUp(self) -> None:
        super().setUp()
        self.registry = self.backend.registry

    def _fund(self, record: ActivationRecord, amount: Decimal = Decimal("0.1")) -> bool:
        with self.backend.sessionmaker() as session:
            funded = self.registry.mark_funded(session, record.uuid, amount)
            session.commit()
        return funded

    def _begin(self, record: ActivationRecord) -> ActivationRecord:
        with self.backend.sessionmaker() as session:
            started = self.registry.begin_execution(session, record.uuid)
            session.commit()
            session.refresh(started)
            session.expunge(started)
        return started

    def _fail(self, record: ActivationRecord, error: str = "boom", hold_for_refund: bool = False) -> ActivationStatus:
        with self.backend.sessionmaker() as session:
            status = self.registry.record_outcome(session, record.uuid, Outcome.failed(error), hold_for_refund)
            session.commit()
        return status

    def test_open(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.assertEqual(record.status, ActivationStatus.AWAITING_DEPOSIT)
        self.assertEqual(record.deposit_address, deposit_address)
        self.assertEqual(record.required_amount, Decimal("0.1"))
        self.assertEqual(record.observed_amount, Decimal(0))
        self.assertEqual(record.attempts, 0)
        self.assertEqual(record.max_attempts, MAX_ATTEMPTS)
        self.assertEqual(record.expires_at, self.clock.now + ACTIVATION_TTL)

    def test_partial_then_full_funding(self) -> None:
        record = self.open_activation(self.address)
        self.assertFalse(self._fund(record, Decimal("0.05")))
        partial = self.get_record(record)
        self.assertEqual(partial.status, ActivationStatus.AWAITING_DEPOSIT)
        self.assertEqual(partial.observed_amount, Decimal("0.05"))

        self.assertTrue(self._fund(record, Decimal("0.12")))
        funded = self.get_record(record)
        self.assertEqual(funded.status, ActivationStatus.FUNDED_PENDING_EXECUTION)
        self.assertEqual(funded.observed_amount, Decimal("0.12"))

    def test_mark_funded_is_idempotent(self) -> None:
        record = self.open_activation(self.address)
        self.assertTrue(self._fund(record, Decimal("0.1")))
        after_first = self.get_record(record)
        self.clock.advance(timedelta(seconds=5))
        self.assertFalse(self._fund(record, Decimal("0.2")))
        after_second = self.get_record(record)
        self.assertEqual(after_second.status, ActivationStatus.FUNDED_PENDING_EXECUTION)
        self.assertEqual(after_second.observed_amount, after_first.observed_amount)
        self.assertEqual(after_second.updated_at, after_first.updated_at)

    def test_second_open_is_rejected(self) -> None:
        self.open_activation(self.address, kind=ActivationKind.MARKET_MAKING)
        with self.assertRaises(ActivationAlreadyOpen):
            self.open_activation(self.address, kind=ActivationKind.MARKET_MAKING)
        # other kinds and other owners are independent
        self.open_activation(self.address, kind=ActivationKind.TOKEN_LAUNCH)
        self.open_activation(new_address(), kind=ActivationKind.MARKET_MAKING)

    def test_concurrent_open_has_one_winner(self) -> None:
        def open_one() -> Optional[ActivationRecord]:
            try:
                return self.open_activation(self.address)
            except ActivationAlreadyOpen:
                return None

        with ThreadPoolExecutor(max_workers=4) as executor:
            results = list(executor.map(lambda _: open_one(), range(4)))
        self.assertEqual(len([result for result in results if result is not None]), 1)

    def test_open_after_terminal_record(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            self.registry.cancel(session, record.uuid, self.address)
            session.commit()
        self.open_activation(self.address)

    def test_overdue_record_keeps_its_slot_until_settled(self) -> None:
        record = self.open_activation(self.address)
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        with self.assertRaises(ActivationAlreadyOpen):
            self.open_activation(self.address)
        self.assertEqual(self.get_record(record).status, ActivationStatus.AWAITING_DEPOSIT)

        with self.backend.sessionmaker() as session:
            self.assertTrue(self.registry.mark_expired(session, record.uuid))
            session.commit()
        replacement = self.open_activation(self.address)
        self.assertNotEqual(replacement.uuid, record.uuid)

    def test_deposit_address_serves_one_awaiting_record(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        with self.assertRaises(ActivationAlreadyOpen):
            self.open_activation(new_address(), deposit_address=deposit_address)
        self.ledger_client.deposit(deposit_address, Decimal("0.1"))
        self.assertTrue(self._fund(record))
        # once funded, the address may take a new record whose baseline includes that deposit
        other = self.open_activation(new_address(), deposit_address=deposit_address)
        self.assertEqual(other.baseline_amount, Decimal("0.1"))

    def test_funds_already_at_the_address_do_not_count(self) -> None:
        deposit_address = new_address()
        self.ledger_client.deposit(deposit_address, Decimal("5"))
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.assertEqual(record.baseline_amount, Decimal("5"))

        self.assertFalse(self._fund(record, Decimal("5")))
        self.assertEqual(self.get_record(record).observed_amount, Decimal(0))
        self.assertFalse(self._fund(record, Decimal("5.05")))
        self.assertEqual(self.get_record(record).observed_amount, Decimal("0.05"))
        # a balance that dropped below the baseline credits nothing
        self.assertFalse(self._fund(record, Decimal("4")))
        self.assertEqual(self.get_record(record).observed_amount, Decimal(0))

        self.assertTrue(self._fund(record, Decimal("5.1")))
        funded = self.get_record(record)
        self.assertEqual(funded.status, ActivationStatus.FUNDED_PENDING_EXECUTION)
        self.assertEqual(funded.observed_amount, Decimal("0.1"))
        self.assertIsNone(funded.deposit_key)

    def test_expiry(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            self.assertFalse(self.registry.mark_expired(session, record.uuid))
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        with self.backend.sessionmaker() as session:
            self.assertTrue(self.registry.mark_expired(session, record.uuid))
            session.commit()
        self.assertFalse(self._fund(record, Decimal("5")))
        self.assertEqual(self.get_record(record).status, ActivationStatus.EXPIRED)

    def test_funded_record_does_not_expire(self) -> None:
        record = self.open_activation(self.address)
        self._fund(record)
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        with self.backend.sessionmaker() as session:
            self.assertFalse(self.registry.mark_expired(session, record.uuid))

    def test_begin_execution_requires_funding(self) -> None:
        record = self.open_activation(self.address)
        with self.assertRaises(NotFundedYet):
            self._begin(record)

    def test_concurrent_begin_execution_has_one_winner(self) -> None:
        record = self.open_activation(self.address)
        self._fund(record)

        def begin() -> Optional[FlywheelException]:
            try:
                self._begin(record)
            except (InvalidState, NotFundedYet) as e:
                return e
            return None

        with ThreadPoolExecutor(max_workers=4) as executor:
            errors: List[Optional[FlywheelException]] = list(executor.map(lambda _: begin(), range(4)))
        self.assertEqual(errors.count(None), 1)
        started = self.get_record(record)
        self.assertEqual(started.status, ActivationStatus.EXECUTING)
        self.assertEqual(started.attempts, 1)

    def test_retries_are_bounded(self) -> None:
        record = self.open_activation(self.address)
        self._fund(record)
        self.assertEqual(self._begin(record).attempts, 1)
        self.assertEqual(self._fail(record), ActivationStatus.RETRY_PENDING)
        self.assertEqual(self._begin(record).attempts, 2)
        self.assertEqual(self._fail(record), ActivationStatus.RETRY_PENDING)
        self.assertEqual(self._begin(record).attempts, 3)
        self.assertEqual(self._fail(record, "third strike"), ActivationStatus.FAILED)
        with self.assertRaises(MaxAttemptsExceeded):
            self._begin(record)
        failed = self.get_record(record)
        self.assertEqual(failed.status, ActivationStatus.FAILED)
        self.assertEqual(failed.last_error, "third strike")
        self.assertIsNone(failed.open_key)

    def test_success(self) -> None:
        record = self.open_activation(self.address)
        self._fund(record)
        self._begin(record)
        with self.backend.sessionmaker() as session:
            status = self.registry.record_outcome(session, record.uuid, Outcome.succeeded("mint"))
            session.commit()
        self.assertEqual(status, ActivationStatus.COMPLETED)
        completed = self.get_record(record)
        self.assertEqual(completed.result_ref, "mint")
        self.assertIsNone(completed.open_key)
        with self.assertRaises(InvalidState):
            self._begin(record)

    def test_record_outcome_requires_executing(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.record_outcome(session, record.uuid, Outcome.succeeded("mint"))

    def test_record_submission(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.record_submission(session, record.uuid, "sig-1", "mint")
        self._fund(record)
        self._begin(record)
        with self.backend.sessionmaker() as session:
            self.registry.record_submission(session, record.uuid, "sig-1", "mint")
            session.commit()
        submitted = self.get_record(record)
        self.assertEqual((submitted.tx_signature, submitted.prepared_ref), ("sig-1", "mint"))

    def test_cancel(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            with self.assertRaises(RecordNotFound):
                self.registry.cancel(session, record.uuid, new_address())
        with self.backend.sessionmaker() as session:
            cancelled = self.registry.cancel(session, record.uuid, self.address)
            session.commit()
            self.assertEqual(cancelled.status, ActivationStatus.CANCELLED)
        self.assertFalse(self._fund(record))
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.cancel(session, record.uuid, self.address)

    def _exhaust(self, record: ActivationRecord, hold_for_refund: bool) -> ActivationStatus:
        self._fund(record)
        for _ in range(MAX_ATTEMPTS - 1):
            self._begin(record)
            self._fail(record)
        self._begin(record)
        return self._fail(record, "last strike", hold_for_refund)

    def test_refund(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.mark_refunded(session, record.uuid, "refund-sig")
        self.assertEqual(self._exhaust(record, hold_for_refund=True), ActivationStatus.RETRY_PENDING)
        awaiting_refund = self.get_record(record)
        self.assertEqual(awaiting_refund.attempts, MAX_ATTEMPTS)
        self.assertEqual(awaiting_refund.last_error, "last strike")
        with self.assertRaises(MaxAttemptsExceeded):
            self._begin(record)
        self.clock.advance(RETRY_DELAY)
        with self.backend.sessionmaker() as session:
            self.assertEqual(self.registry.list_ready(session, RETRY_DELAY), [])

        with self.backend.sessionmaker() as session:
            self.registry.mark_refunded(session, record.uuid, "refund-sig")
            session.commit()
        refunded = self.get_record(record)
        self.assertEqual(refunded.status, ActivationStatus.REFUNDED)
        self.assertEqual(refunded.refund_ref, "refund-sig")
        self.assertIsNone(refunded.open_key)

    def test_retrying_record_is_not_refunded(self) -> None:
        record = self.open_activation(self.address)
        self._fund(record)
        self._begin(record)
        self.assertEqual(self._fail(record), ActivationStatus.RETRY_PENDING)
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.mark_refunded(session, record.uuid, "refund-sig")

    def test_failed_record_is_immutable(self) -> None:
        record = self.open_activation(self.address)
        self.assertEqual(self._exhaust(record, hold_for_refund=False), ActivationStatus.FAILED)
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.mark_refunded(session, record.uuid, "refund-sig")
        self.assertEqual(self.get_record(record).status, ActivationStatus.FAILED)

    def test_unrefunded_record_can_be_failed(self) -> None:
        record = self.open_activation(self.address)
        self._exhaust(record, hold_for_refund=True)
        with self.backend.sessionmaker() as session:
            self.registry.mark_failed(session, record.uuid, "refund bounced")
            session.commit()
        failed = self.get_record(record)
        self.assertEqual(failed.status, ActivationStatus.FAILED)
        self.assertEqual(failed.last_error, "refund bounced")
        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.mark_failed(session, record.uuid, "again")

    def test_expired_record_with_partial_deposit_is_refundable(self) -> None:
        empty = self.open_activation(self.address)
        partial = self.open_activation(new_address())
        self._fund(partial, Decimal("0.04"))
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        with self.backend.sessionmaker() as session:
            self.assertTrue(self.registry.mark_expired(session, empty.uuid))
            self.assertTrue(self.registry.mark_expired(session, partial.uuid))
            session.commit()

        with self.backend.sessionmaker() as session:
            with self.assertRaises(InvalidState):
                self.registry.mark_refunded(session, empty.uuid, "refund-sig")
        with self.backend.sessionmaker() as session:
            self.registry.mark_refunded(session, partial.uuid, "refund-sig")
            session.commit()
        self.assertEqual(self.get_record(empty).status, ActivationStatus.EXPIRED)
        self.assertEqual(self.get_record(partial).status, ActivationStatus.REFUNDED)

    def test_recover_interrupted(self) -> None:
        retriable = self.open_activation(self.address)
        self._fund(retriable)
        self._begin(retriable)
        exhausted = self.open_activation(new_address())
        self._fund(exhausted)
        for _ in range(MAX_ATTEMPTS - 1):
            self._begin(exhausted)
            self._fail(exhausted)
        self._begin(exhausted)
        awaiting_refund = self.open_activation(new_address())
        self._exhaust(awaiting_refund, hold_for_refund=True)

        with self.backend.sessionmaker() as session:
            self.assertEqual(self.registry.recover_interrupted(session), 3)
            session.commit()
        self.assertEqual(self.get_record(retriable).status, ActivationStatus.RETRY_PENDING)
        self.assertEqual(self.get_record(exhausted).status, ActivationStatus.FAILED)
        self.assertEqual(self.get_record(awaiting_refund).status, ActivationStatus.FAILED)

    def test_list_ready(self) -> None:
        funded = self.open_activation(self.address)
        self._fund(funded)
        retrying = self.open_activation(new_address())
        self._fund(retrying)
        self._begin(retrying)
        self._fail(retrying)
        self.open_activation(new_address())  # still awaiting

        with self.backend.sessionmaker() as session:
            ready = [record.uuid for record in self.registry.list_ready(session, RETRY_DELAY)]
        self.assertEqual(ready, [funded.uuid])

        self.clock.advance(RETRY_DELAY)
        with self.backend.sessionmaker() as session:
            ready = [record.uuid for record in self.registry.list_ready(session, RETRY_DELAY)]
        self.assertEqual(sorted(ready), sorted([funded.uuid, retrying.uuid]))

    def test_get_unknown(self) -> None:
        record = self.open_activation(self.address)
        with self.backend.sessionmaker() as session:
            session.query(ActivationRecord).delete()
            session.commit()
        with self.backend.sessionmaker() as session:
            with self.assertRaises(RecordNotFound):
                self.registry.get(session, record.uuid)


if __name__ == "__main__":
    unittest.main()
