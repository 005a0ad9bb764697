import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock, patch

from flywheel.constants import ActivationStatus
from flywheel.exceptions import ActivationAlreadyOpen, LedgerException
from flywheel.utils.activation_registry import Outcome
from flywheel.utils.deposit_watcher import DepositWatcher
from tests.base import BaseBackendTestCase
from tests.fixtures import ACTIVATION_TTL, RETRY_DELAY, new_address


class TestDepositWatcher(BaseBackendTestCase):
    deposit_watcher: DepositWatcher

    def setUp(self) -> None:
        super().setUp()
        self.deposit_watcher = self.backend.deposit_watcher
        # execution is covered by the executor tests
        submit_patcher = patch.object(self.backend.executor, "submit", return_value=Mock())
        self.mock_submit = submit_patcher.start()
        self.addCleanup(submit_patcher.stop)

    def test_partial_deposit_then_full_deposit(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)

        self.ledger_client.deposit(deposit_address, Decimal("0.05"))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [])
        partial = self.get_record(record)
        self.assertEqual(partial.status, ActivationStatus.AWAITING_DEPOSIT)
        self.assertEqual(partial.observed_amount, Decimal("0.05"))
        self.mock_submit.assert_not_called()

        self.ledger_client.deposit(deposit_address, Decimal("0.07"))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [record.uuid])
        self.assertEqual(result.dispatched, [record.uuid])
        funded = self.get_record(record)
        self.assertEqual(funded.status, ActivationStatus.FUNDED_PENDING_EXECUTION)
        self.assertEqual(funded.observed_amount, Decimal("0.12"))
        self.mock_submit.assert_called_once_with(record.uuid)

    def test_underfunded_record_expires_and_stays_expired(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.ledger_client.deposit(deposit_address, Decimal("0.01"))
        self.deposit_watcher.sweep()

        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.expired, [record.uuid])
        self.assertEqual(self.get_record(record).status, ActivationStatus.EXPIRED)

        # a late deposit does not revive it
        self.ledger_client.deposit(deposit_address, Decimal("1"))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [])
        self.assertEqual(self.get_record(record).status, ActivationStatus.EXPIRED)
        self.mock_submit.assert_not_called()

    def test_deposit_at_the_deadline_funds(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        self.ledger_client.deposit(deposit_address, Decimal("0.1"))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [record.uuid])
        self.assertEqual(result.expired, [])

    def test_prefunded_address_needs_a_new_deposit(self) -> None:
        deposit_address = new_address()
        self.ledger_client.deposit(deposit_address, Decimal("5"))
        record = self.open_activation(self.address, deposit_address=deposit_address)

        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [])
        self.assertEqual(self.get_record(record).status, ActivationStatus.AWAITING_DEPOSIT)
        self.mock_submit.assert_not_called()

        self.ledger_client.deposit(deposit_address, Decimal("0.1"))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [record.uuid])
        self.assertEqual(self.get_record(record).observed_amount, Decimal("0.1"))

    def test_overdue_record_funded_before_reopening(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.clock.advance(ACTIVATION_TTL - timedelta(seconds=1))
        self.ledger_client.deposit(deposit_address, Decimal("0.1"))
        self.clock.advance(timedelta(seconds=2))

        result = self.deposit_watcher.settle_overdue(self.address, record.kind)
        self.assertEqual(result.funded, [record.uuid])
        with self.assertRaises(ActivationAlreadyOpen):
            self.open_activation(self.address)
        self.assertEqual(self.get_record(record).status, ActivationStatus.FUNDED_PENDING_EXECUTION)

    def test_overdue_record_expired_before_reopening(self) -> None:
        record = self.open_activation(self.address)
        # nothing to settle before the deadline
        self.assertEqual(self.deposit_watcher.settle_overdue(self.address, record.kind).expired, [])
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        result = self.deposit_watcher.settle_overdue(self.address, record.kind)
        self.assertEqual(result.expired, [record.uuid])
        replacement = self.open_activation(self.address)
        self.assertNotEqual(replacement.uuid, record.uuid)

    def test_overdue_record_is_kept_on_ledger_error(self) -> None:
        record = self.open_activation(self.address)
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        self.ledger_client.balance_error = LedgerException("node unreachable")
        result = self.deposit_watcher.settle_overdue(self.address, record.kind)
        self.assertEqual(result.ledger_errors, [record.uuid])
        self.ledger_client.balance_error = None
        with self.assertRaises(ActivationAlreadyOpen):
            self.open_activation(self.address)
        self.assertEqual(self.get_record(record).status, ActivationStatus.AWAITING_DEPOSIT)

    def test_expired_partial_deposit_is_refunded(self) -> None:
        deposit_address = new_address()
        empty = self.open_activation(self.address)
        partial = self.open_activation(new_address(), deposit_address=deposit_address)
        self.ledger_client.deposit(deposit_address, Decimal("0.04"))
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        with patch.object(self.backend.executor, "refund", return_value="refund-sig") as mock_refund:
            result = self.deposit_watcher.sweep()
        self.assertEqual(sorted(result.expired), sorted([empty.uuid, partial.uuid]))
        self.assertEqual(result.refunded, [partial.uuid])
        mock_refund.assert_called_once_with(partial.uuid)

    def test_ledger_error_leaves_record_untouched(self) -> None:
        record = self.open_activation(self.address)
        self.clock.advance(ACTIVATION_TTL + timedelta(seconds=1))
        self.ledger_client.balance_error = LedgerException("node unreachable")
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.ledger_errors, [record.uuid])
        self.assertEqual(result.expired, [])
        self.assertEqual(self.get_record(record).status, ActivationStatus.AWAITING_DEPOSIT)

        self.ledger_client.balance_error = None
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.expired, [record.uuid])

    def test_records_are_swept_independently(self) -> None:
        funded_address = new_address()
        funded = self.open_activation(self.address, deposit_address=funded_address)
        waiting = self.open_activation(new_address())
        self.ledger_client.deposit(funded_address, Decimal("0.1"))
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [funded.uuid])
        self.assertEqual(self.get_record(waiting).status, ActivationStatus.AWAITING_DEPOSIT)

    def test_retries_are_dispatched_after_the_delay(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.ledger_client.deposit(deposit_address, Decimal("0.1"))
        self.deposit_watcher.sweep()
        with self.backend.sessionmaker() as session:
            self.backend.registry.begin_execution(session, record.uuid)
            session.commit()
        with self.backend.sessionmaker() as session:
            self.backend.registry.record_outcome(session, record.uuid, Outcome.failed("boom"))
            session.commit()
        self.mock_submit.reset_mock()

        self.assertEqual(self.deposit_watcher.sweep().dispatched, [])
        self.clock.advance(RETRY_DELAY)
        self.assertEqual(self.deposit_watcher.sweep().dispatched, [record.uuid])
        self.mock_submit.assert_called_once_with(record.uuid)

    def test_already_running_records_are_not_counted(self) -> None:
        deposit_address = new_address()
        record = self.open_activation(self.address, deposit_address=deposit_address)
        self.ledger_client.deposit(deposit_address, Decimal("0.1"))
        self.mock_submit.return_value = None
        result = self.deposit_watcher.sweep()
        self.assertEqual(result.funded, [record.uuid])
        self.assertEqual(result.dispatched, [])


if __name__ == "__main__":
    unittest.main()
