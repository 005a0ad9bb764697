import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

import sqlalchemy.orm
from common.utils.datetime import get_current_datetime
from sqlalchemy.exc import OperationalError

from flywheel.constants import ActivationKind, ActivationStatus
from flywheel.exceptions import LedgerException
from flywheel.utils.activation_executor import ActivationExecutor
from flywheel.utils.activation_registry import ActivationRegistry
from flywheel.utils.ledger_client import LedgerClient

LOGGER = logging.getLogger(__name__)


@dataclass
class SweepResult:
    funded: List[uuid.UUID] = field(default_factory=list)
    expired: List[uuid.UUID] = field(default_factory=list)
    refunded: List[uuid.UUID] = field(default_factory=list)
    ledger_errors: List[uuid.UUID] = field(default_factory=list)
    dispatched: List[uuid.UUID] = field(default_factory=list)


class DepositWatcher:
    def __init__(
        self,
        sessionmaker: sqlalchemy.orm.sessionmaker,
        registry: ActivationRegistry,
        ledger_client: LedgerClient,
        executor: ActivationExecutor,
        retry_delay: timedelta,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._registry = registry
        self._ledger_client = ledger_client
        self._executor = executor
        self._retry_delay = retry_delay

    def sweep(self) -> SweepResult:
        result = SweepResult()
        with self._sessionmaker() as session:
            awaiting = [
                (record.uuid, record.deposit_address) for record in self._registry.list_open(session)
            ]
        for activation_uuid, deposit_address in awaiting:
            self._check_deposit(activation_uuid, deposit_address, result)

        with self._sessionmaker() as session:
            ready = [record.uuid for record in self._registry.list_ready(session, self._retry_delay)]
        for activation_uuid in ready:
            if self._executor.submit(activation_uuid) is not None:
                result.dispatched.append(activation_uuid)
        return result

    def settle_overdue(self, owner_address: str, kind: ActivationKind) -> SweepResult:
        """Runs the deposit check now for an open record of ``owner_address`` whose deadline passed.

        Used before opening a new record, so an overdue one funds or expires exactly as the next
        sweep would have done it.
        """
        result = SweepResult()
        with self._sessionmaker() as session:
            record = self._registry.find_open(session, owner_address, kind)
            if (
                record is None
                or record.status != ActivationStatus.AWAITING_DEPOSIT
                or record.expires_at >= get_current_datetime()
            ):
                return result
            activation_uuid, deposit_address = record.uuid, record.deposit_address
        self._check_deposit(activation_uuid, deposit_address, result)
        return result

    def _check_deposit(self, activation_uuid: uuid.UUID, deposit_address: str, result: SweepResult) -> None:
        try:
            balance = self._ledger_client.get_balance(deposit_address)
        except LedgerException:
            # no funding and no expiry on a failed lookup; the next sweep tries again
            LOGGER.warning(
                "Failed to fetch the balance of %s for activation %s",
                deposit_address,
                activation_uuid,
                exc_info=True,
            )
            result.ledger_errors.append(activation_uuid)
            return
        expired_with_deposit = False
        try:
            with self._sessionmaker() as session:
                # funding is checked first so a deposit that lands right at the deadline still counts
                if self._registry.mark_funded(session, activation_uuid, balance):
                    result.funded.append(activation_uuid)
                elif self._registry.mark_expired(session, activation_uuid):
                    result.expired.append(activation_uuid)
                    expired_with_deposit = self._registry.get(session, activation_uuid).observed_amount > 0
                session.commit()
        except OperationalError:
            LOGGER.warning("Failed to update activation %s; retrying on the next sweep", activation_uuid, exc_info=True)
            return
        if expired_with_deposit and self._executor.refund(activation_uuid) is not None:
            result.refunded.append(activation_uuid)
