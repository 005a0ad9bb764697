import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import httpx
from common.constants import LAMPORTS_PER_SOL
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException as SolanaRPCException
from solana.rpc.types import TxOpts
from solders.errors import BincodeError
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from flywheel.config import SolanaConfig
from flywheel.constants import TransactionStatus
from flywheel.exceptions import (
    LedgerException,
    TransactionRejected,
    TransactionTimeout,
)

LOGGER = logging.getLogger(__name__)

# errors raised by the rpc client when the node is unreachable or rejects the request
RPC_ERRORS = (SolanaRpcException, SolanaRPCException, httpx.HTTPError)

# raised by solders when bytes do not decode to a transaction
DECODE_ERRORS = (ValueError, BincodeError)


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)


def sol_to_lamports(sol: Decimal) -> int:
    amount_lamports_dec = sol * Decimal(LAMPORTS_PER_SOL)
    amount_lamports = int(amount_lamports_dec)
    if Decimal(amount_lamports) != amount_lamports_dec:
        raise ValueError("Incorrect precision")
    return amount_lamports


def is_valid_solana_address(address: str) -> bool:
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def verify_ed25519_signature(address: str, message: str, signature: str) -> bool:
    """Checks a base58 ed25519 signature made by ``address`` over the utf8 ``message``."""
    try:
        pubkey = Pubkey.from_string(address)
        sig = Signature.from_string(signature)
    except ValueError:
        return False
    return bool(sig.verify(pubkey, message.encode("utf8")))


class LedgerClient(ABC):
    """Everything the gate needs from a chain.

    Network failures surface as ``LedgerException`` so callers can tell a transient
    ledger problem apart from a business failure.
    """

    def __init__(self, confirmation_timeout: timedelta, confirmation_poll_interval: timedelta) -> None:
        self.confirmation_timeout = confirmation_timeout
        self._confirmation_poll_interval = confirmation_poll_interval

    @abstractmethod
    def get_balance(self, address: str) -> Decimal:
        pass

    @abstractmethod
    def signature_of(self, transaction: bytes) -> str:
        """Returns the signature a signed transaction will be known by once broadcast"""

    @abstractmethod
    def submit(self, transaction: bytes) -> str:
        """Broadcasts a signed transaction and returns its signature"""

    @abstractmethod
    def get_signature_status(self, signature: str) -> TransactionStatus:
        pass

    @abstractmethod
    def verify_signature(self, address: str, message: str, signature: str) -> bool:
        pass

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        pass

    def wait_for_confirmation(self, signature: str, timeout: Optional[timedelta] = None) -> TransactionStatus:
        if timeout is None:
            timeout = self.confirmation_timeout
        deadline = time.monotonic() + timeout.total_seconds()
        while True:
            status = self.get_signature_status(signature)
            if status in (TransactionStatus.CONFIRMED, TransactionStatus.FAILED):
                return status
            if time.monotonic() >= deadline:
                raise TransactionTimeout(f"transaction {signature} was not confirmed within {timeout}")
            time.sleep(self._confirmation_poll_interval.total_seconds())


class SolanaLedgerClient(LedgerClient):
    def __init__(self, config: SolanaConfig) -> None:
        super().__init__(config.confirmation_timeout, config.confirmation_poll_interval)
        self._commitment = Commitment(config.commitment)
        self._client = Client(
            config.rpc_url,
            commitment=self._commitment,
            timeout=config.request_timeout.total_seconds(),
        )

    def get_balance(self, address: str) -> Decimal:
        try:
            resp = self._client.get_balance(Pubkey.from_string(address), commitment=self._commitment)
        except RPC_ERRORS as e:
            raise LedgerException(f"failed to fetch the balance of {address}") from e
        return lamports_to_sol(resp.value)

    def submit(self, transaction: bytes) -> str:
        try:
            resp = self._client.send_raw_transaction(
                transaction,
                opts=TxOpts(skip_preflight=False, preflight_commitment=self._commitment),
            )
        except SolanaRPCException as e:
            raise TransactionRejected("the node rejected the transaction") from e
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise LedgerException("failed to submit the transaction") from e
        signature = str(resp.value)
        LOGGER.info("Submitted transaction %s", signature)
        return signature

    def signature_of(self, transaction: bytes) -> str:
        try:
            signatures = VersionedTransaction.from_bytes(transaction).signatures
        except DECODE_ERRORS:
            try:
                signatures = Transaction.from_bytes(transaction).signatures
            except DECODE_ERRORS as e:
                raise TransactionRejected("not a serialized solana transaction") from e
        if len(signatures) == 0:
            raise TransactionRejected("transaction is not signed")
        return str(signatures[0])

    def get_signature_status(self, signature: str) -> TransactionStatus:
        try:
            resp = self._client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            )
        except RPC_ERRORS as e:
            raise LedgerException(f"failed to fetch the status of {signature}") from e
        status = resp.value[0]
        if status is None:
            # not seen by the node. It may still land, so this is never treated as a failure
            return TransactionStatus.UNKNOWN
        if status.err is not None:
            LOGGER.info("Transaction %s failed on chain: %s", signature, status.err)
            return TransactionStatus.FAILED
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return TransactionStatus.CONFIRMED
        return TransactionStatus.PENDING

    def verify_signature(self, address: str, message: str, signature: str) -> bool:
        return verify_ed25519_signature(address, message, signature)

    def is_valid_address(self, address: str) -> bool:
        return is_valid_solana_address(address)
