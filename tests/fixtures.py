import hashlib
import threading
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import Mock

from common.config import GRPCConfig, GRPCServerConfig, SQLAlchemyConfig
from common.utils.datetime import get_current_datetime
from common.utils.server_exception_interceptor import ServerExceptionInterceptor
from solders.keypair import Keypair

from flywheel.config import (
    ActivationConfig,
    BackendConfig,
    ChallengeConfig,
    JWTConfig,
    LaunchpadConfig,
    SolanaConfig,
)
from flywheel.constants import ActivationKind, TransactionStatus
from flywheel.utils.ledger_client import (
    LedgerClient,
    is_valid_solana_address,
    verify_ed25519_signature,
)

mock_generated_uuids: List[uuid.UUID] = []


def _save_and_return_mock_uuid() -> uuid.UUID:
    mock_uuid = uuid.uuid4()
    mock_generated_uuids.append(mock_uuid)
    return mock_uuid


mock_generate_uuid4 = Mock(side_effect=_save_and_return_mock_uuid)

MOCK_JWT_CONFIG = JWTConfig(
    secret="flywheel-test-secret-0123456789abcdef",
    auth_duration=timedelta(days=1),
    issuer="localhost",
)

MOCK_CHALLENGE_CONFIG = ChallengeConfig(
    challenge_duration=timedelta(minutes=5),
    rate_limit_window=timedelta(minutes=1),
    max_challenges_per_window=5,
    message_header="ClaudeWheel Test Authorization",
)

REQUIRED_AMOUNT = Decimal("0.1")
ACTIVATION_TTL = timedelta(minutes=30)
RETRY_DELAY = timedelta(seconds=30)
MAX_ATTEMPTS = 3

ADMIN_KEYPAIR = Keypair()


class MockClock:
    """Stands in for ``common.utils.datetime._get_current_datetime`` so tests can travel in time"""

    def __init__(self) -> None:
        self.now: datetime = get_current_datetime()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class MockLedgerClient(LedgerClient):
    """In-memory ledger. Signatures are checked for real so wallets are plain ``solders`` keypairs."""

    def __init__(self) -> None:
        super().__init__(confirmation_timeout=timedelta(seconds=0.2), confirmation_poll_interval=timedelta(seconds=0.01))
        self._lock = threading.Lock()
        self.balances: Dict[str, Decimal] = {}
        self.statuses: Dict[str, TransactionStatus] = {}
        self.submitted: List[bytes] = []
        # status a freshly submitted transaction reports
        self.submit_status = TransactionStatus.CONFIRMED
        self.submit_error: Optional[Exception] = None
        self.balance_error: Optional[Exception] = None

    def reset(self) -> None:
        with self._lock:
            self.balances.clear()
            self.statuses.clear()
            self.submitted.clear()
            self.submit_status = TransactionStatus.CONFIRMED
            self.submit_error = None
            self.balance_error = None

    def deposit(self, address: str, amount: Decimal) -> None:
        with self._lock:
            self.balances[address] = self.balances.get(address, Decimal(0)) + amount

    def get_balance(self, address: str) -> Decimal:
        if self.balance_error is not None:
            raise self.balance_error
        with self._lock:
            return self.balances.get(address, Decimal(0))

    def signature_of(self, transaction: bytes) -> str:
        return "sig-" + hashlib.sha256(transaction).hexdigest()[:32]

    def submit(self, transaction: bytes) -> str:
        with self._lock:
            self.submitted.append(transaction)
        signature = self.signature_of(transaction)
        if self.submit_error is not None:
            raise self.submit_error
        with self._lock:
            self.statuses[signature] = self.submit_status
        return signature

    def get_signature_status(self, signature: str) -> TransactionStatus:
        with self._lock:
            return self.statuses.get(signature, TransactionStatus.UNKNOWN)

    def verify_signature(self, address: str, message: str, signature: str) -> bool:
        return verify_ed25519_signature(address, message, signature)

    def is_valid_address(self, address: str) -> bool:
        return is_valid_solana_address(address)


def sign(keypair: Keypair, message: str) -> str:
    return str(keypair.sign_message(message.encode("utf8")))


def address_of(keypair: Keypair) -> str:
    return str(keypair.pubkey())


def new_address() -> str:
    return address_of(Keypair())


def generate_grpc_config(tempdir_name: str) -> GRPCConfig:
    return GRPCConfig(
        host=f"unix://{tempdir_name}/grpc.sock",
        max_workers=1,  # all requests in tests are one-at-a-time
    )


def generate_mock_backend_config(tempdir_name: str) -> BackendConfig:
    return BackendConfig(
        sqlalchemy_config=SQLAlchemyConfig(
            uri=f"sqlite:///{tempdir_name}/test.db",
            echo=False,
            pool_size=1,
            max_overflow=1,
        ),
        grpc_server_config=GRPCServerConfig(
            grpc_config=generate_grpc_config(tempdir_name),
            interceptors=(ServerExceptionInterceptor(),),
        ),
        challenge_config=MOCK_CHALLENGE_CONFIG,
        jwt_config=MOCK_JWT_CONFIG,
        solana_config=SolanaConfig(
            rpc_url="http://localhost:8899",  # unused; tests inject MockLedgerClient
            commitment="confirmed",
            request_timeout=timedelta(seconds=1),
            confirmation_timeout=timedelta(seconds=1),
        ),
        launchpad_config=LaunchpadConfig(
            base_url="http://launchpad.invalid/api",
            timeout=timedelta(seconds=1),
        ),
        activation_config=ActivationConfig(
            required_amounts={
                ActivationKind.TOKEN_LAUNCH: REQUIRED_AMOUNT,
                ActivationKind.MARKET_MAKING: REQUIRED_AMOUNT,
            },
            ttl=ACTIVATION_TTL,
            max_attempts=MAX_ATTEMPTS,
            retry_delay=RETRY_DELAY,
            sweep_interval=timedelta(seconds=1),
            executor_workers=2,
        ),
        admin_addresses=(address_of(ADMIN_KEYPAIR),),
    )
