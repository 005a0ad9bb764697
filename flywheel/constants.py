from decimal import Decimal
from enum import Enum
from typing import Final, FrozenSet


class ActivationKind(Enum):
    TOKEN_LAUNCH = "token-launch"
    MARKET_MAKING = "market-making-activation"


class ActivationStatus(Enum):
    AWAITING_DEPOSIT = "awaiting_deposit"
    FUNDED_PENDING_EXECUTION = "funded_pending_execution"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    RETRY_PENDING = "retry_pending"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: Final[FrozenSet[ActivationStatus]] = frozenset(
    {
        ActivationStatus.COMPLETED,
        ActivationStatus.FAILED,
        ActivationStatus.EXPIRED,
        ActivationStatus.REFUNDED,
        ActivationStatus.CANCELLED,
    }
)

# statuses the executor may (re)enter EXECUTING from
EXECUTABLE_STATUSES: Final[FrozenSet[ActivationStatus]] = frozenset(
    {
        ActivationStatus.FUNDED_PENDING_EXECUTION,
        ActivationStatus.RETRY_PENDING,
    }
)

# retry_pending records that used every attempt wait here for their refund, and expired
# records only when they hold a partial deposit
REFUNDABLE_STATUSES: Final[FrozenSet[ActivationStatus]] = frozenset(
    {
        ActivationStatus.RETRY_PENDING,
        ActivationStatus.EXPIRED,
    }
)


class TransactionStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


MANUAL_SELL_PERCENTAGES: Final[FrozenSet[int]] = frozenset({25, 50, 100})

# flywheel defaults applied when a token is launched or registered
DEFAULT_MIN_BUY_AMOUNT_SOL = Decimal("0.01")
DEFAULT_MAX_BUY_AMOUNT_SOL = Decimal("0.05")
DEFAULT_SLIPPAGE_BPS = 300
DEFAULT_ALGORITHM_MODE = "simple"
