from decimal import Decimal
from typing import Any, Dict

from common.sql.datetime import DateTime
from common.sql.fixed_point import FixedPoint
from common.utils.datetime import datetime_to_iso, get_current_datetime
from sqlalchemy import Boolean, Column, Integer, String

from flywheel.constants import (
    DEFAULT_ALGORITHM_MODE,
    DEFAULT_MAX_BUY_AMOUNT_SOL,
    DEFAULT_MIN_BUY_AMOUNT_SOL,
    DEFAULT_SLIPPAGE_BPS,
)
from flywheel.sql.base import Base


class TokenConfig(Base):
    __tablename__ = "TokenConfig"

    token_mint = Column(String(64), primary_key=True)
    flywheel_active = Column(Boolean, nullable=False, default=False)
    market_making_enabled = Column(Boolean, nullable=False, default=False)
    auto_claim_enabled = Column(Boolean, nullable=False, default=True)
    fee_threshold_sol = Column(FixedPoint, nullable=False, default=Decimal("0.1"))
    min_buy_amount_sol = Column(FixedPoint, nullable=False, default=DEFAULT_MIN_BUY_AMOUNT_SOL)
    max_buy_amount_sol = Column(FixedPoint, nullable=False, default=DEFAULT_MAX_BUY_AMOUNT_SOL)
    max_sell_amount_tokens = Column(FixedPoint, nullable=False, default=Decimal(0))
    buy_interval_minutes = Column(Integer, nullable=False, default=5)
    slippage_bps = Column(Integer, nullable=False, default=DEFAULT_SLIPPAGE_BPS)
    algorithm_mode = Column(String(16), nullable=False, default=DEFAULT_ALGORITHM_MODE)
    target_sol_allocation = Column(Integer, nullable=False, default=50)
    target_token_allocation = Column(Integer, nullable=False, default=50)
    rebalance_threshold = Column(Integer, nullable=False, default=10)
    use_twap = Column(Boolean, nullable=False, default=False)
    twap_threshold_usd = Column(FixedPoint, nullable=False, default=Decimal(50))
    updated_at = Column(DateTime, default=get_current_datetime, nullable=False)

    def to_json(self) -> Dict[str, Any]:
        return {
            "tokenMint": self.token_mint,
            "flywheelActive": self.flywheel_active,
            "marketMakingEnabled": self.market_making_enabled,
            "autoClaimEnabled": self.auto_claim_enabled,
            "feeThresholdSol": format(self.fee_threshold_sol, "f"),
            "minBuyAmountSol": format(self.min_buy_amount_sol, "f"),
            "maxBuyAmountSol": format(self.max_buy_amount_sol, "f"),
            "maxSellAmountTokens": format(self.max_sell_amount_tokens, "f"),
            "buyIntervalMinutes": self.buy_interval_minutes,
            "slippageBps": self.slippage_bps,
            "algorithmMode": self.algorithm_mode,
            "targetSolAllocation": self.target_sol_allocation,
            "targetTokenAllocation": self.target_token_allocation,
            "rebalanceThreshold": self.rebalance_threshold,
            "useTwap": self.use_twap,
            "twapThresholdUsd": format(self.twap_threshold_usd, "f"),
            "updatedAt": datetime_to_iso(self.updated_at),
        }
