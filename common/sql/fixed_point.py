from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import sqlalchemy.types as types
from sqlalchemy.engine.interfaces import Dialect

# lamports are the smallest unit of SOL
DEFAULT_MAX_DECIMALS = 9

if TYPE_CHECKING:
    FixedPointEngine = types.TypeDecorator[Decimal]  # pylint: disable=unsubscriptable-object
else:
    FixedPointEngine = types.TypeDecorator


class FixedPoint(FixedPointEngine):
    # stored as a plain decimal string, so never compare fixed point columns in sql
    impl = types.String(80)
    cache_ok = True

    def __init__(self, max_decimals: int = DEFAULT_MAX_DECIMALS) -> None:
        super().__init__()
        self.max_decimals = max_decimals

    def process_bind_param(
        self,
        value: Optional[Decimal],
        dialect: Dialect,  # pylint: disable=unused-argument
    ) -> Optional[str]:
        if value is None:
            return None
        normalized = Decimal(value).normalize()
        if not normalized.is_finite():
            raise ValueError(f"{value} is not a finite amount")
        exponent = normalized.as_tuple().exponent
        assert isinstance(exponent, int)
        if exponent < -self.max_decimals:
            raise ValueError(f"{value} has more than {self.max_decimals} decimals")
        # "f" keeps whole numbers like 10 from being written as 1E+1
        return format(normalized, "f")

    def process_result_value(  # pylint: disable=no-self-use
        self, value: Optional[str], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value)
