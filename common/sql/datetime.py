from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

import pytz
import sqlalchemy.types as types
from sqlalchemy.engine.interfaces import Dialect

EPOCH = datetime(1970, 1, 1, tzinfo=pytz.UTC)
ONE_MICROSECOND = timedelta(microseconds=1)

if TYPE_CHECKING:
    DateTimeEngine = types.TypeDecorator[datetime]  # pylint: disable=unsubscriptable-object
else:
    DateTimeEngine = types.TypeDecorator


class DateTime(DateTimeEngine):
    """Timezone-aware datetimes stored as integer microseconds since the epoch.

    Deadlines (``expires_at``, retry cutoffs) are compared in sql, so the column must order
    the same way the datetimes do on every backend.
    """

    impl = types.BigInteger
    cache_ok = True

    def process_bind_param(  # type: ignore[override]  # pylint: disable=no-self-use
        self, value: Optional[datetime], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[int]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes cannot be stored")
        return (value - EPOCH) // ONE_MICROSECOND

    def process_result_value(  # pylint: disable=no-self-use
        self, value: Optional[int], dialect: Dialect  # pylint: disable=unused-argument
    ) -> Optional[datetime]:
        if value is None:
            return None
        return EPOCH + int(value) * ONE_MICROSECOND
