import unittest
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytz
from common.sql.datetime import DateTime
from common.sql.enum import Enum
from common.sql.fixed_point import FixedPoint
from common.sql.uuid import UUID
from sqlalchemy.dialects import sqlite

from flywheel.constants import ActivationStatus

DIALECT = sqlite.dialect()


class TestSQLTypes(unittest.TestCase):
    def test_fixed_point(self) -> None:
        fixed_point = FixedPoint()
        self.assertEqual(fixed_point.process_bind_param(Decimal("10"), DIALECT), "10")
        self.assertEqual(fixed_point.process_bind_param(Decimal("0.120"), DIALECT), "0.12")
        self.assertEqual(fixed_point.process_bind_param(Decimal("0.000000001"), DIALECT), "0.000000001")
        self.assertEqual(fixed_point.process_result_value("0.12", DIALECT), Decimal("0.12"))
        with self.assertRaises(ValueError):
            fixed_point.process_bind_param(Decimal("0.0000000001"), DIALECT)
        with self.assertRaises(ValueError):
            fixed_point.process_bind_param(Decimal("NaN"), DIALECT)

    def test_datetime(self) -> None:
        date_time = DateTime()
        now = datetime(2026, 1, 16, 19, 57, 28, 123456, tzinfo=pytz.UTC)
        stored = date_time.process_bind_param(now, DIALECT)
        assert stored is not None
        self.assertEqual(date_time.process_result_value(stored, DIALECT), now)
        later = date_time.process_bind_param(now + timedelta(microseconds=1), DIALECT)
        assert later is not None
        self.assertEqual(later - stored, 1)
        with self.assertRaises(ValueError):
            date_time.process_bind_param(datetime(2026, 1, 16), DIALECT)

    def test_enum_is_stored_by_value(self) -> None:
        enum_type = Enum(ActivationStatus)
        self.assertEqual(
            enum_type.process_bind_param(ActivationStatus.FUNDED_PENDING_EXECUTION, DIALECT),
            "funded_pending_execution",
        )
        self.assertEqual(enum_type.process_result_value("retry_pending", DIALECT), ActivationStatus.RETRY_PENDING)

    def test_uuid_is_stored_as_hex(self) -> None:
        uuid_type = UUID()
        value = uuid.uuid4()
        self.assertEqual(uuid_type.process_bind_param(value, DIALECT), value.hex)
        self.assertEqual(uuid_type.process_result_value(value.hex, DIALECT), value)


if __name__ == "__main__":
    unittest.main()
