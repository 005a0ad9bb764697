from common.sql.datetime import DateTime
from common.sql.uuid import UUID
from common.utils.datetime import get_current_datetime
from common.utils.uuid import generate_uuid4
from sqlalchemy import Column, Integer, String

from flywheel.sql.base import Base


class ManualSell(Base):
    __tablename__ = "ManualSell"

    uuid = Column(UUID, primary_key=True, default=generate_uuid4)
    token_mint = Column(String(64), nullable=False, index=True)
    requested_by = Column(String(64), nullable=False)
    percentage = Column(Integer, nullable=False)
    challenge_uuid = Column(UUID, nullable=False)
    created_at = Column(DateTime, default=get_current_datetime, nullable=False)
    processed_at = Column(DateTime)  # set by the trading process once the sell is executed
