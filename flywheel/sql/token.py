from common.sql.datetime import DateTime
from common.sql.uuid import UUID
from common.utils.datetime import get_current_datetime
from sqlalchemy import Boolean, Column, String

from flywheel.sql.base import Base


class Token(Base):
    __tablename__ = "Token"

    token_mint = Column(String(64), primary_key=True)
    owner_address = Column(String(64), nullable=False, index=True)
    symbol = Column(String(16), nullable=False)
    name = Column(String(64), nullable=False)
    dev_wallet = Column(String(64), nullable=False)
    ops_wallet = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    suspended_reason = Column(String(512))
    activation_uuid = Column(UUID)  # null for registered (not launched) tokens
    created_at = Column(DateTime, default=get_current_datetime, nullable=False)
