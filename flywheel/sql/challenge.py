from common.sql.datetime import DateTime
from common.sql.uuid import UUID
from common.utils.datetime import get_current_datetime
from common.utils.uuid import generate_uuid4
from sqlalchemy import Column, Index, String, Text

from flywheel.sql.base import Base


class Challenge(Base):
    __tablename__ = "Challenge"

    uuid = Column(UUID, primary_key=True, default=generate_uuid4)  # the token handed to the client
    address = Column(String(64), nullable=False)
    action = Column(String(32), nullable=False)
    payload_hash = Column(String(64), nullable=False)  # sha256 hex of the canonical action payload
    message = Column(Text, nullable=False)  # exact text the wallet signs
    created_at = Column(DateTime, default=get_current_datetime, nullable=False)
    expiration = Column(DateTime, nullable=False)
    used_at = Column(DateTime)  # set exactly once, by a guarded update


Index("challenge_address_created_at", Challenge.address, Challenge.created_at)
Index("challenge_expiration", Challenge.expiration)
