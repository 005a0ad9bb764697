import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from common.utils.datetime import datetime_to_iso, get_current_datetime
from common.utils.uuid import generate_uuid4
from sqlalchemy.orm import Session

from flywheel.actions import ActionPayload
from flywheel.config import ChallengeConfig
from flywheel.exceptions import (
    ChallengeAlreadyUsed,
    ChallengeExpired,
    ChallengeNotFound,
    InvalidAddress,
    InvalidSignature,
    PayloadMismatch,
    RateLimited,
)
from flywheel.sql.challenge import Challenge
from flywheel.utils.ledger_client import LedgerClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIntent:
    address: str
    action: ActionPayload
    challenge_uuid: uuid.UUID


def build_challenge_message(
    header: str,
    address: str,
    challenge_uuid: uuid.UUID,
    action: ActionPayload,
    payload_hash: str,
    expiration: datetime,
) -> str:
    return "\n".join(
        [
            header,
            "",
            f"Action: {action.kind.value}",
            f"Wallet: {address}",
            f"Details: {action.summary()}",
            f"Nonce: {challenge_uuid.hex}",
            f"PayloadHash: {payload_hash}",
            f"Expires: {datetime_to_iso(expiration)}",
            "",
            "Signing authorizes only the action above. It does not send a transaction.",
        ]
    )


class SignatureClient:
    """Issues single-use challenges bound to an action payload and verifies wallet signatures over them.

    The caller owns the session and commits it. Nothing here touches the ledger beyond
    signature checks, and no business state is mutated.
    """

    def __init__(self, config: ChallengeConfig, ledger_client: LedgerClient) -> None:
        self._config = config
        self._ledger_client = ledger_client

    def request_challenge(self, session: Session, address: str, action: Optional[ActionPayload] = None) -> Challenge:
        if not self._ledger_client.is_valid_address(address):
            raise InvalidAddress(f"{address!r} is not a valid address")
        if action is None:
            action = ActionPayload.authenticate()
        payload_hash = action.payload_hash()
        current_datetime = get_current_datetime()

        recent_count = (
            session.query(Challenge)
            .filter(
                Challenge.address == address,
                Challenge.created_at > current_datetime - self._config.rate_limit_window,
            )
            .count()
        )
        if recent_count >= self._config.max_challenges_per_window:
            raise RateLimited(f"too many challenges requested for {address}; try again later")

        challenge_uuid = generate_uuid4()
        expiration = current_datetime + self._config.challenge_duration
        challenge = Challenge(
            uuid=challenge_uuid,
            address=address,
            action=action.kind.value,
            payload_hash=payload_hash,
            message=build_challenge_message(
                self._config.message_header, address, challenge_uuid, action, payload_hash, expiration
            ),
            created_at=current_datetime,
            expiration=expiration,
        )
        session.add(challenge)
        LOGGER.info("Issued challenge %s for %s to %s", challenge_uuid, action.kind.value, address)
        return challenge

    def verify(
        self,
        session: Session,
        address: str,
        token: uuid.UUID,
        signature: str,
        action: Optional[ActionPayload] = None,
    ) -> VerifiedIntent:
        if action is None:
            action = ActionPayload.authenticate()
        challenge = session.query(Challenge).filter(Challenge.uuid == token).one_or_none()
        if challenge is None or challenge.address != address:
            raise ChallengeNotFound(f"challenge {token} not found")
        current_datetime = get_current_datetime()
        if current_datetime >= challenge.expiration:
            raise ChallengeExpired(f"challenge {token} expired at {datetime_to_iso(challenge.expiration)}")
        if challenge.used_at is not None:
            raise ChallengeAlreadyUsed(f"challenge {token} was already used")
        if action.payload_hash() != challenge.payload_hash:
            raise PayloadMismatch("the submitted action differs from the one the challenge was issued for")
        if not self._ledger_client.verify_signature(address, challenge.message, signature):
            raise InvalidSignature("signature does not match the challenge message")

        row_count = (
            session.query(Challenge)
            .filter(
                Challenge.uuid == token,
                Challenge.used_at.is_(None),
            )
            .update({Challenge.used_at: current_datetime}, synchronize_session=False)
        )
        if row_count != 1:
            # a concurrent verifier consumed it between the read and the update
            raise ChallengeAlreadyUsed(f"challenge {token} was already used")
        LOGGER.info("Verified challenge %s for %s by %s", token, action.kind.value, address)
        return VerifiedIntent(address=address, action=action, challenge_uuid=token)

    @staticmethod
    def sweep_expired(session: Session) -> int:
        row_count = (
            session.query(Challenge)
            .filter(Challenge.expiration < get_current_datetime())
            .delete(synchronize_session=False)
        )
        assert isinstance(row_count, int)
        return row_count
