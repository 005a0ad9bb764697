import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from common.utils.datetime import get_current_datetime
from sqlalchemy.orm import Session

from flywheel.constants import ActivationKind
from flywheel.exceptions import InvalidState, PermissionDenied, RecordNotFound
from flywheel.sql.activation_record import ActivationRecord
from flywheel.sql.token import Token
from flywheel.sql.token_config import TokenConfig
from flywheel.utils.launchpad_client import LaunchpadClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedAction:
    result_ref: str
    transaction: Optional[bytes] = None  # None when the activation has no on-chain step


class ActivationHandler(ABC):
    kind: ActivationKind

    @abstractmethod
    def resolve_deposit_address(self, session: Session, owner_address: str, payload: Mapping[str, Any]) -> str:
        """Returns the address whose balance gates the activation"""

    @abstractmethod
    def prepare(self, record: ActivationRecord) -> PreparedAction:
        pass

    @abstractmethod
    def complete(self, session: Session, record: ActivationRecord, result_ref: str) -> str:
        """Performs the bookkeeping once the side effect happened. Must tolerate being run again."""


def _get_owned_token(session: Session, token_mint: str, owner_address: str) -> Token:
    token = session.query(Token).filter(Token.token_mint == token_mint).one_or_none()
    if token is None:
        raise RecordNotFound(f"token {token_mint} is not registered")
    if token.owner_address != owner_address:
        raise PermissionDenied(f"token {token_mint} is not owned by {owner_address}")
    assert isinstance(token, Token)
    return token


class TokenLaunchHandler(ActivationHandler):
    kind = ActivationKind.TOKEN_LAUNCH

    def __init__(self, launchpad_client: LaunchpadClient) -> None:
        self._launchpad_client = launchpad_client

    def resolve_deposit_address(self, session: Session, owner_address: str, payload: Mapping[str, Any]) -> str:
        # the launch is paid from the dev wallet, so the deposit goes there
        dev_wallet = payload["dev_wallet"]
        assert isinstance(dev_wallet, str)
        return dev_wallet

    def prepare(self, record: ActivationRecord) -> PreparedAction:
        launch = self._launchpad_client.create_launch_transaction(record.payload)
        return PreparedAction(result_ref=launch.token_mint, transaction=launch.transaction)

    def complete(self, session: Session, record: ActivationRecord, result_ref: str) -> str:
        if session.query(Token).filter(Token.token_mint == result_ref).one_or_none() is not None:
            LOGGER.info("Token %s from activation %s is already registered", result_ref, record.uuid)
            return result_ref
        payload = record.payload
        session.add(
            Token(
                token_mint=result_ref,
                owner_address=record.owner_address,
                symbol=payload["symbol"],
                name=payload["name"],
                dev_wallet=payload["dev_wallet"],
                ops_wallet=payload["ops_wallet"],
                activation_uuid=record.uuid,
            )
        )
        # launched tokens start with the flywheel running on the default settings
        session.add(TokenConfig(token_mint=result_ref, flywheel_active=True, auto_claim_enabled=True))
        LOGGER.info("Registered launched token %s (%s) for %s", payload["symbol"], result_ref, record.owner_address)
        return result_ref


class MarketMakingHandler(ActivationHandler):
    kind = ActivationKind.MARKET_MAKING

    def resolve_deposit_address(self, session: Session, owner_address: str, payload: Mapping[str, Any]) -> str:
        token = _get_owned_token(session, payload["token_mint"], owner_address)
        if not token.is_active:
            raise InvalidState(f"token {token.token_mint} is suspended")
        ops_wallet = token.ops_wallet
        assert isinstance(ops_wallet, str)
        return ops_wallet

    def prepare(self, record: ActivationRecord) -> PreparedAction:
        return PreparedAction(result_ref=record.payload["token_mint"])

    def complete(self, session: Session, record: ActivationRecord, result_ref: str) -> str:
        token = _get_owned_token(session, result_ref, record.owner_address)
        if not token.is_active:
            raise InvalidState(f"token {token.token_mint} was suspended before market making started")
        token_config = session.query(TokenConfig).filter(TokenConfig.token_mint == result_ref).one_or_none()
        if token_config is None:
            token_config = TokenConfig(token_mint=result_ref)
            session.add(token_config)
        token_config.flywheel_active = True
        token_config.market_making_enabled = True
        token_config.updated_at = get_current_datetime()
        LOGGER.info("Enabled market making on %s for %s", result_ref, record.owner_address)
        return result_ref
