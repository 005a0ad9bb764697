import logging
from typing import Any, Dict, Sequence

import grpc
import sqlalchemy.orm
from common.utils.datetime import get_current_datetime
from common.utils.grpc_server import GRPCServer
from common.utils.json_rpc import JSONMessage, get_field, get_uuid_field
from sqlalchemy.orm import Session

from flywheel.actions import (
    ActionKind,
    ActionPayload,
    validate_config_update,
    validate_manual_sell,
    validate_register_token,
    validate_suspend_token,
)
from flywheel.exceptions import (
    InvalidAction,
    InvalidAddress,
    InvalidState,
    PermissionDenied,
    RecordNotFound,
)
from flywheel.sql.manual_sell import ManualSell
from flywheel.sql.token import Token
from flywheel.sql.token_config import TokenConfig
from flywheel.utils.ledger_client import LedgerClient
from flywheel.utils.signature_client import SignatureClient, VerifiedIntent

LOGGER = logging.getLogger(__name__)

SERVICE_NAME = "flywheel.Token"

APPLICABLE_ACTIONS = frozenset(
    {
        ActionKind.UPDATE_CONFIG,
        ActionKind.MANUAL_SELL,
        ActionKind.SUSPEND_TOKEN,
        ActionKind.REGISTER_TOKEN,
    }
)


def _get_token(session: Session, token_mint: str) -> Token:
    token = session.query(Token).filter(Token.token_mint == token_mint).one_or_none()
    if token is None:
        raise RecordNotFound(f"token {token_mint} is not registered")
    assert isinstance(token, Token)
    return token


def _get_owned_active_token(session: Session, token_mint: str, address: str) -> Token:
    token = _get_token(session, token_mint)
    if token.owner_address != address:
        raise PermissionDenied(f"token {token_mint} is not owned by {address}")
    if not token.is_active:
        raise InvalidState(f"token {token_mint} is suspended: {token.suspended_reason}")
    return token


def _get_or_create_config(session: Session, token_mint: str) -> TokenConfig:
    token_config = session.query(TokenConfig).filter(TokenConfig.token_mint == token_mint).one_or_none()
    if token_config is None:
        token_config = TokenConfig(token_mint=token_mint)
        session.add(token_config)
        session.flush()
    assert isinstance(token_config, TokenConfig)
    return token_config


class TokenService:
    """Verify-and-apply for the privileged actions that take effect immediately"""

    def __init__(
        self,
        sessionmaker: sqlalchemy.orm.sessionmaker,
        signature_client: SignatureClient,
        ledger_client: LedgerClient,
        admin_addresses: Sequence[str],
        server: GRPCServer,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._signature_client = signature_client
        self._ledger_client = ledger_client
        self._admin_addresses = frozenset(admin_addresses)
        server.add_service(SERVICE_NAME, {"Apply": self.Apply, "GetConfig": self.GetConfig})

    def Apply(self, request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
        address = get_field(request, "address", str)
        token = get_uuid_field(request, "token")
        signature = get_field(request, "signature", str)
        action = ActionPayload.from_json(get_field(request, "action", dict))
        if action.kind not in APPLICABLE_ACTIONS:
            raise InvalidAction(f"{action.kind.value} cannot be applied through the token service")
        with self._sessionmaker() as session:
            intent = self._signature_client.verify(session, address, token, signature, action)
            if action.kind == ActionKind.UPDATE_CONFIG:
                result = self._update_config(session, intent)
            elif action.kind == ActionKind.MANUAL_SELL:
                result = self._manual_sell(session, intent)
            elif action.kind == ActionKind.SUSPEND_TOKEN:
                result = self._suspend_token(session, intent)
            else:
                result = self._register_token(session, intent)
            session.commit()
        return {"appliedResult": result}

    def GetConfig(self, request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
        token_mint = get_field(request, "tokenMint", str)
        with self._sessionmaker() as session:
            token_config = session.query(TokenConfig).filter(TokenConfig.token_mint == token_mint).one_or_none()
            if token_config is None:
                raise RecordNotFound(f"token {token_mint} has no config")
            return {"config": token_config.to_json()}

    @staticmethod
    def _update_config(session: Session, intent: VerifiedIntent) -> Dict[str, Any]:
        token_mint, updates = validate_config_update(intent.action.body)
        _get_owned_active_token(session, token_mint, intent.address)
        token_config = _get_or_create_config(session, token_mint)
        for key, value in updates.items():
            setattr(token_config, key, value)
        min_buy = token_config.min_buy_amount_sol
        max_buy = token_config.max_buy_amount_sol
        if min_buy is not None and max_buy is not None and min_buy > max_buy:
            raise InvalidAction("min_buy_amount_sol must not exceed max_buy_amount_sol")
        token_config.updated_at = get_current_datetime()
        session.flush()
        LOGGER.info("Updated %s of %s for %s", sorted(updates), token_mint, intent.address)
        return token_config.to_json()

    @staticmethod
    def _manual_sell(session: Session, intent: VerifiedIntent) -> Dict[str, Any]:
        token_mint, percentage = validate_manual_sell(intent.action.body)
        _get_owned_active_token(session, token_mint, intent.address)
        manual_sell = ManualSell(
            token_mint=token_mint,
            requested_by=intent.address,
            percentage=percentage,
            challenge_uuid=intent.challenge_uuid,
        )
        session.add(manual_sell)
        session.flush()
        LOGGER.info("Queued a manual sell of %d%% of %s for %s", percentage, token_mint, intent.address)
        return {"manualSellId": manual_sell.uuid.hex, "tokenMint": token_mint, "percentage": percentage}

    def _suspend_token(self, session: Session, intent: VerifiedIntent) -> Dict[str, Any]:
        if intent.address not in self._admin_addresses:
            raise PermissionDenied(f"{intent.address} is not an admin")
        token_mint, reason = validate_suspend_token(intent.action.body)
        token = _get_token(session, token_mint)
        token.is_active = False
        token.suspended_reason = reason
        token_config = _get_or_create_config(session, token_mint)
        token_config.flywheel_active = False
        token_config.market_making_enabled = False
        token_config.updated_at = get_current_datetime()
        LOGGER.warning("Admin %s suspended %s: %s", intent.address, token_mint, reason)
        return {"tokenMint": token_mint, "suspended": True, "reason": reason}

    def _register_token(self, session: Session, intent: VerifiedIntent) -> Dict[str, Any]:
        registration = validate_register_token(intent.action.body)
        for address in (registration.token_mint, registration.dev_wallet, registration.ops_wallet):
            if not self._ledger_client.is_valid_address(address):
                raise InvalidAddress(f"{address!r} is not a valid address")
        if session.query(Token).filter(Token.token_mint == registration.token_mint).one_or_none() is not None:
            raise InvalidState(f"token {registration.token_mint} is already registered")
        session.add(
            Token(
                token_mint=registration.token_mint,
                owner_address=intent.address,
                symbol=registration.symbol,
                name=registration.name,
                dev_wallet=registration.dev_wallet,
                ops_wallet=registration.ops_wallet,
            )
        )
        session.add(TokenConfig(token_mint=registration.token_mint))
        LOGGER.info("Registered token %s (%s) for %s", registration.symbol, registration.token_mint, intent.address)
        return {"tokenMint": registration.token_mint, "symbol": registration.symbol}
