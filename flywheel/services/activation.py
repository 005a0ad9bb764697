import logging
from datetime import timedelta
from decimal import Decimal
from typing import Mapping

import grpc
import sqlalchemy.orm
from common.utils.grpc_server import GRPCServer
from common.utils.json_rpc import JSONMessage, get_field, get_uuid_field

from flywheel.actions import ActionKind, ActionPayload, validate_open_activation
from flywheel.constants import ActivationKind
from flywheel.exceptions import InvalidAddress
from flywheel.utils.activation_handlers import ActivationHandler
from flywheel.utils.activation_registry import ActivationRegistry
from flywheel.utils.deposit_watcher import DepositWatcher
from flywheel.utils.jwt_client import JWTClient, authenticated
from flywheel.utils.ledger_client import LedgerClient
from flywheel.utils.signature_client import SignatureClient

LOGGER = logging.getLogger(__name__)

SERVICE_NAME = "flywheel.Activation"

# payload fields that must hold ledger addresses
ADDRESS_FIELDS = ("dev_wallet", "ops_wallet", "token_mint")


class ActivationService:
    def __init__(
        self,
        sessionmaker: sqlalchemy.orm.sessionmaker,
        jwt_client: JWTClient,
        signature_client: SignatureClient,
        registry: ActivationRegistry,
        deposit_watcher: DepositWatcher,
        ledger_client: LedgerClient,
        handlers: Mapping[ActivationKind, ActivationHandler],
        required_amounts: Mapping[ActivationKind, Decimal],
        ttl: timedelta,
        server: GRPCServer,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._jwt_client = jwt_client
        self._signature_client = signature_client
        self._registry = registry
        self._deposit_watcher = deposit_watcher
        self._ledger_client = ledger_client
        self._handlers = handlers
        self._required_amounts = required_amounts
        self._ttl = ttl
        server.add_service(SERVICE_NAME, {"Open": self.Open, "Get": self.Get, "Cancel": self.Cancel})

    @property
    def jwt_client(self) -> JWTClient:
        return self._jwt_client

    def Open(self, request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
        address = get_field(request, "address", str)
        token = get_uuid_field(request, "token")
        signature = get_field(request, "signature", str)
        # the signed payload is exactly what the client sent, before any normalization
        action = ActionPayload(
            kind=ActionKind.OPEN_ACTIVATION,
            body={"kind": request.get("kind"), "payload": request.get("payload")},
        )
        kind, payload = validate_open_activation(action.body)
        for field in ADDRESS_FIELDS:
            if field in payload and not self._ledger_client.is_valid_address(payload[field]):
                raise InvalidAddress(f"{field} {payload[field]!r} is not a valid address")
        self._deposit_watcher.settle_overdue(address, kind)
        with self._sessionmaker() as session:
            intent = self._signature_client.verify(session, address, token, signature, action)
            deposit_address = self._handlers[kind].resolve_deposit_address(session, address, payload)
            # a failed lookup rolls back, so the challenge can be used again
            baseline_amount = self._ledger_client.get_balance(deposit_address)
            record = self._registry.open(
                session,
                owner_address=intent.address,
                kind=kind,
                payload=payload,
                required_amount=self._required_amounts[kind],
                deposit_address=deposit_address,
                ttl=self._ttl,
                baseline_amount=baseline_amount,
                challenge_uuid=intent.challenge_uuid,
            )
            session.commit()
            return record.to_json()

    def Get(self, request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
        activation_uuid = get_uuid_field(request, "activationId")
        with self._sessionmaker() as session:
            return self._registry.get(session, activation_uuid).to_json()

    @authenticated
    def Cancel(self, request: JSONMessage, context: grpc.ServicerContext, address: str) -> JSONMessage:
        activation_uuid = get_uuid_field(request, "activationId")
        with self._sessionmaker() as session:
            record = self._registry.cancel(session, activation_uuid, address)
            session.commit()
            return record.to_json()
