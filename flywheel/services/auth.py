import logging

import grpc
import sqlalchemy.orm
from common.utils.datetime import datetime_to_iso
from common.utils.grpc_server import GRPCServer
from common.utils.json_rpc import JSONMessage, get_field, get_uuid_field

from flywheel.actions import ActionPayload, validate_action
from flywheel.utils.jwt_client import JWTClient
from flywheel.utils.signature_client import SignatureClient

LOGGER = logging.getLogger(__name__)

SERVICE_NAME = "flywheel.Auth"


class AuthService:
    def __init__(
        self,
        sessionmaker: sqlalchemy.orm.sessionmaker,
        jwt_client: JWTClient,
        signature_client: SignatureClient,
        server: GRPCServer,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._jwt_client = jwt_client
        self._signature_client = signature_client
        server.add_service(SERVICE_NAME, {"MakeChallenge": self.MakeChallenge, "Login": self.Login})

    def MakeChallenge(self, request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
        address = get_field(request, "address", str)
        action = ActionPayload.from_json(request.get("action"))
        validate_action(action)
        with self._sessionmaker() as session:
            challenge = self._signature_client.request_challenge(session, address, action)
            session.commit()
            return {
                "token": challenge.uuid.hex,
                "message": challenge.message,
                "payloadHash": challenge.payload_hash,
                "expiresAt": datetime_to_iso(challenge.expiration),
            }

    def Login(self, request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
        address = get_field(request, "address", str)
        token = get_uuid_field(request, "token")
        signature = get_field(request, "signature", str)
        with self._sessionmaker() as session:
            intent = self._signature_client.verify(session, address, token, signature, ActionPayload.authenticate())
            session.commit()
        LOGGER.info("Wallet %s logged in", intent.address)
        return {"jwt": self._jwt_client.issue_auth_jwt(intent.address)}
