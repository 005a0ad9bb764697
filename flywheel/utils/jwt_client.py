from datetime import timedelta
from functools import wraps
from typing import Callable, Dict, Protocol, TypeVar

import grpc
import jwt
import jwt.exceptions
from common.constants import AUTHORIZATION_METADATA_KEY
from common.utils.datetime import get_current_datetime
from common.utils.json_rpc import JSONMessage
from common.utils.uuid import generate_uuid4

from flywheel.config import JWTConfig
from flywheel.exceptions import AuthenticationFailed

JWT_EXPIRATION_TIME_CLAIM = "exp"
JWT_NOT_BEFORE_TIME_CLAIM = "nbf"
JWT_ISSUED_AT_CLAIM = "iat"
JWT_AUDIENCE_CLAIM = "aud"
JWT_ISSUER_CLAIM = "iss"
JWT_SUBJECT_CLAIM = "sub"
JWT_ID_CLAIM = "jti"

AUTH_AUDIENCE = "flywheel.Auth"


class JWTClient:
    def __init__(self, config: JWTConfig) -> None:
        self._config = config

    def issue_auth_jwt(self, address: str) -> str:
        current_datetime = get_current_datetime()
        payload = {
            JWT_ISSUED_AT_CLAIM: int(current_datetime.timestamp()),
            JWT_NOT_BEFORE_TIME_CLAIM: int(current_datetime.timestamp()),
            JWT_EXPIRATION_TIME_CLAIM: int((current_datetime + self._config.auth_duration).timestamp()),
            JWT_ISSUER_CLAIM: self._config.issuer,
            JWT_AUDIENCE_CLAIM: [AUTH_AUDIENCE],
            JWT_SUBJECT_CLAIM: address,
            JWT_ID_CLAIM: generate_uuid4().hex,
        }
        return jwt.encode(payload, self._config.secret, algorithm=self._config.algorithm)

    def decode_auth_jwt(self, encoded_jwt: str) -> str:
        payload = self._decode_jwt(encoded_jwt, AUTH_AUDIENCE)
        address = payload[JWT_SUBJECT_CLAIM]
        if not isinstance(address, str):
            raise AuthenticationFailed("jwt subject is not an address")
        return address

    def _decode_jwt(self, encoded_jwt: str, audience: str) -> Dict[str, object]:
        try:
            payload = jwt.decode(
                encoded_jwt,
                key=self._config.secret,
                algorithms=[self._config.algorithm],
                audience=audience,
                issuer=self._config.issuer,
                leeway=timedelta(seconds=1),
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
            )
        except jwt.exceptions.InvalidTokenError as e:
            raise AuthenticationFailed("jwt decode failed") from e
        # time claims are checked against the patchable clock rather than the wall clock
        now = int(get_current_datetime().timestamp())
        expiration = payload.get(JWT_EXPIRATION_TIME_CLAIM)
        if not isinstance(expiration, int) or expiration < now:
            raise AuthenticationFailed("jwt expired")
        not_before = payload.get(JWT_NOT_BEFORE_TIME_CLAIM)
        if not isinstance(not_before, int) or not_before > now + 1:
            raise AuthenticationFailed("jwt is not valid yet")
        return payload


class AuthenticatedServicer(Protocol):
    @property
    def jwt_client(self) -> JWTClient:
        pass


TAuthenticatedServicer = TypeVar("TAuthenticatedServicer", bound=AuthenticatedServicer, contravariant=True)

AuthenticatedHandler = Callable[[TAuthenticatedServicer, JSONMessage, grpc.ServicerContext, str], JSONMessage]


def authenticated(
    handler: AuthenticatedHandler[TAuthenticatedServicer],
) -> Callable[[TAuthenticatedServicer, JSONMessage, grpc.ServicerContext], JSONMessage]:
    """Resolves the caller's wallet address from the ``authorization`` metadatum"""

    @wraps(handler)
    def wrapper(
        self: TAuthenticatedServicer,
        request: JSONMessage,
        context: grpc.ServicerContext,
    ) -> JSONMessage:
        for k, v in context.invocation_metadata():
            if k == AUTHORIZATION_METADATA_KEY:
                assert isinstance(v, str)
                address = self.jwt_client.decode_auth_jwt(v)
                return handler(self, request, context, address)
        raise AuthenticationFailed(f"missing {AUTHORIZATION_METADATA_KEY} metadatum")

    return wrapper
