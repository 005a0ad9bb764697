"""gRPC services whose request and response bodies are JSON objects.

Services are registered through generic method handlers, so no generated stubs
are needed on either side. Clients call ``JSONServiceStub(channel, name).Method(request)``.
"""
import json
import uuid
from typing import Any, Callable, Dict, Mapping, Type, TypeVar

import grpc

JSONMessage = Dict[str, Any]
UnaryHandler = Callable[[JSONMessage, grpc.ServicerContext], JSONMessage]


class RPCException(Exception):
    # subclasses pick the status code the server reports for them
    status_code: grpc.StatusCode = grpc.StatusCode.UNKNOWN

    @property
    def details(self) -> str:
        return f"{type(self).__name__}: {self}"


class InvalidRequest(RPCException):
    status_code = grpc.StatusCode.INVALID_ARGUMENT


T = TypeVar("T")  # pylint: disable=invalid-name


def get_field(message: JSONMessage, key: str, expected_type: Type[T]) -> T:
    value = message.get(key)
    if not isinstance(value, expected_type) or (isinstance(value, bool) and expected_type is not bool):
        raise InvalidRequest(f"{key} must be a {expected_type.__name__}")
    return value


def get_uuid_field(message: JSONMessage, key: str) -> uuid.UUID:
    try:
        return uuid.UUID(hex=get_field(message, key, str))
    except ValueError as e:
        raise InvalidRequest(f"{key} must be a hex uuid") from e


def serialize_message(message: JSONMessage) -> bytes:
    return json.dumps(message, sort_keys=True, separators=(",", ":")).encode("utf8")


def deserialize_message(data: bytes) -> JSONMessage:
    if len(data) == 0:
        return {}
    message = json.loads(data.decode("utf8"))
    if not isinstance(message, dict):
        raise ValueError("message must be a json object")
    return message


def make_generic_handler(service_name: str, methods: Mapping[str, UnaryHandler]) -> grpc.GenericRpcHandler:
    return grpc.method_handlers_generic_handler(
        service_name,
        {
            method_name: grpc.unary_unary_rpc_method_handler(
                handler,
                request_deserializer=deserialize_message,
                response_serializer=serialize_message,
            )
            for method_name, handler in methods.items()
        },
    )


class JSONServiceStub:
    def __init__(self, channel: grpc.Channel, service_name: str) -> None:
        self._channel = channel
        self._service_name = service_name

    def __getattr__(self, method_name: str) -> "grpc.UnaryUnaryMultiCallable":
        if method_name.startswith("_"):
            raise AttributeError(method_name)
        return self._channel.unary_unary(
            f"/{self._service_name}/{method_name}",
            request_serializer=serialize_message,
            response_deserializer=deserialize_message,
        )
