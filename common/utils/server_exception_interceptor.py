import logging
import queue
import socket
from typing import TYPE_CHECKING

import grpc
import requests
from sqlalchemy.exc import OperationalError

from common.utils.json_rpc import JSONMessage, RPCException

if TYPE_CHECKING:
    from typing import Callable, Optional  # pylint: disable=ungrouped-imports

LOGGER = logging.getLogger(__name__)


class ServerExceptionInterceptor(grpc.ServerInterceptor):  # type: ignore[misc]
    @staticmethod
    def intercept_service(
        continuation: "Callable[[grpc.HandlerCallDetails], Optional[grpc.RpcMethodHandler]]",
        handler_call_details: grpc.HandlerCallDetails,
    ) -> "Optional[grpc.RpcMethodHandler]":
        rpc_method_handler = continuation(handler_call_details)
        if rpc_method_handler is None:
            return None
        if rpc_method_handler.request_streaming:
            return rpc_method_handler
        if rpc_method_handler.response_streaming:
            return rpc_method_handler

        def behavior(request: JSONMessage, context: grpc.ServicerContext) -> JSONMessage:
            assert rpc_method_handler is not None
            assert rpc_method_handler.unary_unary is not None
            try:
                response = rpc_method_handler.unary_unary(request, context)
                assert isinstance(response, dict)
                return response
            except RPCException as e:
                LOGGER.info("Rejecting %s: %s", handler_call_details.method, e.details)
                context.abort(e.status_code, e.details)
                raise e
            except (OperationalError, socket.timeout, queue.Empty, requests.exceptions.ConnectionError) as e:
                LOGGER.warning("Transient error caused RPC to abort. Try again.", exc_info=True)
                context.abort(grpc.StatusCode.ABORTED, "Try again - Transient error.")
                raise e
            except Exception as e:
                LOGGER.error("Uncaught server exception", exc_info=True)
                raise e

        intercepted_method_handler = grpc.unary_unary_rpc_method_handler(
            behavior,
            request_deserializer=rpc_method_handler.request_deserializer,
            response_serializer=rpc_method_handler.response_serializer,
        )
        return intercepted_method_handler
