import logging
import time
from typing import TYPE_CHECKING

import grpc

from common.utils.json_rpc import JSONMessage

if TYPE_CHECKING:
    from typing import Callable  # pylint: disable=ungrouped-imports

LOGGER = logging.getLogger(__name__)

# the server answers ABORTED only for transient failures (lock timeouts, ledger hiccups)
MAX_ABORTED_RETRIES = 5
ABORTED_RETRY_SLEEP_SECONDS = 0.1


class ClientExceptionInterceptor(grpc.UnaryUnaryClientInterceptor):  # type: ignore[misc]
    @staticmethod
    def intercept_unary_unary(
        continuation: "Callable[[grpc.ClientCallDetails, JSONMessage], grpc.CallFuture]",
        client_call_details: grpc.ClientCallDetails,
        request: JSONMessage,
    ) -> "grpc.CallFuture":
        attempt = 0
        while True:
            attempt += 1
            response = continuation(client_call_details, request)
            while not response.done():
                time.sleep(0.01)
            if response.code() == grpc.StatusCode.ABORTED and attempt < MAX_ABORTED_RETRIES:
                LOGGER.warning("Received an aborted rpc response with details(%s); trying again", response.details())
                time.sleep(ABORTED_RETRY_SLEEP_SECONDS)
                continue
            return response
