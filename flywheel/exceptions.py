import grpc
from common.utils.json_rpc import RPCException


class FlywheelException(RPCException):
    pass


# client protocol errors. never retried automatically


class ChallengeNotFound(FlywheelException):
    status_code = grpc.StatusCode.NOT_FOUND


class ChallengeExpired(FlywheelException):
    status_code = grpc.StatusCode.INVALID_ARGUMENT


class ChallengeAlreadyUsed(FlywheelException):
    status_code = grpc.StatusCode.INVALID_ARGUMENT


class PayloadMismatch(FlywheelException):
    status_code = grpc.StatusCode.PERMISSION_DENIED


class InvalidSignature(FlywheelException):
    status_code = grpc.StatusCode.UNAUTHENTICATED


class RateLimited(FlywheelException):
    status_code = grpc.StatusCode.RESOURCE_EXHAUSTED


class InvalidAddress(FlywheelException):
    status_code = grpc.StatusCode.INVALID_ARGUMENT


class InvalidAction(FlywheelException):
    status_code = grpc.StatusCode.INVALID_ARGUMENT


class PermissionDenied(FlywheelException):
    status_code = grpc.StatusCode.PERMISSION_DENIED


class AuthenticationFailed(FlywheelException):
    status_code = grpc.StatusCode.UNAUTHENTICATED


# state conflicts. the caller should re-query before trying again


class ActivationAlreadyOpen(FlywheelException):
    status_code = grpc.StatusCode.ALREADY_EXISTS


class InvalidState(FlywheelException):
    status_code = grpc.StatusCode.FAILED_PRECONDITION


class NotFundedYet(FlywheelException):
    status_code = grpc.StatusCode.FAILED_PRECONDITION


class MaxAttemptsExceeded(FlywheelException):
    status_code = grpc.StatusCode.FAILED_PRECONDITION


class RecordNotFound(FlywheelException):
    status_code = grpc.StatusCode.NOT_FOUND


# transient infrastructure errors. recovered locally with bounded retries


class LedgerException(FlywheelException):
    status_code = grpc.StatusCode.UNAVAILABLE


class TransactionTimeout(LedgerException):
    pass


class TransactionRejected(LedgerException):
    # the node refused the transaction, so it can never land
    pass


class LaunchpadException(FlywheelException):
    status_code = grpc.StatusCode.UNAVAILABLE
