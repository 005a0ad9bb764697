from typing import Optional

import grpc

from common.config import GRPCConfig
from common.constants import AUTHORIZATION_METADATA_KEY
from common.utils.client_exception_interceptor import ClientExceptionInterceptor


def _channel_credentials(grpc_config: GRPCConfig) -> grpc.ChannelCredentials:
    if grpc_config.host.startswith("unix://"):
        return grpc.local_channel_credentials(grpc.LocalConnectionType.UDS)
    root_certificates: Optional[bytes] = None
    if grpc_config.root_certificates is not None:
        with open(grpc_config.root_certificates, "rb") as f:
            root_certificates = f.read()
    return grpc.ssl_channel_credentials(root_certificates=root_certificates)


def _jwt_call_credentials(jwt: str) -> grpc.CallCredentials:
    def attach_jwt(context: grpc.AuthMetadataContext, callback: grpc.AuthMetadataPluginCallback) -> None:
        callback(((AUTHORIZATION_METADATA_KEY, jwt),), None)

    return grpc.metadata_call_credentials(attach_jwt, name="jwt")


def make_grpc_channel(grpc_config: GRPCConfig, jwt: Optional[str] = None) -> grpc.Channel:
    """Opens a channel to the backend. With ``jwt``, every call on it is made as that wallet."""
    credentials = _channel_credentials(grpc_config)
    if jwt is not None:
        credentials = grpc.composite_channel_credentials(credentials, _jwt_call_credentials(jwt))
    return grpc.intercept_channel(
        grpc.secure_channel(grpc_config.host, credentials),
        ClientExceptionInterceptor(),
    )
