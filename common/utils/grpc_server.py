import logging
from concurrent.futures import ThreadPoolExecutor
from types import TracebackType
from typing import List, Mapping, Optional, Type

import grpc
from grpc_health.v1.health import HealthServicer
from grpc_health.v1.health_pb2 import HealthCheckResponse
from grpc_health.v1.health_pb2_grpc import add_HealthServicer_to_server

from common.config import GRPCServerConfig
from common.utils.json_rpc import UnaryHandler, make_generic_handler

LOGGER = logging.getLogger(__name__)


class GRPCServer:
    def __init__(self, config: GRPCServerConfig) -> None:
        self.grpc_server = grpc.server(
            ThreadPoolExecutor(config.grpc_config.max_workers),
            interceptors=config.interceptors,  # type: ignore[arg-type]
        )
        self._health_servicer = HealthServicer()
        self._service_names: List[str] = []
        add_HealthServicer_to_server(self._health_servicer, self.grpc_server)
        if config.grpc_config.host.startswith("unix://"):
            server_credentials = grpc.local_server_credentials(local_connect_type=grpc.LocalConnectionType.UDS)
        else:
            assert config.tls_key_file is not None
            with open(config.tls_key_file, "rb") as f:
                tls_key = f.read()
            assert config.grpc_config.certificate_chain is not None
            with open(config.grpc_config.certificate_chain, "rb") as f:
                tls_chain = f.read()
            server_credentials = grpc.ssl_server_credentials([(tls_key, tls_chain)])
        self.grpc_server.add_secure_port(config.grpc_config.host, server_credentials)

    def add_service(self, service_name: str, methods: Mapping[str, UnaryHandler]) -> None:
        LOGGER.info("Registering service %s with methods %s", service_name, sorted(methods))
        self.grpc_server.add_generic_rpc_handlers((make_generic_handler(service_name, methods),))
        self._service_names.append(service_name)

    def start(self) -> None:
        LOGGER.info("Starting the grpc server")
        self.grpc_server.start()
        for service_name in self._service_names:
            LOGGER.info("Setting service %s health status to serving", service_name)
            self._health_servicer.set(service_name, HealthCheckResponse.SERVING)

    def __enter__(self) -> "GRPCServer":
        self.start()
        return self

    def stop(self) -> None:
        for service_name in self._service_names:
            self._health_servicer.set(service_name, HealthCheckResponse.NOT_SERVING)
        LOGGER.info("Stopping the grpc server")
        self.grpc_server.stop(grace=None)

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.stop()
