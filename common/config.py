from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from typing import Any

    import grpc


@dataclass(frozen=True)
class GRPCConfig:
    host: str  # "host:port", or "unix://<path>" for a local socket
    max_workers: int
    root_certificates: Optional[str] = None  # client side; system roots when None
    certificate_chain: Optional[str] = None  # server side


@dataclass(frozen=True)
class GRPCServerConfig:  # type: ignore[misc]
    grpc_config: GRPCConfig
    tls_key_file: Optional[str] = None  # not needed if underlying grpc config host is a UDS
    interceptors: "Sequence[grpc.ServerInterceptor[Any, Any]]" = tuple()  # type: ignore[misc]


@dataclass(frozen=True)
class SQLAlchemyConfig:
    uri: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    # mysql closes idle connections after wait_timeout (8 hours by default)
    pool_recycle: timedelta = timedelta(hours=1)
    # seconds a sqlite connection waits on a locked database before raising OperationalError
    sqlite_busy_timeout: timedelta = timedelta(seconds=30)
