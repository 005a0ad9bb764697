from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from common.config import GRPCServerConfig, SQLAlchemyConfig

from flywheel.constants import ActivationKind


@dataclass(frozen=True)
class ChallengeConfig:
    challenge_duration: timedelta
    rate_limit_window: timedelta
    max_challenges_per_window: int
    message_header: str = "ClaudeWheel Authorization"
    sweep_interval: timedelta = timedelta(minutes=1)


@dataclass(frozen=True)
class JWTConfig:
    secret: str
    auth_duration: timedelta
    issuer: str
    algorithm: str = "HS256"


@dataclass(frozen=True)
class SolanaConfig:
    rpc_url: str
    commitment: str
    request_timeout: timedelta
    confirmation_timeout: timedelta
    confirmation_poll_interval: timedelta = timedelta(seconds=1)


@dataclass(frozen=True)
class LaunchpadConfig:
    base_url: str
    timeout: timedelta
    api_key: Optional[str] = None


@dataclass(frozen=True)
class ActivationConfig:
    required_amounts: Mapping[ActivationKind, Decimal]
    ttl: timedelta
    max_attempts: int
    retry_delay: timedelta
    sweep_interval: timedelta
    executor_workers: int


@dataclass(frozen=True)
class BackendConfig:
    sqlalchemy_config: SQLAlchemyConfig
    grpc_server_config: GRPCServerConfig
    challenge_config: ChallengeConfig
    jwt_config: JWTConfig
    solana_config: SolanaConfig
    launchpad_config: LaunchpadConfig
    activation_config: ActivationConfig
    admin_addresses: Sequence[str] = field(default_factory=tuple)
