import logging
import os
import queue
import signal
import socket
import threading
from types import TracebackType
from typing import Dict, Optional, Type

import requests
import sqlalchemy.orm
from common.utils.grpc_server import GRPCServer
from common.utils.spinner import Spinner
from common.utils.sqlalchemy_engine import make_sqlalchemy_engine
from sqlalchemy.exc import OperationalError

from flywheel.config import BackendConfig
from flywheel.constants import ActivationKind
from flywheel.exceptions import LedgerException
from flywheel.services.activation import ActivationService
from flywheel.services.auth import AuthService
from flywheel.services.token import TokenService
from flywheel.sql.base import Base
from flywheel.utils.activation_executor import ActivationExecutor, RefundHandler
from flywheel.utils.activation_handlers import (
    ActivationHandler,
    MarketMakingHandler,
    TokenLaunchHandler,
)
from flywheel.utils.activation_registry import ActivationRegistry
from flywheel.utils.deposit_watcher import DepositWatcher
from flywheel.utils.jwt_client import JWTClient
from flywheel.utils.launchpad_client import LaunchpadClient
from flywheel.utils.ledger_client import LedgerClient, SolanaLedgerClient
from flywheel.utils.signature_client import SignatureClient

LOGGER = logging.getLogger(__name__)

# errors outside our control; the loop tries again on the next tick
TRANSIENT_LOOP_ERRORS = (
    OperationalError,
    socket.timeout,
    queue.Empty,
    requests.exceptions.ConnectionError,
    LedgerException,
)


class Backend:
    def __init__(
        self,
        config: BackendConfig,
        ledger_client: Optional[LedgerClient] = None,
        refund_handler: Optional[RefundHandler] = None,
    ) -> None:
        self.config = config
        self.sqlalchemy_engine = make_sqlalchemy_engine(config.sqlalchemy_config)
        Base.metadata.create_all(self.sqlalchemy_engine)
        self.sessionmaker = sqlalchemy.orm.sessionmaker(bind=self.sqlalchemy_engine)
        self.ledger_client = ledger_client if ledger_client is not None else SolanaLedgerClient(config.solana_config)
        self.jwt_client = JWTClient(config.jwt_config)
        self.signature_client = SignatureClient(config.challenge_config, self.ledger_client)
        self.launchpad_client = LaunchpadClient(config.launchpad_config)
        self.handlers: Dict[ActivationKind, ActivationHandler] = {
            ActivationKind.TOKEN_LAUNCH: TokenLaunchHandler(self.launchpad_client),
            ActivationKind.MARKET_MAKING: MarketMakingHandler(),
        }
        activation_config = config.activation_config
        self.registry = ActivationRegistry(activation_config.max_attempts)
        self.executor = ActivationExecutor(
            self.sessionmaker,
            self.registry,
            self.ledger_client,
            self.handlers,
            activation_config.executor_workers,
            refund_handler,
        )
        self.deposit_watcher = DepositWatcher(
            self.sessionmaker,
            self.registry,
            self.ledger_client,
            self.executor,
            activation_config.retry_delay,
        )
        self.grpc_server = GRPCServer(config.grpc_server_config)
        self.stopped = threading.Event()

        AuthService(self.sessionmaker, self.jwt_client, self.signature_client, self.grpc_server)
        TokenService(
            self.sessionmaker,
            self.signature_client,
            self.ledger_client,
            config.admin_addresses,
            self.grpc_server,
        )
        ActivationService(
            self.sessionmaker,
            self.jwt_client,
            self.signature_client,
            self.registry,
            self.deposit_watcher,
            self.ledger_client,
            self.handlers,
            activation_config.required_amounts,
            activation_config.ttl,
            self.grpc_server,
        )

        self.deposit_watcher_thread = threading.Thread(target=self.deposit_watcher_loop, name="deposit-watcher")
        self.challenge_sweep_thread = threading.Thread(target=self.challenge_sweep_loop, name="challenge-sweep")

    def deposit_watcher_loop(self) -> None:
        spinner = Spinner(self.config.activation_config.sweep_interval, self.stopped)
        while not self.stopped.is_set():
            if not spinner():
                continue
            try:
                result = self.deposit_watcher.sweep()
                if result.funded or result.expired or result.dispatched:
                    LOGGER.info(
                        "Deposit sweep funded %d, expired %d (refunded %d) and dispatched %d activations",
                        len(result.funded),
                        len(result.expired),
                        len(result.refunded),
                        len(result.dispatched),
                    )
            except TRANSIENT_LOOP_ERRORS:
                LOGGER.warning("Error in the deposit watcher loop, but retrying on next tick", exc_info=True)
            except Exception:  # pylint: disable=broad-except
                LOGGER.error("Fatal exception from the deposit watcher loop", exc_info=True)
                os.killpg(os.getpgid(os.getpid()), signal.SIGTERM)

    def challenge_sweep_loop(self) -> None:
        spinner = Spinner(self.config.challenge_config.sweep_interval, self.stopped)
        while not self.stopped.is_set():
            if not spinner():
                continue
            try:
                with self.sessionmaker() as session:
                    deleted = self.signature_client.sweep_expired(session)
                    session.commit()
                if deleted > 0:
                    LOGGER.info("Deleted %d expired challenges", deleted)
            except TRANSIENT_LOOP_ERRORS:
                LOGGER.warning("Error in the challenge sweep loop, but retrying on next tick", exc_info=True)
            except Exception:  # pylint: disable=broad-except
                LOGGER.error("Fatal exception from the challenge sweep loop", exc_info=True)
                os.killpg(os.getpgid(os.getpid()), signal.SIGTERM)

    def start(self) -> None:
        with self.sessionmaker() as session:
            self.registry.recover_interrupted(session)
            session.commit()
        LOGGER.info("Starting the deposit watcher thread")
        self.deposit_watcher_thread.start()
        LOGGER.info("Starting the challenge sweep thread")
        self.challenge_sweep_thread.start()
        self.grpc_server.start()
        LOGGER.info("Backend started")

    def __enter__(self) -> "Backend":
        self.start()
        return self

    def stop(self) -> None:
        self.stopped.set()
        self.grpc_server.stop()
        LOGGER.info("Joining the deposit watcher thread")
        self.deposit_watcher_thread.join()
        LOGGER.info("Joining the challenge sweep thread")
        self.challenge_sweep_thread.join()
        LOGGER.info("Waiting for in-flight activations")
        self.executor.shutdown()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.stop()
