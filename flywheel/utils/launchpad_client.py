import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import requests

from flywheel.config import LaunchpadConfig
from flywheel.exceptions import LaunchpadException

LOGGER = logging.getLogger(__name__)

LAUNCH_TRANSACTION_PATH = "/token-launch/transaction"

# launch payload field -> launchpad request field
LAUNCH_FIELDS = {
    "name": "tokenName",
    "symbol": "tokenSymbol",
    "description": "tokenDescription",
    "image_url": "tokenImageUrl",
    "twitter_url": "twitterUrl",
    "telegram_url": "telegramUrl",
    "website_url": "websiteUrl",
    "discord_url": "discordUrl",
    "dev_wallet": "devWalletAddress",
    "ops_wallet": "opsWalletAddress",
}


@dataclass(frozen=True)
class LaunchTransaction:
    token_mint: str
    transaction: bytes  # signed and ready to broadcast


class LaunchpadClient:
    def __init__(self, config: LaunchpadConfig) -> None:
        self._config = config

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._config.api_key is not None:
            headers["x-api-key"] = self._config.api_key
        return headers

    def create_launch_transaction(self, payload: Mapping[str, Any]) -> LaunchTransaction:
        body = {LAUNCH_FIELDS[key]: value for key, value in payload.items() if key in LAUNCH_FIELDS}
        url = self._config.base_url.rstrip("/") + LAUNCH_TRANSACTION_PATH
        try:
            resp = requests.post(
                url,
                json=body,
                headers=self._headers(),
                timeout=self._config.timeout.total_seconds(),
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise LaunchpadException(f"launchpad request to {url} failed") from e
        try:
            token_mint = data["tokenMint"]
            transaction = base64.b64decode(data["transaction"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise LaunchpadException("launchpad returned a malformed launch transaction") from e
        if not isinstance(token_mint, str) or len(transaction) == 0:
            raise LaunchpadException("launchpad returned a malformed launch transaction")
        LOGGER.info("Launchpad prepared the launch transaction for %s (%s)", payload.get("symbol"), token_mint)
        return LaunchTransaction(token_mint=token_mint, transaction=transaction)
