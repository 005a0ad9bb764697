"""Signed action payloads.

Every privileged request is described by an ``ActionPayload``: a tagged variant of an
action kind plus a JSON body. A challenge commits to the SHA-256 of the canonical
serialization of the payload, so a signature over the challenge message approves that
exact payload and nothing else.

The canonical form is ``{"action": <kind>, "body": <body>}`` encoded as JSON with sorted
keys, compact separators and ASCII escapes. Numbers hash as the client wrote them, so
``1`` and ``1.0`` are different payloads.
"""
import hashlib
import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from flywheel.constants import MANUAL_SELL_PERCENTAGES, ActivationKind
from flywheel.exceptions import InvalidAction

# longest payload rendering embedded into a challenge message
MAX_SUMMARY_LENGTH = 240

# amounts are stored with lamport precision
MAX_AMOUNT_DECIMALS = 9


class ActionKind(Enum):
    AUTHENTICATE = "authenticate"
    UPDATE_CONFIG = "update_config"
    MANUAL_SELL = "manual_sell"
    SUSPEND_TOKEN = "suspend_token"
    REGISTER_TOKEN = "register_token"
    OPEN_ACTIVATION = "open_activation"


@dataclass(frozen=True)
class ActionPayload:
    kind: ActionKind
    body: Mapping[str, Any]

    @classmethod
    def authenticate(cls) -> "ActionPayload":
        return cls(kind=ActionKind.AUTHENTICATE, body={})

    @classmethod
    def from_json(cls, data: Optional[Mapping[str, Any]]) -> "ActionPayload":
        if data is None:
            return cls.authenticate()
        if not isinstance(data, Mapping):
            raise InvalidAction("action must be an object")
        try:
            kind = ActionKind(data.get("kind"))
        except ValueError as e:
            raise InvalidAction(f"unknown action kind {data.get('kind')!r}") from e
        body = data.get("body", {})
        if not isinstance(body, Mapping):
            raise InvalidAction("action body must be an object")
        return cls(kind=kind, body=dict(body))

    def to_json(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "body": dict(self.body)}

    def canonical_bytes(self) -> bytes:
        try:
            serialized = json.dumps(
                {"action": self.kind.value, "body": self.body},
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=True,
                allow_nan=False,
            )
        except (TypeError, ValueError) as e:
            raise InvalidAction("action body is not serializable") from e
        return serialized.encode("utf8")

    def payload_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    def summary(self) -> str:
        if len(self.body) == 0:
            return "(none)"
        rendered = ", ".join(
            f"{key}={json.dumps(self.body[key], sort_keys=True, separators=(',', ':'))}" for key in sorted(self.body)
        )
        if len(rendered) > MAX_SUMMARY_LENGTH:
            rendered = rendered[: MAX_SUMMARY_LENGTH - 3] + "..."
        return rendered


def _require_str(body: Mapping[str, Any], key: str, max_length: int = 128) -> str:
    value = body.get(key)
    if not isinstance(value, str) or len(value) == 0:
        raise InvalidAction(f"{key} must be a non-empty string")
    if len(value) > max_length:
        raise InvalidAction(f"{key} must be at most {max_length} characters")
    return value


def _optional_str(body: Mapping[str, Any], key: str, max_length: int = 512) -> Optional[str]:
    if body.get(key) is None:
        return None
    return _require_str(body, key, max_length)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_decimal(value: Any) -> Decimal:
    amount = Decimal(str(value))
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -MAX_AMOUNT_DECIMALS:
        raise InvalidAction(f"{value} has more than {MAX_AMOUNT_DECIMALS} decimals")
    return amount


def _number_at_least(minimum: float, maximum: Optional[float] = None) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        if not _is_number(value) or value < minimum:
            return False
        return maximum is None or value <= maximum

    return check


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


# field -> (validator, normalizer)
CONFIG_FIELDS: Mapping[str, Tuple[Callable[[Any], bool], Callable[[Any], Any]]] = {
    "flywheel_active": (_is_bool, bool),
    "market_making_enabled": (_is_bool, bool),
    "auto_claim_enabled": (_is_bool, bool),
    "fee_threshold_sol": (_number_at_least(0), _to_decimal),
    "min_buy_amount_sol": (_number_at_least(0), _to_decimal),
    "max_buy_amount_sol": (_number_at_least(0), _to_decimal),
    "max_sell_amount_tokens": (_number_at_least(0), _to_decimal),
    "buy_interval_minutes": (_number_at_least(1), int),
    "slippage_bps": (_number_at_least(0, 5000), int),
    "algorithm_mode": (lambda value: value in ("simple", "smart", "rebalance"), str),
    "target_sol_allocation": (_number_at_least(0, 100), int),
    "target_token_allocation": (_number_at_least(0, 100), int),
    "rebalance_threshold": (_number_at_least(1, 50), int),
    "use_twap": (_is_bool, bool),
    "twap_threshold_usd": (_number_at_least(0), _to_decimal),
}


def validate_config_update(body: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
    token_mint = _require_str(body, "token_mint")
    config = body.get("config")
    if not isinstance(config, Mapping) or len(config) == 0:
        raise InvalidAction("config must be a non-empty object")
    validated: Dict[str, Any] = {}
    for key, value in config.items():
        if key not in CONFIG_FIELDS:
            raise InvalidAction(f"unknown config field {key!r}")
        validator, normalizer = CONFIG_FIELDS[key]
        if not validator(value):
            raise InvalidAction(f"invalid value for {key}: {value!r}")
        validated[key] = normalizer(value)
    min_buy = validated.get("min_buy_amount_sol")
    max_buy = validated.get("max_buy_amount_sol")
    if min_buy is not None and max_buy is not None and min_buy > max_buy:
        raise InvalidAction("min_buy_amount_sol must not exceed max_buy_amount_sol")
    return token_mint, validated


def validate_manual_sell(body: Mapping[str, Any]) -> Tuple[str, int]:
    token_mint = _require_str(body, "token_mint")
    percentage = body.get("percentage")
    if not _is_number(percentage) or percentage not in MANUAL_SELL_PERCENTAGES:
        raise InvalidAction(f"percentage must be one of {sorted(MANUAL_SELL_PERCENTAGES)}")
    return token_mint, int(percentage)


def validate_suspend_token(body: Mapping[str, Any]) -> Tuple[str, str]:
    token_mint = _require_str(body, "token_mint")
    reason = _optional_str(body, "reason") or "suspended by admin"
    return token_mint, reason


@dataclass(frozen=True)
class TokenRegistration:
    token_mint: str
    symbol: str
    name: str
    dev_wallet: str
    ops_wallet: str


def validate_register_token(body: Mapping[str, Any]) -> TokenRegistration:
    return TokenRegistration(
        token_mint=_require_str(body, "token_mint"),
        symbol=_require_str(body, "symbol", max_length=16),
        name=_require_str(body, "name", max_length=64),
        dev_wallet=_require_str(body, "dev_wallet"),
        ops_wallet=_require_str(body, "ops_wallet"),
    )


LAUNCH_OPTIONAL_FIELDS = ("description", "image_url", "twitter_url", "telegram_url", "website_url", "discord_url")


def validate_launch_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    validated: Dict[str, Any] = {
        "name": _require_str(payload, "name", max_length=64),
        "symbol": _require_str(payload, "symbol", max_length=16),
        "dev_wallet": _require_str(payload, "dev_wallet"),
        "ops_wallet": _require_str(payload, "ops_wallet"),
    }
    for key in LAUNCH_OPTIONAL_FIELDS:
        value = _optional_str(payload, key)
        if value is not None:
            validated[key] = value
    unknown = set(payload) - set(validated) - set(LAUNCH_OPTIONAL_FIELDS)
    if len(unknown) > 0:
        raise InvalidAction(f"unknown launch fields {sorted(unknown)}")
    return validated


def validate_market_making_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(payload) - {"token_mint"}
    if len(unknown) > 0:
        raise InvalidAction(f"unknown market making fields {sorted(unknown)}")
    return {"token_mint": _require_str(payload, "token_mint")}


def validate_open_activation(body: Mapping[str, Any]) -> Tuple[ActivationKind, Dict[str, Any]]:
    try:
        kind = ActivationKind(body.get("kind"))
    except ValueError as e:
        raise InvalidAction(f"unknown activation kind {body.get('kind')!r}") from e
    payload = body.get("payload")
    if not isinstance(payload, Mapping):
        raise InvalidAction("payload must be an object")
    if kind == ActivationKind.TOKEN_LAUNCH:
        return kind, validate_launch_payload(payload)
    return kind, validate_market_making_payload(payload)


def validate_action(action: ActionPayload) -> None:
    """Rejects a malformed body before a challenge is issued for it"""
    if action.kind == ActionKind.AUTHENTICATE:
        if len(action.body) != 0:
            raise InvalidAction("authenticate takes no body")
    elif action.kind == ActionKind.UPDATE_CONFIG:
        validate_config_update(action.body)
    elif action.kind == ActionKind.MANUAL_SELL:
        validate_manual_sell(action.body)
    elif action.kind == ActionKind.SUSPEND_TOKEN:
        validate_suspend_token(action.body)
    elif action.kind == ActionKind.REGISTER_TOKEN:
        validate_register_token(action.body)
    elif action.kind == ActionKind.OPEN_ACTIVATION:
        validate_open_activation(action.body)
    else:
        raise InvalidAction(f"unsupported action {action.kind}")
