"""On-chain rule evaluation for auto-validated activities.

evaluate(logs, on_chain_validation_type, validation_config) -> RuleResult

Every rule is "first matching log wins": qualifying logs are checked in
receipt order and the first one that satisfies the rule accepts. Amounts are
never summed across several Transfer logs to reach a threshold; sponsor
configurations rely on that.

Error strings are shown to users verbatim as the proof's rejection reason.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

from chain_client import TransactionLog
from log_decoder import EVENT_CASHBACK, EVENT_TRANSFER, iter_events, logs_for
from models_passports import ONCHAIN_CASHBACK_EVENT, ONCHAIN_TOKEN_TRANSFER, ONCHAIN_USDC_TRANSFER

logger = logging.getLogger(__name__)

DEFAULT_TRANSFER_DECIMALS = 6
TOKEN_TRANSFER_DECIMALS = 18


@dataclass
class RuleResult:
    is_valid: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        out = {"is_valid": self.is_valid, "details": self.details}
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class RuleConfig:
    min_amount: Decimal = Decimal("0")
    decimals: int = DEFAULT_TRANSFER_DECIMALS
    token_addresses: List[str] = field(default_factory=list)
    require_paid: bool = False

    @classmethod
    def from_mapping(cls, raw: Optional[Dict[str, Any]]) -> "RuleConfig":
        """Build from the activity's JSON config (camelCase keys, snake_case accepted)."""
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ValueError("validation config must be an object")

        def pick(camel, snake, default=None):
            if camel in raw:
                return raw[camel]
            return raw.get(snake, default)

        min_amount = pick("minAmount", "min_amount", 0)
        try:
            min_amount = Decimal(str(min_amount if min_amount is not None else 0))
        except InvalidOperation:
            raise ValueError(f"minAmount is not a number: {min_amount!r}")
        if not min_amount.is_finite() or min_amount < 0:
            raise ValueError("minAmount must be a non-negative number")

        decimals = pick("decimals", "decimals", DEFAULT_TRANSFER_DECIMALS)
        try:
            decimals = int(decimals if decimals is not None else DEFAULT_TRANSFER_DECIMALS)
        except (TypeError, ValueError):
            raise ValueError(f"decimals is not an integer: {decimals!r}")
        if decimals < 0 or decimals > 36:
            raise ValueError("decimals must be between 0 and 36")

        addresses = pick("tokenAddresses", "token_addresses", []) or []
        if isinstance(addresses, str):
            addresses = [addresses]
        if not isinstance(addresses, list):
            raise ValueError("tokenAddresses must be a list")

        return cls(
            min_amount=min_amount,
            decimals=decimals,
            token_addresses=[str(a).strip() for a in addresses if str(a).strip()],
            require_paid=_flag(pick("requirePaid", "require_paid", False), "requirePaid"),
        )


def _flag(value, name: str) -> bool:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off", ""):
            return False
        raise ValueError(f"{name} is not a boolean: {value!r}")
    if value is None:
        return False
    if isinstance(value, (bool, int)):
        return bool(value)
    raise ValueError(f"{name} is not a boolean: {value!r}")


def _fmt(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


def _meets_minimum(raw_value: int, minimum: Decimal, decimals: int) -> bool:
    return Decimal(raw_value) >= minimum.scaleb(decimals)


def check_usdc_transfer(logs: List[TransactionLog], cfg: RuleConfig) -> RuleResult:
    """Any ERC20 Transfer whose scaled amount is >= minAmount."""
    if not logs_for(logs, EVENT_TRANSFER):
        return RuleResult(False, "No Transfer events were found in this transaction.")

    minimum = _fmt(cfg.min_amount)
    for event in iter_events(logs, EVENT_TRANSFER):
        amount = Decimal(event.value).scaleb(-cfg.decimals)
        logger.debug("Transfer of %s tokens from %s", _fmt(amount), event.token_address)
        if _meets_minimum(event.value, cfg.min_amount, cfg.decimals):
            return RuleResult(
                True,
                details={
                    "amount": _fmt(amount),
                    "raw_value": str(event.value),
                    "token_address": event.token_address,
                    "event_found": True,
                    "min_amount_required": minimum,
                },
            )

    return RuleResult(
        False,
        f"No transfer of at least {minimum} tokens was found. A minimum of {minimum} is required.",
    )


def check_token_transfer(logs: List[TransactionLog], cfg: RuleConfig) -> RuleResult:
    """A Transfer emitted by one of the configured token contracts."""
    allowed = {a.lower() for a in cfg.token_addresses}
    if not allowed:
        return RuleResult(False, "This activity has no token addresses configured for validation.")

    matching = [log for log in logs_for(logs, EVENT_TRANSFER) if (log.address or "").lower() in allowed]
    if not matching:
        return RuleResult(
            False,
            f"No transfer of the required tokens was found: {', '.join(cfg.token_addresses)}",
        )

    for event in iter_events(matching, EVENT_TRANSFER):
        if cfg.min_amount > 0:
            if _meets_minimum(event.value, cfg.min_amount, TOKEN_TRANSFER_DECIMALS):
                return RuleResult(
                    True,
                    details={
                        "amount": _fmt(Decimal(event.value).scaleb(-TOKEN_TRANSFER_DECIMALS)),
                        "raw_value": str(event.value),
                        "token_address": event.token_address,
                        "event_found": True,
                    },
                )
        elif event.value > 0:
            return RuleResult(
                True,
                details={
                    "amount": str(event.value),
                    "raw_value": str(event.value),
                    "token_address": event.token_address,
                    "event_found": True,
                },
            )

    return RuleResult(
        False,
        "Transfers of the required tokens were found, but none meets the minimum amount "
        f"of {_fmt(cfg.min_amount)}.",
    )


def check_cashback_event(logs: List[TransactionLog], cfg: RuleConfig) -> RuleResult:
    """A sponsor Cashback event, optionally with paid == true."""
    cashback_logs = logs_for(logs, EVENT_CASHBACK)
    if not cashback_logs:
        return RuleResult(False, "No Cashback event was found in this transaction.")

    if not cfg.require_paid:
        first = cashback_logs[0]
        return RuleResult(True, details={"event_found": True, "contract_address": (first.address or "").lower()})

    for event in iter_events(cashback_logs, EVENT_CASHBACK):
        if event.paid is None:
            logger.info("Cashback log from %s has no paid topic; skipping", event.contract_address)
            continue
        if event.paid:
            return RuleResult(
                True,
                details={"event_found": True, "paid": True, "contract_address": event.contract_address},
            )

    return RuleResult(False, 'A Cashback event was found but its "paid" flag is not true.')


RULES: Dict[str, Callable[[List[TransactionLog], RuleConfig], RuleResult]] = {
    ONCHAIN_USDC_TRANSFER: check_usdc_transfer,
    ONCHAIN_TOKEN_TRANSFER: check_token_transfer,
    ONCHAIN_CASHBACK_EVENT: check_cashback_event,
}


def evaluate(logs: Iterable[TransactionLog], on_chain_validation_type: str, config=None) -> RuleResult:
    rule = RULES.get(on_chain_validation_type)
    if rule is None:
        return RuleResult(False, f"Unsupported on-chain validation type: {on_chain_validation_type}")

    try:
        cfg = RuleConfig.from_mapping(config)
    except ValueError as e:
        logger.warning("Invalid validation config %r: %s", config, e)
        return RuleResult(False, f"This activity's validation config is invalid: {e}")

    result = rule(list(logs), cfg)
    logger.info(
        "On-chain rule %s: %s %s",
        on_chain_validation_type,
        "accepted" if result.is_valid else "rejected",
        result.details if result.is_valid else result.error,
    )
    return result
