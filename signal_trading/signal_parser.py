"""Inbound signal parsing and validation.

The signal feed delivers JSON-like payloads::

    {
        "token": "COS (contentos)",
        "tokenId": "contentos",
        "signal": "Buy",
        "currentPrice": 0.0061,
        "targets": [0.0067, 0.0072],
        "stopLoss": 0.0055,
        "maxExitTime": "2025-06-01T00:00:00Z",
        "timeline": "Short-term (1-7 days)",
        "tradeTip": "...",
    }

parse_signal() validates the payload and returns an immutable Signal.
Anything malformed raises ValidationError and never reaches admission.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ValidationError
from .logging_setup import logger
from .models import Direction, Signal, parse_timestamp

_SYMBOL_RE = re.compile(r"^([A-Z0-9]+)")


class SignalPayload(BaseModel):
    """Wire shape of an inbound signal."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    token: str = Field(min_length=1)
    token_id: str = Field(alias="tokenId", min_length=1)
    signal: Direction
    current_price: Decimal = Field(alias="currentPrice", gt=0)
    targets: List[Decimal] = Field(min_length=1)
    stop_loss: Decimal = Field(alias="stopLoss", gt=0)
    max_exit_time: datetime = Field(alias="maxExitTime")
    token_mentioned: str = Field(default="", alias="tokenMentioned")

    @field_validator("signal", mode="before")
    @classmethod
    def _parse_direction(cls, value: Any) -> Direction:
        if isinstance(value, Direction):
            return value
        return Direction.parse(str(value))

    @field_validator("max_exit_time", mode="before")
    @classmethod
    def _parse_deadline(cls, value: Any) -> datetime:
        return parse_timestamp(value)

    @field_validator("targets")
    @classmethod
    def _positive_targets(cls, value: List[Decimal]) -> List[Decimal]:
        if any(t <= 0 for t in value):
            raise ValueError("targets must be positive")
        return value

    @model_validator(mode="after")
    def _check_direction(self) -> "SignalPayload":
        price = self.current_price
        if self.signal is Direction.BUY:
            if any(t <= price for t in self.targets):
                raise ValueError("BUY targets must be above the current price")
            if self.stop_loss >= price:
                raise ValueError("BUY stop loss must be below the current price")
            if list(self.targets) != sorted(self.targets):
                raise ValueError("BUY targets must be in ascending order")
        elif self.signal is Direction.PUT_OPTIONS:
            if any(t >= price for t in self.targets):
                raise ValueError("PUT targets must be below the current price")
            if self.stop_loss <= price:
                raise ValueError("PUT stop loss must be above the current price")
            if list(self.targets) != sorted(self.targets, reverse=True):
                raise ValueError("PUT targets must be in descending order")
        elif self.signal is Direction.HOLD:
            pass
        else:
            raise ValueError(f"Unhandled direction {self.signal}")
        return self


def token_symbol(token: str, fallback: str = "") -> str:
    """Extract the ticker from a display name such as "COS (contentos)"."""
    match = _SYMBOL_RE.match(token.strip())
    if match:
        return match.group(1)
    return fallback or token.strip()


def parse_signal(payload: Dict[str, Any]) -> Signal:
    """Validate an inbound payload and build a Signal.

    Raises:
        ValidationError: If a required field is missing or inconsistent
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"Signal payload must be a mapping, got {type(payload).__name__}")
    try:
        parsed = SignalPayload.model_validate(payload)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or None
        logger.warning(f"Signal rejected | field={loc} error={first.get('msg')}")
        raise ValidationError(f"Invalid signal: {first.get('msg')}", field=loc) from e

    metadata = dict(parsed.model_extra or {})
    metadata["display_name"] = parsed.token
    signal = Signal(
        token=token_symbol(parsed.token, parsed.token_mentioned),
        token_id=parsed.token_id,
        direction=parsed.signal,
        current_price=parsed.current_price,
        targets=tuple(parsed.targets),
        stop_loss=parsed.stop_loss,
        max_exit_time=parsed.max_exit_time,
        metadata=metadata,
    )
    logger.info(f"Signal parsed | {signal_summary(signal)}")
    return signal


def signal_summary(signal: Signal) -> str:
    """One-line description of a signal for logs."""
    targets = ", ".join(f"TP{i + 1}={t}" for i, t in enumerate(signal.targets))
    return (
        f"{signal.direction.value} {signal.token} ({signal.token_id}) @ {signal.current_price} "
        f"| {targets} | SL={signal.stop_loss} | exit_by={signal.max_exit_time.isoformat()}"
    )
