# src/models/watch.py

"""Price watch (alert) and notification event models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from src.errors import InvalidWatchError
from src.models.quote import Availability

_CENTS = Decimal("0.01")


class WatchKind(str, Enum):
    """Trigger condition family."""

    ABSOLUTE_DROP = "absolute_drop"
    PERCENTAGE_DROP = "percentage_drop"
    RESTOCK = "restock"


class WatchState(str, Enum):
    """Watch lifecycle state."""

    ACTIVE = "active"
    TRIGGERED = "triggered"
    PAUSED = "paused"


@dataclass(frozen=True)
class NotificationChannels:
    """Per-watch delivery preferences."""

    email: bool = True
    push: bool = True
    in_app: bool = True

    def enabled(self) -> list[str]:
        """Names of the channels switched on."""
        return [
            name
            for name, on in (
                ("email", self.email),
                ("push", self.push),
                ("in_app", self.in_app),
            )
            if on
        ]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Random hex identifier for watches and events."""
    return uuid.uuid4().hex


@dataclass
class Watch:
    """A user's trigger condition on one product."""

    owner_id: str
    product_id: str
    kind: WatchKind
    baseline_price: Decimal | None = None
    target_price: Decimal | None = None
    threshold_percent: Decimal | None = None
    id: str = field(default_factory=new_id)
    state: WatchState = WatchState.ACTIVE
    triggered_price: Decimal | None = None
    triggered_at: datetime | None = None
    trigger_count: int = 0
    last_checked_at: datetime | None = None
    last_availability: Availability | None = None
    channels: NotificationChannels = field(
        default_factory=NotificationChannels
    )
    product_name: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def validate(self) -> None:
        """Reject watches whose kind is missing its parameters."""
        if self.kind is WatchKind.ABSOLUTE_DROP:
            if self.target_price is None or self.target_price <= 0:
                raise InvalidWatchError(
                    "absolute_drop watch needs a positive target price"
                )
        elif self.kind is WatchKind.PERCENTAGE_DROP:
            if self.threshold_percent is None or not (
                0 < self.threshold_percent <= 100
            ):
                raise InvalidWatchError(
                    "percentage_drop watch needs a threshold in (0, 100]"
                )
            if self.baseline_price is None or self.baseline_price <= 0:
                raise InvalidWatchError(
                    "percentage_drop watch needs a positive baseline price"
                )

    @property
    def is_active(self) -> bool:
        return self.state is WatchState.ACTIVE


@dataclass(frozen=True)
class NotificationEvent:
    """Emitted once per ``active -> triggered`` transition."""

    watch_id: str
    owner_id: str
    product_id: str
    kind: WatchKind
    old_price: Decimal | None
    new_price: Decimal
    channels: NotificationChannels
    title: str
    message: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def savings(self) -> Decimal | None:
        """``old - new`` rounded to cents, floored at zero."""
        if self.old_price is None:
            return None
        diff = (self.old_price - self.new_price).quantize(
            _CENTS, rounding=ROUND_HALF_UP
        )
        return max(diff, Decimal("0.00"))

    @property
    def percentage_drop(self) -> Decimal | None:
        """Drop relative to the old price, in percent."""
        if self.old_price is None or self.old_price <= 0:
            return None
        pct = (self.old_price - self.new_price) / self.old_price * 100
        return pct.quantize(_CENTS, rounding=ROUND_HALF_UP)

    @classmethod
    def for_trigger(
        cls, watch: Watch, new_price: Decimal, at: datetime
    ) -> "NotificationEvent":
        """Build the event describing *watch* firing at *new_price*."""
        label = watch.product_name or watch.product_id
        if watch.kind is WatchKind.RESTOCK:
            title = f"Back in stock: {label}"
            message = f"{label} is back in stock at ${new_price}"
        else:
            title = f"Price alert: {label}"
            was = (
                f" (was ${watch.baseline_price})"
                if watch.baseline_price is not None
                else ""
            )
            message = f"{label} dropped to ${new_price}{was}"
        return cls(
            watch_id=watch.id,
            owner_id=watch.owner_id,
            product_id=watch.product_id,
            kind=watch.kind,
            old_price=watch.baseline_price,
            new_price=new_price,
            channels=watch.channels,
            title=title,
            message=message,
            created_at=at,
        )

    def to_dict(self) -> dict[str, object]:
        """Serialise to JSON-safe primitives."""
        savings = self.savings
        pct = self.percentage_drop
        return {
            "id": self.id,
            "watch_id": self.watch_id,
            "owner_id": self.owner_id,
            "product_id": self.product_id,
            "kind": self.kind.value,
            "old_price": (
                str(self.old_price) if self.old_price is not None else None
            ),
            "new_price": str(self.new_price),
            "savings": str(savings) if savings is not None else None,
            "percentage_drop": str(pct) if pct is not None else None,
            "channels": self.channels.enabled(),
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }
