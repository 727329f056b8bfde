"""Broker data models — typed representations of gateway API objects."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Instrument:
    """A tradable asset and the expirations it currently offers."""

    id: int
    name: str
    expirations: tuple[int, ...] = field(default_factory=tuple)

    @property
    def tradable(self) -> bool:
        return bool(self.expirations)


@dataclass(frozen=True)
class OrderReceipt:
    """Gateway acknowledgement of a submitted binary option."""

    order_id: str
    expires_at: float  # epoch seconds
    expected_profit: float


@dataclass(frozen=True)
class ClosedPosition:
    """A settled position delivered by the close-event stream."""

    external_id: str
    status: str
    pnl: float
    close_price: float
    open_price: float


@dataclass(frozen=True)
class Balance:
    """Account balance."""

    amount: float
    currency: str
