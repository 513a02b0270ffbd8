"""
Weighted-average cost ledger for a single (wallet, market, outcome).

Pure state machine with no storage access. A holding is one of
Flat, Long or Short; `apply_fill` covers every (holding x side)
combination and `settle` realises whatever is left at a resolution price.

Invariants kept by every transition:
    realized + unrealized(mark) == signed_shares * mark - total_cost - total_fees
    Flat <=> no shares and no average price
"""

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Tuple, Union

from wallet_pnl.database.models import TradeSide
from wallet_pnl.errors import IntegrityViolation

# Share quantities within this distance of zero are treated as zero
SHARE_EPSILON = 1e-9


@dataclass(frozen=True)
class Flat:
    pass


@dataclass(frozen=True)
class Long:
    shares: float
    avg_price: float


@dataclass(frozen=True)
class Short:
    shares: float  # magnitude, always positive
    avg_price: float


Holding = Union[Flat, Long, Short]
FLAT = Flat()


@dataclass(frozen=True)
class Fill:
    """One execution as seen by the ledger"""
    side: TradeSide
    price: float
    size: float
    fee: float = 0.0


@dataclass(frozen=True)
class LedgerState:
    holding: Holding = field(default=FLAT)
    realized_pnl: float = 0.0
    total_cost: float = 0.0
    total_fees: float = 0.0

    @property
    def signed_shares(self) -> float:
        if isinstance(self.holding, Long):
            return self.holding.shares
        if isinstance(self.holding, Short):
            return -self.holding.shares
        return 0.0

    @property
    def avg_price(self) -> Optional[float]:
        if isinstance(self.holding, Flat):
            return None
        return self.holding.avg_price

    @property
    def is_open(self) -> bool:
        return not isinstance(self.holding, Flat)


def holding_from_shares(shares: float, avg_price: Optional[float]) -> Holding:
    """Rebuild the tagged holding from a signed share count"""
    if abs(shares) <= SHARE_EPSILON or avg_price is None:
        return FLAT
    if shares > 0:
        return Long(shares, avg_price)
    return Short(-shares, avg_price)


def _weighted(shares: float, avg: float, size: float, price: float) -> float:
    return (shares * avg + size * price) / (shares + size)


def _reduce(holding: Holding, remaining: float) -> Holding:
    if remaining <= SHARE_EPSILON:
        return FLAT
    return replace(holding, shares=remaining)


def apply_fill(
    state: LedgerState,
    side: TradeSide,
    price: float,
    size: float,
    fee: float = 0.0,
    allow_short: bool = False,
) -> LedgerState:
    """
    Apply one fill and return the new state.

    Raises:
        IntegrityViolation: non-positive size, negative fee, or a SELL that
            would leave a negative position while shorting is disabled.
            The input state is never modified.
    """
    if size <= SHARE_EPSILON:
        raise IntegrityViolation(f"fill size must be positive, got {size}")
    if fee < 0:
        raise IntegrityViolation(f"fill fee must not be negative, got {fee}")

    holding = state.holding
    realized = state.realized_pnl

    if isinstance(holding, Flat):
        if side == TradeSide.BUY:
            new_holding: Holding = Long(size, price)
        elif allow_short:
            new_holding = Short(size, price)
        else:
            raise IntegrityViolation(
                f"SELL {size:.4f} with no position (short positions disabled)"
            )

    elif isinstance(holding, Long):
        if side == TradeSide.BUY:
            new_holding = Long(holding.shares + size, _weighted(holding.shares, holding.avg_price, size, price))
        else:
            closing = min(size, holding.shares)
            excess = size - closing
            if excess > SHARE_EPSILON and not allow_short:
                raise IntegrityViolation(
                    f"SELL {size:.4f} exceeds long position of {holding.shares:.4f}"
                )
            realized += closing * (price - holding.avg_price)
            if excess > SHARE_EPSILON:
                new_holding = Short(excess, price)
            else:
                new_holding = _reduce(holding, holding.shares - closing)

    else:
        if side == TradeSide.SELL:
            new_holding = Short(holding.shares + size, _weighted(holding.shares, holding.avg_price, size, price))
        else:
            closing = min(size, holding.shares)
            excess = size - closing
            realized += closing * (holding.avg_price - price)
            if excess > SHARE_EPSILON:
                new_holding = Long(excess, price)
            else:
                new_holding = _reduce(holding, holding.shares - closing)

    fill_cost = price * size if side == TradeSide.BUY else -price * size
    return LedgerState(
        holding=new_holding,
        realized_pnl=realized - fee,
        total_cost=state.total_cost + fill_cost,
        total_fees=state.total_fees + fee,
    )


def settle(state: LedgerState, price: float) -> LedgerState:
    """Close out the holding at the resolution price"""
    if not state.is_open:
        return state
    realized = state.realized_pnl + state.signed_shares * (price - state.avg_price)
    return replace(state, holding=FLAT, realized_pnl=realized)


def unrealized_pnl(state: LedgerState, mark: Optional[float]) -> float:
    """Mark-to-market PnL of the open holding; zero when flat or unpriced"""
    if not state.is_open or mark is None:
        return 0.0
    return state.signed_shares * (mark - state.avg_price)


def replay(
    fills: Iterable[Fill],
    allow_short: bool = False,
    initial: Optional[LedgerState] = None,
) -> Tuple[LedgerState, List[Tuple[Fill, str]]]:
    """
    Fold fills into a state from scratch.

    Fills that raise IntegrityViolation are skipped and returned alongside
    the reason so the caller can park them.
    """
    state = initial or LedgerState()
    rejected: List[Tuple[Fill, str]] = []
    for fill in fills:
        try:
            state = apply_fill(state, fill.side, fill.price, fill.size, fill.fee, allow_short)
        except IntegrityViolation as e:
            rejected.append((fill, str(e)))
    return state, rejected
