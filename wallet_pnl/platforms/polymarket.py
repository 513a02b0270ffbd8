"""
Polymarket provider - Data API (trades, positions) + CLOB API (markets, prices)
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from wallet_pnl.database.models import MarketStatus, TradeSide
from wallet_pnl.errors import MalformedTradeError, UpstreamError
from .base import DataProvider, RawMarket, RawPosition, RawTrade, TradeBatch

# Seconds-vs-milliseconds cutoff: 2100-01-01 in seconds
_MAX_SECONDS_TIMESTAMP = 4102444800

TRADES_PAGE_SIZE = 500
POSITIONS_PAGE_SIZE = 500
MAX_PAGINATED_ITEMS = 100_000
MARKET_FETCH_CONCURRENCY = 10


class RateLimitedError(aiohttp.ClientError):
    """HTTP 429 from upstream"""


def _first(item: dict, *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(raw: Any) -> datetime:
    """Unix seconds, unix milliseconds or ISO-8601 -> naive UTC datetime"""
    if isinstance(raw, (int, float)) or (isinstance(raw, str) and raw.strip().isdigit()):
        value = float(raw)
        if value >= _MAX_SECONDS_TIMESTAMP:
            value /= 1000.0
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(raw, str):
        parsed = datetime.fromisoformat(raw.replace('Z', '+00:00'))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    raise ValueError(f"Unsupported timestamp {raw!r}")


def parse_side(raw: Any) -> TradeSide:
    side = str(raw or "").upper()
    if "SELL" in side:
        return TradeSide.SELL
    if "BUY" in side:
        return TradeSide.BUY
    raise ValueError(f"Unknown side {raw!r}")


def parse_trade_item(item: dict, source: str = "polymarket-data-api") -> RawTrade:
    """
    Normalize a Data API trade record.

    Raises:
        MalformedTradeError: if a required field is missing or out of range
    """
    if not isinstance(item, dict):
        raise MalformedTradeError(f"trade record is a {type(item).__name__}, not an object")

    tx_hash = _first(item, "transactionHash", "transaction_hash", "txHash", "tx_hash")
    if not tx_hash:
        raise MalformedTradeError("trade is missing a transaction hash")

    condition_id = _first(item, "conditionId", "condition_id")
    if not condition_id:
        raise MalformedTradeError(f"trade {tx_hash} is missing a condition id")

    raw_time = _first(item, "timestamp", "matchTime", "match_time", "createdAt", "created_at")
    if raw_time is None:
        raise MalformedTradeError(f"trade {tx_hash} is missing a timestamp")

    raw_price = _first(item, "price", "avgPrice")
    if raw_price is None:
        raise MalformedTradeError(f"trade {tx_hash} is missing a price")

    try:
        block_time = parse_timestamp(raw_time)
        side = parse_side(_first(item, "side", "type"))
        price = float(raw_price)
        size = float(_first(item, "size", "amount", "shares") or 0)
        fee = float(_first(item, "fee", "fees") or 0)
        outcome = int(_first(item, "outcomeIndex", "outcome_index") or 0)
        log_index = _first(item, "logIndex", "log_index")
        log_index = int(log_index) if log_index is not None else None
        block_number = _first(item, "blockNumber", "block_number")
        block_number = int(block_number) if block_number is not None else None
    except (TypeError, ValueError) as e:
        raise MalformedTradeError(f"trade {tx_hash}: {e}") from e

    if size <= 0:
        raise MalformedTradeError(f"trade {tx_hash} has non-positive size {size}")
    if price < 0 or price > 1:
        raise MalformedTradeError(f"trade {tx_hash} has price {price} outside [0, 1]")
    if fee < 0:
        raise MalformedTradeError(f"trade {tx_hash} has negative fee {fee}")
    if outcome < 0:
        raise MalformedTradeError(f"trade {tx_hash} has negative outcome index")

    return RawTrade(
        tx_hash=str(tx_hash).lower(),
        log_index=log_index,
        block_time=block_time,
        block_number=block_number,
        condition_id=str(condition_id),
        outcome=outcome,
        side=side,
        price=price,
        size=size,
        fee=fee,
        market_title=item.get("title"),
        market_slug=item.get("slug"),
        source=source,
        raw_data=item,
    )


def drop_duplicate_records(trades: List[RawTrade]) -> List[RawTrade]:
    """
    Remove repeated copies of the same upstream record.

    Offset pages over a newest-first feed shift when a trade lands between
    requests, so the tail of one page can reappear at the head of the next.
    """
    seen = set()
    unique: List[RawTrade] = []
    for trade in trades:
        key = (
            trade.tx_hash, trade.log_index, trade.condition_id, trade.outcome,
            trade.side.value, trade.price, trade.size, trade.block_time,
        )
        if key in seen:
            continue
        seen.add(key)
        unique.append(trade)
    return unique


def assign_sequences(trades: List[RawTrade]) -> List[RawTrade]:
    """
    Fill in missing intra-transaction sequence numbers.

    A single transaction can carry several fills for the same wallet. When the
    upstream record has no log index, fills of one transaction are ordered by
    their content so the derived index is stable across re-fetches.
    """
    by_tx: Dict[str, List[RawTrade]] = defaultdict(list)
    for trade in trades:
        if trade.log_index is None:
            by_tx[trade.tx_hash].append(trade)

    for fills in by_tx.values():
        fills.sort(key=lambda t: (t.condition_id, t.outcome, t.side.value, t.price, t.size, t.fee))
        for seq, fill in enumerate(fills):
            fill.log_index = seq

    return trades


def _oldest_timestamp(items: List[Any]) -> Optional[datetime]:
    """Earliest parseable timestamp on a page of trade records"""
    oldest = None
    for item in items:
        if not isinstance(item, dict):
            continue
        raw = _first(item, "timestamp", "matchTime", "match_time", "createdAt", "created_at")
        if raw is None:
            continue
        try:
            ts = parse_timestamp(raw)
        except (TypeError, ValueError):
            continue
        if oldest is None or ts < oldest:
            oldest = ts
    return oldest


def parse_market(data: dict) -> Optional[RawMarket]:
    """Parse a CLOB /markets/{condition_id} record"""
    condition_id = data.get("condition_id") or data.get("conditionId")
    if not condition_id:
        logger.warning("Market record missing condition_id")
        return None

    tokens = data.get("tokens") or []

    status = MarketStatus.OPEN
    if data.get("closed") or data.get("archived"):
        has_winner = any(t.get("winner") for t in tokens)
        status = MarketStatus.RESOLVED if has_winner else MarketStatus.CLOSED
    elif not data.get("active", True) or not data.get("accepting_orders", True):
        status = MarketStatus.CLOSED

    resolution_prices = None
    if status == MarketStatus.RESOLVED:
        resolution_prices = [1.0 if t.get("winner") else 0.0 for t in tokens]

    end_time = None
    if data.get("end_date_iso"):
        try:
            end_time = parse_timestamp(data["end_date_iso"])
        except ValueError:
            logger.debug(f"Unparseable end date for {condition_id}: {data['end_date_iso']}")

    return RawMarket(
        condition_id=condition_id,
        title=data.get("question") or "Unknown Market",
        description=data.get("description") or "",
        status=status,
        outcomes=[
            {
                "name": t.get("outcome") or f"Outcome {i}",
                "index": i,
                "token_id": t.get("token_id"),
            }
            for i, t in enumerate(tokens)
        ],
        end_time=end_time,
        resolution_prices=resolution_prices,
    )


def parse_position(item: dict) -> RawPosition:
    """Parse a Data API /positions record"""
    outcome_name = str(item.get("outcome") or "")
    if item.get("outcomeIndex") is not None:
        outcome = int(item["outcomeIndex"])
    else:
        outcome = 1 if outcome_name.upper() in ("NO", "DOWN", "1") else 0

    return RawPosition(
        condition_id=item["conditionId"],
        asset=item.get("asset"),
        outcome=outcome,
        outcome_name=outcome_name or None,
        size=float(item.get("size") or 0),
        avg_price=float(item.get("avgPrice") or 0),
        initial_value=float(item.get("initialValue") or 0),
        current_value=float(item.get("currentValue") or 0),
        cash_pnl=float(item.get("cashPnl") or 0),
        percent_pnl=float(item.get("percentPnl") or 0),
        market_title=item.get("title"),
    )


class PolymarketProvider(DataProvider):
    """
    Polymarket client for ledger ingestion.

    Uses:
    - Data API for wallet trades and venue-computed positions
    - CLOB API for market metadata, resolution and midpoint prices
    """

    def __init__(self, config: dict, session: Optional[aiohttp.ClientSession] = None):
        self.data_api_url = config.get('data_api_url', 'https://data-api.polymarket.com').rstrip('/')
        self.clob_url = config.get('clob_url', 'https://clob.polymarket.com').rstrip('/')
        self.request_timeout = float(config.get('request_timeout', 30))

        self._session = session
        self._owns_session = session is None

    @property
    def name(self) -> str:
        return "polymarket"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={
                    'Accept': 'application/json',
                    'User-Agent': 'WalletPnL/1.0',
                },
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the session if we own it"""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ==================== REST helpers ====================

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        """GET with retry logic on transient errors"""
        session = await self._get_session()
        async with session.get(url, params=params) as response:
            if response.status == 429:
                retry_after = int(response.headers.get('Retry-After', 2))
                logger.warning(f"Rate limited, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                raise RateLimitedError("Rate limited")

            if response.status == 404:
                return None

            response.raise_for_status()
            return await response.json()

    async def _request(self, url: str, params: Optional[dict] = None) -> Any:
        try:
            return await self._get_json(url, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"GET {url} failed: {e!r}") from e
        except ValueError as e:
            raise UpstreamError(f"GET {url} returned an undecodable body: {e}") from e

    # ==================== DataProvider ====================

    async def fetch_trades(
        self,
        address: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> TradeBatch:
        """Fetch trades for a wallet with offset pagination"""
        items = await self.fetch_trade_items(address, since)
        batch = TradeBatch()
        for item in items:
            try:
                trade = parse_trade_item(item)
            except MalformedTradeError as e:
                logger.debug(f"Skipping malformed trade: {e}")
                batch.malformed.append(str(e))
                continue
            if trade.block_time < since or (until and trade.block_time > until):
                continue
            batch.trades.append(trade)

        batch.trades = assign_sequences(drop_duplicate_records(batch.trades))
        return batch

    async def fetch_trade_items(self, address: str, since: Optional[datetime] = None) -> List[dict]:
        """
        Raw Data API trade records for a wallet, newest first.

        Paging stops at the first page that reaches back past `since`.
        """
        address = address.lower()
        items: List[dict] = []
        offset = 0

        while offset < MAX_PAGINATED_ITEMS:
            data = await self._request(
                f"{self.data_api_url}/trades",
                params={"user": address, "limit": TRADES_PAGE_SIZE, "offset": offset},
            )

            if isinstance(data, dict):
                data = data.get("data") or data.get("trades") or []
            if not data:
                break
            if not isinstance(data, list):
                raise UpstreamError(f"/trades returned {type(data).__name__}, expected a list")

            items.extend(data)

            if len(data) < TRADES_PAGE_SIZE:
                break
            if since is not None:
                oldest = _oldest_timestamp(data)
                if oldest is not None and oldest < since:
                    break
            offset += TRADES_PAGE_SIZE

        logger.debug(f"Fetched {len(items)} trade records for {address[:10]}...")
        return items

    async def fetch_markets(self, condition_ids: List[str]) -> Dict[str, RawMarket]:
        """Fetch market metadata in small concurrent batches"""
        markets: Dict[str, RawMarket] = {}

        for i in range(0, len(condition_ids), MARKET_FETCH_CONCURRENCY):
            batch = condition_ids[i:i + MARKET_FETCH_CONCURRENCY]
            results = await asyncio.gather(
                *(self._request(f"{self.clob_url}/markets/{cid}") for cid in batch),
                return_exceptions=True,
            )

            for cid, result in zip(batch, results):
                if isinstance(result, UpstreamError):
                    logger.warning(f"Market fetch failed for {cid[:16]}...: {result}")
                    continue
                if isinstance(result, Exception):
                    raise result
                if not result:
                    continue
                market = parse_market(result)
                if market:
                    markets[market.condition_id] = market

        return markets

    async def fetch_prices(self, token_ids: List[str]) -> Dict[str, float]:
        """Midpoint price per outcome token"""
        prices: Dict[str, float] = {}

        for i in range(0, len(token_ids), MARKET_FETCH_CONCURRENCY):
            batch = token_ids[i:i + MARKET_FETCH_CONCURRENCY]
            results = await asyncio.gather(
                *(self._request(f"{self.clob_url}/midpoint", params={"token_id": tid}) for tid in batch),
                return_exceptions=True,
            )
            for token_id, result in zip(batch, results):
                if isinstance(result, UpstreamError):
                    logger.debug(f"No midpoint for {token_id[:16]}...: {result}")
                    continue
                if isinstance(result, Exception):
                    raise result
                if result and result.get("mid") is not None:
                    prices[token_id] = float(result["mid"])

        return prices

    async def fetch_positions(self, address: str) -> List[RawPosition]:
        """Venue-reported positions, including the venue's PnL figures"""
        address = address.lower()
        positions: List[RawPosition] = []
        offset = 0

        while offset < MAX_PAGINATED_ITEMS:
            data = await self._request(
                f"{self.data_api_url}/positions",
                params={"user": address, "limit": POSITIONS_PAGE_SIZE, "offset": offset},
            )
            if not data:
                break

            for item in data:
                try:
                    positions.append(parse_position(item))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed position record: {e!r}")

            if len(data) < POSITIONS_PAGE_SIZE:
                break
            offset += POSITIONS_PAGE_SIZE

        logger.info(f"Fetched {len(positions)} positions for {address[:10]}...")
        return positions
