"""Broker gateway async client.

Handles all communication with the binary-options gateway: candle fetching,
balance queries, instrument listing, order submission and the position-close
event stream.
"""

import asyncio
import json
import logging
import math
from typing import AsyncIterator, Callable, Optional

import httpx

from blitzbot.broker.models import Balance, ClosedPosition, Instrument, OrderReceipt
from blitzbot.config import Config
from blitzbot.errors import ConnectionFailure, InvalidCandle, OrderSubmissionFailure
from blitzbot.strategy.models import Candle

logger = logging.getLogger("blitzbot")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

# Event stream settings
_STREAM_RECONNECT_DELAY = 5.0
POSITION_CLOSED_EVENT = "position-closed"


def _parse_candle(raw: dict) -> Candle:
    """Build a ``Candle`` from a gateway payload; OHLC must be finite."""
    prices = [float(raw[k]) for k in ("open", "high", "low", "close")]
    if not all(math.isfinite(p) for p in prices):
        raise ValueError(f"non-finite price in {raw!r}")
    return Candle(*prices, timestamp=int(raw["timestamp"]))


def _parse_position(payload: dict) -> ClosedPosition:
    return ClosedPosition(
        external_id=str(payload["external_id"]),
        status=str(payload.get("status", "closed")),
        pnl=float(payload.get("pnl", 0.0)),
        close_price=float(payload.get("close_price", 0.0)),
        open_price=float(payload.get("open_price", 0.0)),
    )


class BrokerClient:
    """Async client wrapping the broker gateway REST and event-stream API.

    Args:
        config: Application configuration.
        session_token: Per-user session credential issued by the session
            service.  Sent with every request.
    """

    def __init__(self, config: Config, session_token: Optional[str] = None) -> None:
        self._config = config
        self._base_url = config.gateway_base_url
        self._headers = {
            "Authorization": f"Bearer {config.broker_api_token}",
            "Content-Type": "application/json",
        }
        if session_token:
            self._headers["X-Session-Token"] = session_token
        self._stream_task: Optional[asyncio.Task] = None

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Gateway %s %s returned %d, retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Gateway %s %s transport error (%s), retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        # All retries exhausted
        raise last_exc  # type: ignore[misc]

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        instrument_id: int,
        timeframe_seconds: int,
        count: int = 50,
    ) -> list[Candle]:
        """Fetch candles for one instrument.

        Args:
            instrument_id: Gateway instrument id.
            timeframe_seconds: Candle size, e.g. ``60``.
            count: Number of candles to request.

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        url = f"{self._base_url}/instruments/{instrument_id}/candles"
        params = {"timeframe": timeframe_seconds, "count": count}

        try:
            resp = await self._request_with_retry("get", url, params=params)
        except httpx.HTTPError as exc:
            raise ConnectionFailure(
                f"candle fetch failed for instrument {instrument_id}: {exc}"
            ) from exc

        try:
            payload = resp.json().get("candles", [])
        except (AttributeError, ValueError) as exc:
            raise ConnectionFailure(
                f"unreadable candle response for instrument {instrument_id}: {exc}"
            ) from exc

        candles: list[Candle] = []
        for c in payload:
            try:
                candles.append(_parse_candle(c))
            except (KeyError, TypeError, ValueError) as exc:
                raise InvalidCandle(
                    f"malformed candle for instrument {instrument_id}: {c!r}"
                ) from exc
        candles.sort(key=lambda c: c.timestamp)
        return candles

    # ── Account ──────────────────────────────────────────────────────────

    async def fetch_balance(self) -> Balance:
        """Query the gateway for the account balance."""
        url = f"{self._base_url}/account/balance"
        try:
            resp = await self._request_with_retry("get", url)
        except httpx.HTTPError as exc:
            raise ConnectionFailure(f"balance fetch failed: {exc}") from exc

        try:
            data = resp.json()
            return Balance(amount=float(data["amount"]), currency=data.get("currency", ""))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ConnectionFailure(f"unreadable balance response: {exc}") from exc

    # ── Instruments ──────────────────────────────────────────────────────

    async def list_available_instruments(self, as_of: float) -> list[Instrument]:
        """Return instruments with the expirations they offer at *as_of*."""
        url = f"{self._base_url}/instruments"
        try:
            resp = await self._request_with_retry(
                "get", url, params={"as_of": int(as_of)},
            )
        except httpx.HTTPError as exc:
            raise ConnectionFailure(f"instrument listing failed: {exc}") from exc

        try:
            return [
                Instrument(
                    id=int(i["id"]),
                    name=i.get("name") or f"ID-{i['id']}",
                    expirations=tuple(int(e) for e in i.get("expirations", [])),
                )
                for i in resp.json().get("instruments", [])
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ConnectionFailure(f"unreadable instrument listing: {exc}") from exc

    # ── Orders ───────────────────────────────────────────────────────────

    async def submit_order(
        self,
        instrument_id: int,
        direction: str,
        timeframe_seconds: int,
        amount: float,
    ) -> OrderReceipt:
        """Submit a binary option.

        Raises ``OrderSubmissionFailure`` when the gateway rejects the order
        or cannot be reached after retries.
        """
        url = f"{self._base_url}/orders"
        body = {
            "instrument_id": instrument_id,
            "direction": direction.lower(),
            "timeframe": timeframe_seconds,
            "amount": round(amount, 2),
        }

        try:
            resp = await self._request_with_retry("post", url, json=body)
            data = resp.json()
            return OrderReceipt(
                order_id=str(data["id"]),
                expires_at=float(data["expires_at"]),
                expected_profit=float(data.get("expected_profit", 0.0)),
            )
        except httpx.HTTPError as exc:
            raise OrderSubmissionFailure(
                f"order rejected for instrument {instrument_id}: {exc}"
            ) from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise OrderSubmissionFailure(
                f"unreadable order acknowledgement: {exc}"
            ) from exc

    # ── Position events ──────────────────────────────────────────────────

    async def stream_position_events(self) -> AsyncIterator[ClosedPosition]:
        """Yield position-close events from the gateway's SSE stream.

        Ends when the server closes the connection.  Transport errors
        propagate to the caller.
        """
        url = f"{self._base_url}/positions/events"
        headers = {**self._headers, "Accept": "text/event-stream"}

        async with httpx.AsyncClient(timeout=None) as client:
            async with client.stream("GET", url, headers=headers) as resp:
                resp.raise_for_status()
                event_type = "message"
                data_lines: list[str] = []
                async for line in resp.aiter_lines():
                    if line.startswith(":"):
                        continue  # keep-alive comment
                    if line.startswith("event:"):
                        event_type = line[len("event:"):].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[len("data:"):].strip())
                    elif line == "":
                        if data_lines and event_type == POSITION_CLOSED_EVENT:
                            try:
                                yield _parse_position(json.loads("\n".join(data_lines)))
                            except (KeyError, TypeError, ValueError) as exc:
                                logger.warning("Unreadable position event: %s", exc)
                        event_type = "message"
                        data_lines = []

    async def _consume_position_events(self, callback: Callable[[ClosedPosition], None]) -> None:
        while True:
            try:
                async for position in self.stream_position_events():
                    callback(position)
                logger.info("Position event stream ended, reconnecting")
            except httpx.HTTPError as exc:
                logger.warning(
                    "Position event stream error (%s), reconnecting in %.0fs",
                    exc, _STREAM_RECONNECT_DELAY,
                )
            await asyncio.sleep(_STREAM_RECONNECT_DELAY)

    def subscribe_position_close(
        self,
        callback: Callable[[ClosedPosition], None],
    ) -> asyncio.Task:
        """Deliver every position close to *callback* until ``close()``.

        The stream reconnects after errors.  Returns the background task.
        """
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        self._stream_task = asyncio.create_task(self._consume_position_events(callback))
        return self._stream_task

    async def close(self) -> None:
        """Stop the position-event subscription, if any."""
        if self._stream_task is None:
            return
        self._stream_task.cancel()
        try:
            await self._stream_task
        except asyncio.CancelledError:
            pass
        self._stream_task = None
