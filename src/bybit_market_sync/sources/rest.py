from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

import httpx

from bybit_market_sync.core.backoff import exponential_delay, parse_retry_after
from bybit_market_sync.core.time_utils import candle_end_ms, now_ms
from bybit_market_sync.state.candles import Candle

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

logger = logging.getLogger(__name__)


class BybitAPIError(RuntimeError):
    """Raised when Bybit answers with a non-zero ``retCode``."""

    def __init__(self, path: str, ret_code: int, ret_msg: str) -> None:
        super().__init__(f"Bybit API error on {path}: retCode={ret_code} retMsg={ret_msg}")
        self.path = path
        self.ret_code = ret_code
        self.ret_msg = ret_msg


class BybitRESTClient:
    """Async client for the Bybit v5 public market endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 5,
        *,
        category: str = "linear",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._category = category
        self._retries = max(1, retries)
        self._retry_base_seconds = 1.0
        self._retry_max_seconds = 60.0
        self._min_interval_seconds = 0.1  # public endpoints are rate limited per IP
        self._last_request_monotonic: float | None = None

    @property
    def base_url(self) -> str:
        return str(self._client.base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        for attempt in range(1, self._retries + 1):
            await self._throttle()
            try:
                response = await self._client.get(path, params=params)
            except httpx.TransportError as exc:
                if attempt >= self._retries:
                    raise
                await self._backoff(path, attempt, reason=exc.__class__.__name__)
                continue
            finally:
                self._last_request_monotonic = time.monotonic()

            if response.status_code in RETRYABLE_STATUS and attempt < self._retries:
                await self._backoff(
                    path,
                    attempt,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
                )
                continue

            response.raise_for_status()
            return self._unwrap(path, response.json())

        raise RuntimeError(f"REST call to {path} exhausted {self._retries} attempts")

    async def _throttle(self) -> None:
        if self._last_request_monotonic is None:
            return
        wait = self._min_interval_seconds - (time.monotonic() - self._last_request_monotonic)
        if wait > 0:
            await asyncio.sleep(wait)

    async def _backoff(
        self,
        path: str,
        attempt: int,
        *,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is None:
            delay = exponential_delay(attempt - 1, self._retry_base_seconds, self._retry_max_seconds)
        else:
            delay = retry_after_seconds
        delay += random.uniform(0.0, 0.3)  # noqa: S311
        logger.warning(
            "Retrying Bybit REST request",
            extra={"path": path, "attempt": attempt, "reason": reason, "sleep_seconds": round(delay, 3)},
        )
        await asyncio.sleep(delay)

    @staticmethod
    def _unwrap(path: str, payload: Any) -> Any:
        if not isinstance(payload, dict):
            raise BybitAPIError(path, -1, "unexpected response body")
        ret_code = payload.get("retCode", 0)
        if ret_code != 0:
            raise BybitAPIError(path, int(ret_code), str(payload.get("retMsg", "")))
        return payload.get("result") or {}

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        *,
        limit: int = 200,
        start_time_ms: int | None = None,
        end_time_ms: int | None = None,
        now_time_ms: int | None = None,
    ) -> list[Candle]:
        """Historical candles, oldest first.

        Rows whose bucket has not ended yet are returned unconfirmed.
        """
        params: dict[str, Any] = {
            "category": self._category,
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": limit,
        }
        if start_time_ms is not None:
            params["start"] = start_time_ms
        if end_time_ms is not None:
            params["end"] = end_time_ms

        result = await self._get("/v5/market/kline", params)
        reference_ms = now_time_ms if now_time_ms is not None else now_ms()

        candles: list[Candle] = []
        for item in result.get("list", []):
            start = int(item[0])
            end = candle_end_ms(start, interval)
            candles.append(
                Candle(
                    start_time=start,
                    end_time=end,
                    interval=interval,
                    open=float(item[1]),
                    high=float(item[2]),
                    low=float(item[3]),
                    close=float(item[4]),
                    volume=float(item[5]),
                    turnover=float(item[6]),
                    confirmed=end < reference_ms,
                    timestamp_ms=reference_ms,
                )
            )
        candles.sort(key=lambda candle: candle.start_time)
        return candles

