import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from analytics.candles import CandleSeries
from config import config
from orchestration.collaborators import CandleSource


logger = logging.getLogger(__name__)


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class BinanceRESTClient(CandleSource):
    """Public market-data endpoints of the USDⓈ-M futures REST API."""

    def __init__(self, base_url: Optional[str] = None, candle_limit: Optional[int] = None):
        self.base_url = (base_url or config.exchange.get("rest_base_url") or "https://fapi.binance.com").rstrip("/")
        self.candle_limit = int(candle_limit or config.universe.get("candle_limit", 200))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        async with session.get(url, params=params or {}, timeout=aiohttp.ClientTimeout(total=15)) as resp:
            text = await resp.text()
            payload: Any = text
            if "application/json" in resp.headers.get("Content-Type", ""):
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def fetch_klines(self, symbol: str, interval: str, limit: Optional[int] = None) -> List[List]:
        params = {"symbol": symbol, "interval": interval, "limit": limit or self.candle_limit}
        data = await self.get("/fapi/v1/klines", params=params)
        if not isinstance(data, list):
            raise RuntimeError(f"Invalid klines response for {symbol} {interval}")
        return data

    async def get_candles(self, symbol: str, timeframe: str) -> CandleSeries:
        """CandleSource implementation backed by the klines endpoint."""
        klines = await self.fetch_klines(symbol, timeframe)
        logger.debug("Fetched %d %s klines for %s", len(klines), timeframe, symbol)
        return CandleSeries.from_klines(klines)
