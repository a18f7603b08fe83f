import asyncio
import json
import logging
import random
import time
from typing import Callable, Dict, List, Optional

import websockets

from api.metrics import metrics
from config.utils import resolve_section
from orchestration.collaborators import TickStream


logger = logging.getLogger(__name__)

TickCallback = Callable[[str, float, Optional[float]], object]


class PriceTickStream(TickStream):
    """One mark-price websocket per subscribed symbol.

    ``subscribe`` starts a reconnecting reader task on the running loop and
    ``unsubscribe`` cancels it synchronously, so no callback is scheduled for
    a symbol after it has been unsubscribed.
    """

    def __init__(self, exchange_cfg: Optional[Dict] = None):
        cfg = resolve_section(exchange_cfg, 'exchange')
        self.ws_base_url = str(cfg.get('ws_base_url', 'wss://fstream.binance.com/ws')).rstrip('/')
        self.stream_suffix = cfg.get('tick_stream_suffix', '@markPrice@1s')
        self.reconnect_backoff: List[float] = list(cfg.get('reconnect_backoff', [1, 2, 5, 10]))
        self.stream_timeout = float(cfg.get('stream_stale_s', 10))

        self._tasks: Dict[str, asyncio.Task] = {}
        self._callbacks: Dict[str, TickCallback] = {}

    def subscribe(self, symbol: str, callback: TickCallback) -> None:
        if symbol in self._tasks and not self._tasks[symbol].done():
            self._callbacks[symbol] = callback
            return
        loop = asyncio.get_running_loop()
        self._callbacks[symbol] = callback
        self._tasks[symbol] = loop.create_task(self._run(symbol))
        logger.info("Subscribed to price ticks for %s", symbol)

    def unsubscribe(self, symbol: str) -> None:
        self._callbacks.pop(symbol, None)
        task = self._tasks.pop(symbol, None)
        if task is not None and not task.done():
            task.cancel()
            logger.info("Unsubscribed price ticks for %s", symbol)

    def subscribed(self) -> List[str]:
        return list(self._tasks)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for symbol in list(self._tasks):
            self.unsubscribe(symbol)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _deliver(self, symbol: str, data: Dict) -> None:
        callback = self._callbacks.get(symbol)
        if callback is None:
            return
        price = data.get('p')
        event_ts = data.get('E')
        timestamp = int(event_ts) / 1000.0 if event_ts else time.time()
        callback(symbol, price, timestamp)

    async def _run(self, symbol: str) -> None:
        url = f"{self.ws_base_url}/{symbol.lower()}{self.stream_suffix}"
        backoff_index = 0
        while symbol in self._callbacks:
            try:
                async with websockets.connect(url, ping_interval=20) as ws:
                    backoff_index = 0
                    while symbol in self._callbacks:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_timeout)
                        except asyncio.TimeoutError:
                            logger.warning("Tick stream for %s stale; reconnecting", symbol)
                            raise
                        self._deliver(symbol, json.loads(raw))
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Tick stream error for %s: %s", symbol, exc)
                metrics.reconnect_count.inc()
                delay = self.reconnect_backoff[min(backoff_index, len(self.reconnect_backoff) - 1)]
                backoff_index += 1
                await asyncio.sleep(delay + random.uniform(0, 0.5))
