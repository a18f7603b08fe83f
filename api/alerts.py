import asyncio
import logging
import time
import aiohttp
from typing import Dict, Optional

from config.utils import resolve_section
from strategy.models import SignalResult, TradingLevels


logger = logging.getLogger(__name__)


class LifecycleWebhook:
    """Posts signal alerts and position lifecycle events as JSON."""

    def __init__(self, monitoring_cfg: Optional[Dict] = None, url: Optional[str] = None):
        cfg = resolve_section(monitoring_cfg, 'monitoring')
        url = url if url is not None else cfg.get('alert_webhook')
        # Unresolved ${VAR} placeholders and empty values disable delivery
        if url and not str(url).startswith('${'):
            self.webhook_url = str(url)
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.sent = 0

    async def send(self, event_type: str, payload: Dict) -> bool:
        body = {
            'type': event_type,
            'timestamp': time.time(),
            'data': payload,
        }
        if not self.enabled:
            logger.info("[Event] %s: %s", event_type, payload)
            return False

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=body,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error("[Event] Webhook failed with status %s", response.status)
                        return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Event] Webhook error: %s", e)
            return False
        self.sent += 1
        return True

    async def signal_alert(self, result: SignalResult, levels: TradingLevels) -> bool:
        payload = result.to_dict()
        payload['levels'] = levels.to_dict()
        return await self.send('signal', payload)

    async def on_event(self, event) -> bool:
        return await self.send(event.kind, event.to_dict())
