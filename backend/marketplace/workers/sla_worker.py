"""
SLA 巡检 Worker

- 按固定间隔扫描处理中的售后单，标记首次响应 / 处理超时
- 单轮失败只记录日志，下一轮继续
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from marketplace.config import get_settings
from marketplace.database import async_session_maker
from marketplace.services.sla_service import SLAService

logger = logging.getLogger(__name__)
settings = get_settings()


class SLAWorker:
    def __init__(self, interval_minutes: Optional[float] = None, session_maker=None):
        self._stop_event = asyncio.Event()
        self.interval_seconds = (interval_minutes or settings.sla_check_interval_minutes) * 60
        self._session_maker = session_maker or async_session_maker

    def stop(self):
        self._stop_event.set()

    async def run_once(self) -> int:
        """执行一轮巡检，返回新标记超时的数量"""
        async with self._session_maker() as db:
            return await SLAService(db).process_sla_breaches()

    async def _wait(self):
        # stop() 可以打断等待
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self):
        """循环巡检直到 stop()"""
        logger.info(f"SLA worker started, interval {self.interval_seconds:.0f}s")
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("SLA breach sweep failed")
            await self._wait()
        logger.info("SLA worker stopped")
