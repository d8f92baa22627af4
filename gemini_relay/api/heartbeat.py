"""
SSE 心跳
上游长时间没有事件时向客户端发送 ping，防止空闲断连
"""
import asyncio
from typing import AsyncIterator

from gemini_relay.formats.unified.stream_events import PING_FRAME
from gemini_relay.utils.logger import setup_logger

logger = setup_logger("heartbeat")

_END = object()


async def with_heartbeat(source: AsyncIterator[str], interval: float) -> AsyncIterator[str]:
    """包装帧生成器：interval 秒内没有真实帧就插入一个 ping 帧

    source 在独立任务中被消费，结果经 asyncio.Queue 转交；
    本生成器被关闭（客户端断开）时取消该任务，上游读取随之放弃。
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def pump() -> None:
        try:
            async for frame in source:
                await queue.put(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # 交给消费方在原位置重新抛出
            await queue.put(e)
        finally:
            await queue.put(_END)

    task = asyncio.create_task(pump())
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=interval)
            except asyncio.TimeoutError:
                logger.debug("No upstream event within heartbeat interval, sending ping")
                yield PING_FRAME
                continue
            if item is _END:
                break
            if isinstance(item, Exception):
                raise item
            yield item
    finally:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
