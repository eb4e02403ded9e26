"""
双向转发模块

CONNECT 成功应答发出后，在客户端和上游连接之间双向复制字节：
- client->upstream: 读取客户端数据写入上游
- upstream->client: 读取上游数据写回客户端

任一方向遇到 EOF 或错误即结束整个转发，两端连接都会被关闭，
另一方向的复制任务随之退出。转发结束不会通知客户端。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger('socks5-relay')

DEFAULT_BUFFER_SIZE = 65536

CLIENT_TO_UPSTREAM = 'client->upstream'
UPSTREAM_TO_CLIENT = 'upstream->client'


@dataclass
class RelayResult:
    """
    转发结果

    Attributes:
        first_done: 最先结束的方向
        error: 最先结束方向遇到的异常，EOF 时为 None
        client_to_upstream: 客户端到上游的字节数
        upstream_to_client: 上游到客户端的字节数
    """
    first_done: str
    error: Optional[BaseException]
    client_to_upstream: int = 0
    upstream_to_client: int = 0


async def close_writer(writer: Optional[asyncio.StreamWriter]):
    """关闭写入器并等待底层连接关闭"""
    if writer is None:
        return
    try:
        writer.close()
        await writer.wait_closed()
    except OSError:
        pass  # 连接已断开，忽略错误


class Relay:
    """
    双向转发器

    两个复制任务把结果投递到容量为 2 的队列，任何一方投递都不会阻塞。
    run() 在收到第一个结果后关闭两端连接，并取消仍在运行的任务。

    Attributes:
        buffer_size: 每次读取的最大字节数
        transferred: 各方向已转发的字节数
    """

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        log: Optional[logging.Logger] = None
    ):
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.upstream_reader = upstream_reader
        self.upstream_writer = upstream_writer
        self.buffer_size = buffer_size
        self.log = log or logger
        self.transferred = {CLIENT_TO_UPSTREAM: 0, UPSTREAM_TO_CLIENT: 0}
        self._results: asyncio.Queue = asyncio.Queue(maxsize=2)

    async def _copy(self, direction: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """持续复制直到 EOF 或错误，然后投递结果"""
        error = None
        try:
            while True:
                data = await reader.read(self.buffer_size)
                if not data:
                    self.log.debug(f"{direction} 读到 EOF")
                    break
                writer.write(data)
                await writer.drain()
                self.transferred[direction] += len(data)
        except Exception as e:
            self.log.debug(f"{direction} 转发错误: {e!r}")
            error = e
        self._results.put_nowait((direction, error))

    async def run(self) -> RelayResult:
        """
        启动双向转发并等待任一方向结束

        Returns:
            RelayResult: 转发结果
        """
        tasks = [
            asyncio.create_task(self._copy(CLIENT_TO_UPSTREAM, self.client_reader, self.upstream_writer)),
            asyncio.create_task(self._copy(UPSTREAM_TO_CLIENT, self.upstream_reader, self.client_writer)),
        ]
        try:
            direction, error = await self._results.get()
        finally:
            await close_writer(self.upstream_writer)
            await close_writer(self.client_writer)
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        result = RelayResult(
            first_done=direction,
            error=error,
            client_to_upstream=self.transferred[CLIENT_TO_UPSTREAM],
            upstream_to_client=self.transferred[UPSTREAM_TO_CLIENT],
        )
        self.log.debug(
            f"转发结束: first={direction}, "
            f"up={result.client_to_upstream}B, down={result.upstream_to_client}B"
        )
        return result
