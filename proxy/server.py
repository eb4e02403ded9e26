"""
SOCKS5 服务器模块 - 监听与生命周期管理

此模块包含 Socks5Server 类，负责：
- 启动 TCP 监听
- 为每个被接受的连接创建独立的 Socks5Session 任务
- 通过显式的关闭事件停止服务器

关闭语义:
    shutdown() 设置关闭事件后，监听器停止接受新连接，所有进行中的会话任务被
    取消（不等待转发自然结束），会话的 finally 块负责关闭两端连接；尚未开始运行的
    会话任务由完成回调关闭客户端连接。
    serve() 在所有会话任务结束后返回。

使用示例:
    >>> server = Socks5Server(NoneAuthenticator(), host='127.0.0.1', port=1080)
    >>> asyncio.run(server.serve())
"""

import asyncio
import functools
import itertools
import logging
from typing import Iterable, List, Optional, Set

from .auth import Authenticator, NoneAuthenticator
from .relay import DEFAULT_BUFFER_SIZE
from .session import Socks5Session

logger = logging.getLogger('socks5-server')


class Socks5Server:
    """
    SOCKS5 代理服务器

    连接数量不设上限，每个连接在独立的协程中处理，会话异常不会影响监听循环。

    Attributes:
        authenticator: 所有会话共享的只读认证器
        host: 监听地址
        port: 监听端口（0 表示由系统分配）
        connect_timeout: 拨号超时（秒），None 表示不限制
        buffer_size: 转发读取块大小
        sessions: 进行中的会话任务
    """

    def __init__(
        self,
        authenticator: Optional[Authenticator] = None,
        host: str = '127.0.0.1',
        port: int = 1080,
        connect_timeout: Optional[float] = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        supported_commands: Optional[Iterable[int]] = None
    ):
        self.authenticator = authenticator or NoneAuthenticator()
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.buffer_size = buffer_size
        self.supported_commands = supported_commands
        self.sessions: Set[asyncio.Task] = set()

        self._server: Optional[asyncio.AbstractServer] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._session_ids = itertools.count(1)

    @property
    def sockets(self) -> List:
        if self._server is None:
            return []
        return list(self._server.sockets or [])

    @property
    def address(self):
        """实际监听的地址 (host, port)，未启动时为 None"""
        sockets = self.sockets
        if not sockets:
            return None
        return sockets[0].getsockname()[:2]

    def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        连接回调

        在接受连接时同步创建并登记会话任务，关闭时即使任务尚未开始运行也能被取消。
        """
        task = asyncio.create_task(self.handle_client(reader, writer))
        self.sessions.add(task)
        task.add_done_callback(functools.partial(self._session_done, writer))

    def _session_done(self, writer: asyncio.StreamWriter, task: asyncio.Task):
        self.sessions.discard(task)
        # 任务在首次运行前被取消时会话不会关闭连接
        if not writer.is_closing():
            writer.close()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """处理客户端连接"""
        session = Socks5Session(
            reader, writer, self.authenticator,
            supported_commands=self.supported_commands,
            connect_timeout=self.connect_timeout,
            buffer_size=self.buffer_size,
            session_id=next(self._session_ids),
        )
        try:
            await session.run()
        except asyncio.CancelledError:
            pass  # 关闭时取消，连接已在会话中关闭

    async def start(self):
        """启动监听，返回后即可接受连接"""
        self._shutdown = asyncio.Event()
        self._server = await asyncio.start_server(self._accept, self.host, self.port)
        addr = self.address
        logger.info(f"SOCKS5 服务器运行于 {addr[0]}:{addr[1]}")
        logger.info(f"认证方法: 0x{self.authenticator.method:02x}")

    async def serve(self):
        """
        启动服务器并运行直到 shutdown() 被调用
        """
        if self._server is None:
            await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self._close()

    def shutdown(self):
        """请求关闭服务器，可在事件循环中的任意位置调用"""
        if self._shutdown is not None:
            logger.info("服务器关闭中...")
            self._shutdown.set()

    async def _close(self):
        """停止监听并取消所有进行中的会话"""
        if self._server is not None:
            self._server.close()

        pending = [task for task in self.sessions if not task.done()]
        if pending:
            logger.info(f"取消 {len(pending)} 个进行中的会话")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        logger.info("服务器已停止")
