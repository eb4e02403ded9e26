"""
SOCKS5 会话模块 - 单连接协议状态机

每个被接受的连接对应一个 Socks5Session，按顺序经过以下状态：

    NEGOTIATING -> AUTHENTICATING -> PARSING_REQUEST -> DISPATCHING -> RELAYING

任何状态失败都直接进入 CLOSED。会话之间除只读的认证器外不共享任何可变状态，
会话结束时（无论正常还是出错）客户端连接总会被关闭。
"""

import asyncio
import logging
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from protocol import (
    SOCKS_VERSION, AuthMethod, Command, AddressType, ReplyCode, is_known,
    NegotiationRequest, NegotiationReply, Request, RequestReply,
    ProtocolError, AuthenticationFailure, UpstreamConnectError,
)
from .auth import Authenticator
from .address import Address, bound_address_fields, open_upstream
from .relay import Relay, RelayResult, close_writer, DEFAULT_BUFFER_SIZE

logger = logging.getLogger('socks5-session')

DEFAULT_SUPPORTED_COMMANDS = frozenset({Command.CONNECT})


class SessionState(Enum):
    """会话状态"""
    NEGOTIATING = 'negotiating'
    AUTHENTICATING = 'authenticating'
    PARSING_REQUEST = 'parsing_request'
    DISPATCHING = 'dispatching'
    RELAYING = 'relaying'
    CLOSED = 'closed'


class Socks5Session:
    """
    处理单个客户端的 SOCKS5 会话

    工作流程:
    1. 方法协商：从客户端方法列表中选出与认证器一致的方法，否则回复 0xFF 并关闭
    2. 认证：调用认证器，失败即关闭
    3. 解析请求：版本错误静默关闭；命令或地址类型不受支持时回复
       "command not supported" 并关闭
    4. 分派：CONNECT 拨号目标并回复应答；其他命令回复 "command not supported"
    5. 转发：CONNECT 成功后双向转发，直到任一方向结束

    Attributes:
        reader: 从客户端读取数据的异步流读取器
        writer: 向客户端写入数据的异步流写入器
        authenticator: 共享的只读认证器
        state: 当前状态
        method: 协商选定的方法编号
        authenticated: 认证是否通过
        request: 解析出的请求
        upstream_reader: 上游连接读取器（CONNECT 成功后设置）
        upstream_writer: 上游连接写入器（CONNECT 成功后设置）
        relay_result: 转发结果（转发结束后设置）
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        authenticator: Authenticator,
        supported_commands: Optional[Iterable[int]] = None,
        connect_timeout: Optional[float] = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        session_id: int = 0,
        log: Optional[logging.Logger] = None
    ):
        self.reader = reader
        self.writer = writer
        self.authenticator = authenticator
        self.supported_commands: FrozenSet[int] = frozenset(
            DEFAULT_SUPPORTED_COMMANDS if supported_commands is None else supported_commands
        )
        self.connect_timeout = connect_timeout
        self.buffer_size = buffer_size
        self.session_id = session_id
        self.log = log or logger

        self.state = SessionState.NEGOTIATING
        self.method: Optional[int] = None
        self.authenticated = False
        self.request: Optional[Request] = None
        self.upstream_reader: Optional[asyncio.StreamReader] = None
        self.upstream_writer: Optional[asyncio.StreamWriter] = None
        self.relay_result: Optional[RelayResult] = None

        peer = writer.get_extra_info('peername')
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    def _log(self, level: int, msg: str):
        """记录带会话编号和客户端地址的日志"""
        self.log.log(level, f"[#{self.session_id} {self.peer_str}] {msg}")

    async def run(self):
        """主会话处理器"""
        self._log(logging.DEBUG, "开始处理新连接")

        try:
            if not await self._negotiate():
                return

            self.state = SessionState.AUTHENTICATING
            await self.authenticator.authenticate(self.reader, self.writer)
            self.authenticated = True

            self.state = SessionState.PARSING_REQUEST
            request = await self._read_request()
            if request is None:
                return

            self.state = SessionState.DISPATCHING
            await self._dispatch(request)

        except asyncio.CancelledError:
            self._log(logging.DEBUG, f"会话被取消: state={self.state.value}")
            raise
        except AuthenticationFailure as e:
            self._log(logging.INFO, f"认证失败，关闭连接: {e}")
        except ProtocolError as e:
            self._log(logging.DEBUG, f"协议错误，关闭连接: state={self.state.value}, error={e}")
        except OSError as e:
            self._log(logging.DEBUG, f"连接错误: state={self.state.value}, error={e!r}")
        except Exception as e:
            self._log(logging.ERROR, f"会话错误: state={self.state.value}, error={e!r}")
        finally:
            self.state = SessionState.CLOSED
            await close_writer(self.upstream_writer)
            await close_writer(self.writer)
            self._log(logging.DEBUG, "会话结束")

    # ------------------------------------------------------------------
    # 方法协商
    # ------------------------------------------------------------------

    def choose_method(self, methods: Iterable[int]) -> int:
        """按客户端顺序选出第一个与认证器一致的方法，否则返回 0xFF"""
        for method in methods:
            if method == self.authenticator.method:
                return method
        return AuthMethod.NOT_ACCEPTABLE

    async def _negotiate(self) -> bool:
        """
        执行方法协商

        Returns:
            bool: True 表示继续认证，False 表示没有可接受的方法

        Raises:
            ProtocolError: 版本号错误或消息被截断
        """
        request = await NegotiationRequest.read_from(self.reader)
        if request.version != SOCKS_VERSION:
            raise ProtocolError(f"无效的 SOCKS 版本: {request.version}")

        self.method = self.choose_method(request.methods)
        self.writer.write(NegotiationReply(self.method).serialize())
        await self.writer.drain()

        if self.method == AuthMethod.NOT_ACCEPTABLE:
            self._log(logging.DEBUG, f"没有可接受的认证方法: {request.methods}")
            return False

        self._log(logging.DEBUG, f"协商完成: method=0x{self.method:02x}")
        return True

    # ------------------------------------------------------------------
    # 请求解析与分派
    # ------------------------------------------------------------------

    async def _read_request(self) -> Optional[Request]:
        """
        读取并校验请求

        Returns:
            Optional[Request]: 可以分派的请求；None 表示会话应当结束
        """
        request = await Request.read_from(self.reader)
        self.request = request

        if request.version != SOCKS_VERSION:
            self._log(logging.DEBUG, f"请求版本无效: {request.version}")
            return None

        if request.command not in self.supported_commands:
            self._log(logging.DEBUG, f"不支持的命令: {request.command}")
            await self._send_reply(RequestReply.failure(ReplyCode.COMMAND_NOT_SUPPORTED, request.atyp))
            return None

        if not is_known(AddressType, request.atyp):
            self._log(logging.DEBUG, f"不支持的地址类型: {request.atyp}")
            await self._send_reply(RequestReply.failure(ReplyCode.COMMAND_NOT_SUPPORTED, request.atyp))
            return None

        return request

    async def _dispatch(self, request: Request):
        """按命令分派请求"""
        if request.command == Command.CONNECT:
            await self._handle_connect(request)
            return

        self._log(logging.DEBUG, f"命令未实现: {request.command}")
        await self._send_reply(RequestReply.failure(ReplyCode.COMMAND_NOT_SUPPORTED, request.atyp))

    async def _send_reply(self, reply: RequestReply):
        """写出请求应答并等待发送完成"""
        self.writer.write(reply.serialize())
        await self.writer.drain()

    # ------------------------------------------------------------------
    # CONNECT
    # ------------------------------------------------------------------

    async def _handle_connect(self, request: Request):
        """
        处理 CONNECT 请求

        拨号失败时回复归类后的应答码并结束会话；
        成功时以上游连接的本地端点作为 BND.ADDR/BND.PORT 回复，然后开始转发。
        """
        address = Address.from_request(request)
        self._log(logging.INFO, f"CONNECT {address.target}")

        try:
            self.upstream_reader, self.upstream_writer = await open_upstream(
                address, self.connect_timeout
            )
        except UpstreamConnectError as e:
            self._log(logging.INFO, f"连接 {address.target} 失败: {e}")
            await self._send_reply(RequestReply.failure(e.reply_code, request.atyp))
            return

        atyp, bnd_addr, bnd_port = bound_address_fields(
            self.upstream_writer.get_extra_info('sockname')
        )
        await self._send_reply(RequestReply(ReplyCode.SUCCEEDED, atyp, bnd_addr, bnd_port))
        self._log(logging.DEBUG, f"已连接 {address.target}，开始转发")

        self.state = SessionState.RELAYING
        relay = Relay(
            self.reader, self.writer,
            self.upstream_reader, self.upstream_writer,
            buffer_size=self.buffer_size,
            log=self.log
        )
        self.relay_result = await relay.run()
