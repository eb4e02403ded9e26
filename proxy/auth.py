"""
SOCKS5 认证模块

本模块定义了认证器接口及其两种实现：
- NoneAuthenticator: 无需认证（方法 0x00）
- UserPassAuthenticator: 用户名/密码认证（方法 0x02，RFC 1929）

认证器在服务器启动时创建一次，之后被所有会话只读共享。
"""

import asyncio
import hmac
import logging
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Mapping, Union

from protocol import (
    AuthMethod, UserPassAuthRequest, UserPassAuthReply,
    AuthenticationFailure, check_field,
)

logger = logging.getLogger('socks5-auth')


class Authenticator(ABC):
    """
    认证器基类

    子类必须提供 method（协商阶段选择的方法编号）和 authenticate()。
    authenticate() 成功时正常返回，失败时抛出异常。
    """

    method: AuthMethod

    @abstractmethod
    async def authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        在客户端流上执行认证子协商

        Args:
            reader: 从客户端读取数据的异步流读取器
            writer: 向客户端写入数据的异步流写入器

        Raises:
            ProtocolError: 子协商消息格式错误
            AuthenticationFailure: 凭据被拒绝
        """


class NoneAuthenticator(Authenticator):
    """无认证，不读写任何字节"""

    method = AuthMethod.NONE

    async def authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        return None


class UserPassAuthenticator(Authenticator):
    """
    用户名/密码认证器

    工作流程:
    1. 读取 UserPassAuthRequest（版本错误或长度为 0 直接抛出协议错误）
    2. 在凭据表中查找用户名，并以恒定时间比较密码字节
    3. 写回应答（成功 0x00，失败 0xFF）
    4. 应答发出之后，失败时才抛出 AuthenticationFailure

    Attributes:
        credentials: 只读凭据表，键和值均为字节
    """

    method = AuthMethod.USERPASS

    def __init__(self, credentials: Mapping[Union[str, bytes], Union[str, bytes]]):
        if not credentials:
            raise ValueError("用户名/密码认证需要至少一个用户")

        table = {}
        for username, password in credentials.items():
            username = check_field(_to_bytes(username), "用户名")
            table[username] = check_field(_to_bytes(password), "密码")
        self.credentials = MappingProxyType(table)

    def verify(self, username: bytes, password: bytes) -> bool:
        expected = self.credentials.get(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected, password)

    async def authenticate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        request = await UserPassAuthRequest.read_from(reader)
        success = self.verify(request.username, request.password)

        writer.write(UserPassAuthReply.for_result(success).serialize())
        await writer.drain()

        username = request.username.decode('utf-8', errors='replace')
        if not success:
            logger.debug(f"用户 {username} 认证失败")
            raise AuthenticationFailure(f"用户名/密码认证失败: {username}")
        logger.debug(f"用户 {username} 认证成功")


def _to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode('utf-8')
