"""
SOCKS5 代理 - 核心协议模块
定义 SOCKS5 协议的常量、编号注册表和异常类型。

版本: 1.0.0

功能概述:
本模块提供了 SOCKS5 协议（RFC 1928 / RFC 1929）的核心定义，包括
版本常量、认证方法、命令、地址类型和应答码枚举，以及会话处理过程中
使用的异常层次。编解码模块和会话模块共享这些定义。

主要功能:
1. 协议常量定义 - SOCKS 版本号、用户名/密码子协商版本号
2. 编号枚举 - 认证方法、命令、地址类型、应答码
3. 异常层次 - 协议错误、截断读取、认证失败、上游连接失败
"""

import asyncio
from enum import IntEnum
from typing import Optional


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
USERPASS_VERSION = 0x01
RESERVED = 0x00

IPV4_ADDR_SIZE = 4
IPV6_ADDR_SIZE = 16
PORT_SIZE = 2
MAX_FIELD_SIZE = 255


# ============================================================================
# 编号枚举
# ============================================================================

class AuthMethod(IntEnum):
    """
    认证方法编号

    GSSAPI 仅作为已知编号存在，服务器不实现该方法。
    NOT_ACCEPTABLE 是协商应答中表示"没有可接受方法"的哨兵值。
    """
    NONE = 0x00
    GSSAPI = 0x01
    USERPASS = 0x02
    NOT_ACCEPTABLE = 0xFF


class Command(IntEnum):
    """请求命令编号"""
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    """
    地址类型 (ATYP)

    - IPV4: 4 字节地址
    - DOMAIN: 1 字节长度前缀 + 域名
    - IPV6: 16 字节地址
    """
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class ReplyCode(IntEnum):
    """请求应答码 (REP)"""
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_NOT_SUPPORTED = 0x08


class AuthStatus(IntEnum):
    """用户名/密码子协商状态"""
    SUCCESS = 0x00
    FAILURE = 0xFF


def is_known(enum_cls, value: int) -> bool:
    """判断整数是否是枚举中已注册的编号"""
    try:
        enum_cls(value)
    except ValueError:
        return False
    return True


# ============================================================================
# 异常层次
# ============================================================================

class Socks5Error(Exception):
    """所有 SOCKS5 会话错误的基类"""


class ProtocolError(Socks5Error):
    """
    协议错误

    版本号错误、长度字段为 0、地址类型不受支持等线路格式问题。
    会话遇到此错误后立即关闭。
    """


class TruncatedReadError(ProtocolError):
    """
    截断读取

    底层流在消息读取完整之前结束。部分消息视为错误，不会重试等待。

    Attributes:
        expected: 需要读取的字节数
        received: 实际读到的字节数
    """

    def __init__(self, expected: int, received: int):
        super().__init__(f"消息被截断: 需要 {expected} 字节，实际 {received} 字节")
        self.expected = expected
        self.received = received

    @classmethod
    def from_incomplete(cls, exc: asyncio.IncompleteReadError) -> 'TruncatedReadError':
        """从 asyncio.IncompleteReadError 构造"""
        return cls(exc.expected, len(exc.partial))


class AuthenticationFailure(Socks5Error):
    """认证失败（失败应答已经写回客户端）"""


class UpstreamConnectError(Socks5Error):
    """
    上游连接失败

    Attributes:
        reply_code: 根据底层错误推导出的应答码
        cause: 原始异常（可选）
    """

    def __init__(self, reply_code: ReplyCode, cause: Optional[BaseException] = None):
        message = f"连接目标失败: {reply_code.name}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)
        self.reply_code = reply_code
        self.cause = cause
