"""
SOCKS5 代理 - 线路编解码模块
定义 SOCKS5 握手阶段的全部消息及其序列化/反序列化。

版本: 1.0.0

功能概述:
每种消息都是一个数据类，提供 serialize() 生成线路字节，
以及异步的 read_from(reader) 从流中读取并解析一条完整消息。

解码规则:
- 先读取固定长度的头部，再按头部中的长度字段读取可变字段
- 流提前结束时抛出 TruncatedReadError，部分消息不会等待重试
- 长度字段为 0 的用户名、密码、域名视为协议错误

消息格式:
┌──────────────────────┬───────────────────────────────────────────────────┐
│ NegotiationRequest   │ VER(1)=5 NMETHODS(1) METHODS(NMETHODS)            │
│ NegotiationReply     │ VER(1)=5 METHOD(1)                                │
│ UserPassAuthRequest  │ VER(1)=1 ULEN(1) UNAME(ULEN) PLEN(1) PASSWD(PLEN) │
│ UserPassAuthReply    │ VER(1)=1 STATUS(1)                                │
│ Request              │ VER(1)=5 CMD(1) RSV(1) ATYP(1) DST.ADDR DST.PORT  │
│ RequestReply         │ VER(1)=5 REP(1) RSV(1) ATYP(1) BND.ADDR BND.PORT  │
└──────────────────────┴───────────────────────────────────────────────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import asyncio
import struct
import logging
from dataclasses import dataclass, field
from typing import List

from .core import (
    SOCKS_VERSION, USERPASS_VERSION, RESERVED,
    IPV4_ADDR_SIZE, IPV6_ADDR_SIZE, PORT_SIZE, MAX_FIELD_SIZE,
    AddressType, ReplyCode, AuthStatus,
    ProtocolError, TruncatedReadError,
)

logger = logging.getLogger('socks5-messages')


async def read_exactly(reader: asyncio.StreamReader, n: int) -> bytes:
    """
    从流中读取恰好 n 个字节

    Args:
        reader: 异步流读取器
        n: 需要读取的字节数

    Returns:
        bytes: 读取到的数据

    Raises:
        TruncatedReadError: 流在读满 n 个字节之前结束
    """
    if n == 0:
        return b''
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise TruncatedReadError.from_incomplete(e) from e


# ============================================================================
# 方法协商
# ============================================================================

@dataclass
class NegotiationRequest:
    """
    方法协商请求

    版本号不在解码时检查，由会话决定如何处理。

    Attributes:
        version: 协议版本（应为 5）
        methods: 客户端支持的认证方法编号列表
    """
    version: int
    methods: List[int] = field(default_factory=list)

    def serialize(self) -> bytes:
        return struct.pack('>BB', self.version, len(self.methods)) + bytes(self.methods)

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> 'NegotiationRequest':
        version, nmethods = struct.unpack('>BB', await read_exactly(reader, 2))
        methods = await read_exactly(reader, nmethods)
        logger.debug(f"解析协商请求: version={version}, methods={list(methods)}")
        return cls(version, list(methods))


@dataclass
class NegotiationReply:
    """方法协商应答"""
    method: int
    version: int = SOCKS_VERSION

    def serialize(self) -> bytes:
        return struct.pack('>BB', self.version, self.method)

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> 'NegotiationReply':
        version, method = struct.unpack('>BB', await read_exactly(reader, 2))
        return cls(method=method, version=version)


# ============================================================================
# 用户名/密码子协商 (RFC 1929)
# ============================================================================

@dataclass
class UserPassAuthRequest:
    """
    用户名/密码认证请求

    Attributes:
        username: 用户名原始字节（1-255 字节）
        password: 密码原始字节（1-255 字节）
        version: 子协商版本（必须为 1）
    """
    username: bytes
    password: bytes
    version: int = USERPASS_VERSION

    def serialize(self) -> bytes:
        return (
            struct.pack('>BB', self.version, len(self.username)) + self.username
            + struct.pack('>B', len(self.password)) + self.password
        )

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> 'UserPassAuthRequest':
        """
        从流中读取认证请求

        Raises:
            ProtocolError: 子协商版本错误，或用户名/密码长度为 0
            TruncatedReadError: 流提前结束
        """
        version, ulen = struct.unpack('>BB', await read_exactly(reader, 2))
        if version != USERPASS_VERSION:
            raise ProtocolError(f"无效的用户名/密码认证版本: {version}")
        if ulen == 0:
            raise ProtocolError("用户名长度为 0")
        username = await read_exactly(reader, ulen)

        plen = (await read_exactly(reader, 1))[0]
        if plen == 0:
            raise ProtocolError("密码长度为 0")
        password = await read_exactly(reader, plen)

        return cls(username=username, password=password, version=version)


@dataclass
class UserPassAuthReply:
    """用户名/密码认证应答"""
    status: int
    version: int = USERPASS_VERSION

    def serialize(self) -> bytes:
        return struct.pack('>BB', self.version, self.status)

    @classmethod
    def for_result(cls, success: bool) -> 'UserPassAuthReply':
        return cls(AuthStatus.SUCCESS if success else AuthStatus.FAILURE)

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> 'UserPassAuthReply':
        version, status = struct.unpack('>BB', await read_exactly(reader, 2))
        return cls(status=status, version=version)


# ============================================================================
# 地址字段
# ============================================================================

def pack_address(atyp: int, addr: bytes, port: int) -> bytes:
    """
    编码地址字段（ATYP 之后的部分）

    域名类型添加 1 字节长度前缀，IP 类型原样写入地址字节。

    Args:
        atyp: 地址类型
        addr: 地址字节（域名不含长度前缀）
        port: 端口号

    Returns:
        bytes: ADDR + PORT 字节
    """
    if atyp == AddressType.DOMAIN:
        return struct.pack('>B', len(addr)) + addr + struct.pack('>H', port)
    return addr + struct.pack('>H', port)


async def read_address(reader: asyncio.StreamReader, atyp: int):
    """
    按地址类型读取地址和端口

    Returns:
        tuple: (地址字节, 端口)；未知地址类型返回空地址，但仍读取端口

    Raises:
        ProtocolError: 域名长度为 0
        TruncatedReadError: 流提前结束
    """
    if atyp == AddressType.IPV4:
        addr = await read_exactly(reader, IPV4_ADDR_SIZE)
    elif atyp == AddressType.IPV6:
        addr = await read_exactly(reader, IPV6_ADDR_SIZE)
    elif atyp == AddressType.DOMAIN:
        length = (await read_exactly(reader, 1))[0]
        if length == 0:
            raise ProtocolError("域名长度为 0")
        addr = await read_exactly(reader, length)
    else:
        # 地址长度未知，不读取地址，端口照常读取
        addr = b''

    port = struct.unpack('>H', await read_exactly(reader, PORT_SIZE))[0]
    return addr, port


# ============================================================================
# 请求 / 应答
# ============================================================================

@dataclass
class Request:
    """
    客户端请求

    Attributes:
        command: 命令编号（CONNECT/BIND/UDP_ASSOCIATE）
        atyp: 地址类型编号
        dst_addr: 目标地址字节（域名不含长度前缀）
        dst_port: 目标端口
        version: 协议版本
        reserved: 保留字节
    """
    command: int
    atyp: int
    dst_addr: bytes
    dst_port: int
    version: int = SOCKS_VERSION
    reserved: int = RESERVED

    def serialize(self) -> bytes:
        header = struct.pack('>BBBB', self.version, self.command, self.reserved, self.atyp)
        return header + pack_address(self.atyp, self.dst_addr, self.dst_port)

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> 'Request':
        """
        从流中读取请求

        版本号和命令不在此处校验，地址类型未知时返回空地址。

        Raises:
            ProtocolError: 域名长度为 0
            TruncatedReadError: 流提前结束
        """
        version, command, reserved, atyp = struct.unpack('>BBBB', await read_exactly(reader, 4))
        dst_addr, dst_port = await read_address(reader, atyp)
        logger.debug(f"解析请求: version={version}, cmd={command}, atyp={atyp}, port={dst_port}")
        return cls(
            command=command,
            atyp=atyp,
            dst_addr=dst_addr,
            dst_port=dst_port,
            version=version,
            reserved=reserved,
        )


@dataclass
class RequestReply:
    """
    请求应答

    Attributes:
        reply: 应答码
        atyp: 绑定地址类型
        bnd_addr: 绑定地址字节
        bnd_port: 绑定端口
    """
    reply: int
    atyp: int = AddressType.IPV4
    bnd_addr: bytes = bytes(IPV4_ADDR_SIZE)
    bnd_port: int = 0
    version: int = SOCKS_VERSION
    reserved: int = RESERVED

    def serialize(self) -> bytes:
        header = struct.pack('>BBBB', self.version, self.reply, self.reserved, self.atyp)
        return header + pack_address(self.atyp, self.bnd_addr, self.bnd_port)

    @classmethod
    def failure(cls, reply: ReplyCode, request_atyp: int = AddressType.IPV4) -> 'RequestReply':
        """
        创建失败应答，地址字段清零

        IPv6 请求返回 16 字节全零地址，其余请求一律返回 0.0.0.0。
        """
        if request_atyp == AddressType.IPV6:
            return cls(reply, AddressType.IPV6, bytes(IPV6_ADDR_SIZE), 0)
        return cls(reply, AddressType.IPV4, bytes(IPV4_ADDR_SIZE), 0)

    @classmethod
    async def read_from(cls, reader: asyncio.StreamReader) -> 'RequestReply':
        version, reply, reserved, atyp = struct.unpack('>BBBB', await read_exactly(reader, 4))
        if atyp not in (AddressType.IPV4, AddressType.IPV6, AddressType.DOMAIN):
            raise ProtocolError(f"不支持的地址类型: {atyp}")
        bnd_addr, bnd_port = await read_address(reader, atyp)
        return cls(reply, atyp, bnd_addr, bnd_port, version, reserved)


def check_field(value: bytes, name: str) -> bytes:
    """校验单字节长度前缀字段的长度（1-255）"""
    if not 0 < len(value) <= MAX_FIELD_SIZE:
        raise ValueError(f"{name} 长度必须在 1-{MAX_FIELD_SIZE} 字节之间: {len(value)}")
    return value
