"""
地址解析模块

本模块负责请求地址与可拨号目标之间的双向转换：
- Address: 从请求的 ATYP/DST.ADDR/DST.PORT 生成拨号目标
- bound_address_fields: 把上游连接的本地端点转换成应答的 ATYP/BND.ADDR/BND.PORT
- classify_connect_error: 把拨号失败的异常归类为应答码
- open_upstream: 建立到目标的 TCP 连接

域名不在此处解析，交给拨号步骤（asyncio.open_connection）处理。
"""

import asyncio
import errno
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Optional, Tuple

from protocol import AddressType, ReplyCode, Request, ProtocolError, UpstreamConnectError

logger = logging.getLogger('socks5-address')


# 按 errno 归类，未列出的错误默认 HOST_UNREACHABLE
_ERRNO_REPLIES = {
    errno.ECONNREFUSED: ReplyCode.CONNECTION_REFUSED,
    errno.ENETUNREACH: ReplyCode.NETWORK_UNREACHABLE,
    errno.EHOSTUNREACH: ReplyCode.HOST_UNREACHABLE,
    errno.ETIMEDOUT: ReplyCode.HOST_UNREACHABLE,
}

# 没有可用 errno 时的文本特征（例如多地址拨号合并后的错误）
_TEXT_REPLIES = (
    ('refused', ReplyCode.CONNECTION_REFUSED),
    ('network is unreachable', ReplyCode.NETWORK_UNREACHABLE),
)


@dataclass(frozen=True)
class Address:
    """
    拨号目标

    Attributes:
        host: IP 字面量或域名
        port: 端口号
        atyp: 来源请求的地址类型
    """
    host: str
    port: int
    atyp: int = AddressType.IPV4

    @classmethod
    def from_request(cls, request: Request) -> 'Address':
        """
        从请求构造拨号目标

        IPv4/IPv6 地址字节渲染为标准文本形式，域名字节原样作为主机名。

        Raises:
            ProtocolError: 地址类型未知或地址长度不符
        """
        if request.atyp in (AddressType.IPV4, AddressType.IPV6):
            try:
                host = str(ipaddress.ip_address(request.dst_addr))
            except ValueError as e:
                raise ProtocolError(f"无效的 IP 地址: {request.dst_addr!r}") from e
        elif request.atyp == AddressType.DOMAIN:
            host = request.dst_addr.decode('utf-8', errors='replace')
        else:
            raise ProtocolError(f"不支持的地址类型: {request.atyp}")
        return cls(host=host, port=request.dst_port, atyp=request.atyp)

    @property
    def target(self) -> str:
        """host:port 形式的目标字符串，IPv6 地址加方括号"""
        if self.atyp == AddressType.IPV6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def __str__(self):
        return self.target


def bound_address_fields(sockname) -> Tuple[int, bytes, int]:
    """
    把本地端点转换成应答地址字段

    IPv4 映射的 IPv6 地址按 IPv4 返回。

    Args:
        sockname: socket.getsockname() 的返回值

    Returns:
        tuple: (ATYP, BND.ADDR 字节, BND.PORT)
    """
    host, port = sockname[0], sockname[1]
    ip = ipaddress.ip_address(host.split('%', 1)[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    atyp = AddressType.IPV4 if ip.version == 4 else AddressType.IPV6
    return atyp, ip.packed, port


def classify_connect_error(exc: BaseException) -> ReplyCode:
    """
    把拨号异常归类为应答码

    优先使用异常类型和 errno，其次检查错误文本，最后默认 HOST_UNREACHABLE。

    Args:
        exc: 拨号抛出的异常

    Returns:
        ReplyCode: 对应的应答码
    """
    if isinstance(exc, ConnectionRefusedError):
        return ReplyCode.CONNECTION_REFUSED
    if isinstance(exc, (asyncio.TimeoutError, socket.gaierror)):
        return ReplyCode.HOST_UNREACHABLE
    if isinstance(exc, OSError) and exc.errno in _ERRNO_REPLIES:
        return _ERRNO_REPLIES[exc.errno]

    message = str(exc).lower()
    for signature, reply in _TEXT_REPLIES:
        if signature in message:
            return reply
    return ReplyCode.HOST_UNREACHABLE


async def open_upstream(address: Address, timeout: Optional[float] = None
                        ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立到目标的 TCP 连接

    Args:
        address: 拨号目标
        timeout: 连接超时（秒），None 表示不限制

    Returns:
        tuple: (reader, writer)

    Raises:
        UpstreamConnectError: 连接失败，携带归类后的应答码
    """
    logger.debug(f"拨号: {address.target}, timeout={timeout}")
    try:
        return await asyncio.wait_for(
            asyncio.open_connection(address.host, address.port),
            timeout=timeout
        )
    except (OSError, asyncio.TimeoutError, UnicodeError) as e:
        reply = classify_connect_error(e)
        logger.debug(f"拨号失败: {address.target}, error={e!r}, reply={reply.name}")
        raise UpstreamConnectError(reply, e) from e
