#!/usr/bin/env python3
"""
地址解析与拨号错误归类测试

测试内容:
1. 请求地址 -> 拨号目标
2. 本地端点 -> 应答地址字段
3. 拨号异常 -> 应答码

使用方法:
    pytest test_address.py
"""

import asyncio
import errno
import socket

import pytest

from protocol import AddressType, Command, ReplyCode, Request, ProtocolError, UpstreamConnectError
from proxy.address import Address, bound_address_fields, classify_connect_error, open_upstream


def test_ipv4_target():
    request = Request(Command.CONNECT, AddressType.IPV4, bytes([192, 168, 1, 10]), 8080)
    address = Address.from_request(request)
    assert address.host == '192.168.1.10'
    assert address.port == 8080
    assert address.target == '192.168.1.10:8080'


def test_ipv6_target():
    request = Request(Command.CONNECT, AddressType.IPV6, bytes(15) + b'\x01', 443)
    address = Address.from_request(request)
    assert address.host == '::1'
    assert address.target == '[::1]:443'


def test_domain_target_is_not_resolved():
    """域名原样保留，不做解析"""
    request = Request(Command.CONNECT, AddressType.DOMAIN, b'example.com', 80)
    address = Address.from_request(request)
    assert address.host == 'example.com'
    assert str(address) == 'example.com:80'


def test_unknown_atyp_is_rejected():
    request = Request(Command.CONNECT, 0x02, b'', 0)
    with pytest.raises(ProtocolError):
        Address.from_request(request)


def test_bound_address_ipv4():
    atyp, addr, port = bound_address_fields(('10.0.0.2', 40000))
    assert atyp == AddressType.IPV4
    assert addr == bytes([10, 0, 0, 2])
    assert port == 40000


def test_bound_address_ipv6():
    atyp, addr, port = bound_address_fields(('fe80::1%eth0', 5555, 0, 2))
    assert atyp == AddressType.IPV6
    assert addr == bytes([0xfe, 0x80]) + bytes(13) + b'\x01'
    assert port == 5555


def test_bound_address_ipv4_mapped():
    atyp, addr, port = bound_address_fields(('::ffff:127.0.0.1', 1234, 0, 0))
    assert atyp == AddressType.IPV4
    assert addr == bytes([127, 0, 0, 1])
    assert port == 1234


@pytest.mark.parametrize('exc, expected', [
    (ConnectionRefusedError(errno.ECONNREFUSED, 'Connection refused'), ReplyCode.CONNECTION_REFUSED),
    (OSError(errno.ECONNREFUSED, 'Connection refused'), ReplyCode.CONNECTION_REFUSED),
    (OSError(errno.ENETUNREACH, 'Network is unreachable'), ReplyCode.NETWORK_UNREACHABLE),
    (OSError(errno.EHOSTUNREACH, 'No route to host'), ReplyCode.HOST_UNREACHABLE),
    (socket.gaierror(socket.EAI_NONAME, 'Name or service not known'), ReplyCode.HOST_UNREACHABLE),
    (asyncio.TimeoutError(), ReplyCode.HOST_UNREACHABLE),
    (OSError('Multiple exceptions: [Errno 111] Connect call failed, connection refused'),
     ReplyCode.CONNECTION_REFUSED),
    (OSError('connect: network is unreachable'), ReplyCode.NETWORK_UNREACHABLE),
    (OSError('something else entirely'), ReplyCode.HOST_UNREACHABLE),
])
def test_classify_connect_error(exc, expected):
    assert classify_connect_error(exc) == expected


def test_open_upstream_refused():
    """拨号到已关闭的端口得到 CONNECTION_REFUSED"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()

    async def _run():
        with pytest.raises(UpstreamConnectError) as excinfo:
            await open_upstream(Address('127.0.0.1', port))
        return excinfo.value

    error = asyncio.run(_run())
    assert error.reply_code == ReplyCode.CONNECTION_REFUSED
    assert error.cause is not None


def test_open_upstream_success():
    async def _run():
        server = await asyncio.start_server(lambda r, w: w.close(), '127.0.0.1', 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            reader, writer = await open_upstream(Address('127.0.0.1', port), timeout=5)
            local = writer.get_extra_info('sockname')
            writer.close()
            await writer.wait_closed()
        return local

    local = asyncio.run(_run())
    assert local[0] == '127.0.0.1'
