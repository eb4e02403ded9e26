#!/usr/bin/env python3
"""
服务器生命周期与转发测试

测试内容:
1. 启动后报告实际监听地址
2. shutdown() 取消进行中的转发，serve() 返回
3. 关闭后不再接受新连接
4. Relay 任一方向结束即关闭两端

使用方法:
    pytest test_server.py
"""

import asyncio
import socket

import pytest

from protocol import Command, AddressType, Request
from proxy import Socks5Server, Relay

TIMEOUT = 10.0


def run(coro):
    return asyncio.run(asyncio.wait_for(coro, TIMEOUT * 3))


async def echo_handler(reader, writer):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionResetError, BrokenPipeError):
        pass
    finally:
        writer.close()


async def open_relay(proxy, echo_port):
    """通过代理建立到回显服务器的转发连接"""
    reader, writer = await asyncio.open_connection(*proxy.address)
    writer.write(b'\x05\x01\x00')
    assert await reader.readexactly(2) == b'\x05\x00'
    writer.write(Request(Command.CONNECT, AddressType.IPV4, socket.inet_aton('127.0.0.1'), echo_port).serialize())
    reply = await reader.readexactly(10)
    assert reply[1] == 0x00
    return reader, writer


def test_address_before_and_after_start():
    async def _run():
        proxy = Socks5Server(host='127.0.0.1', port=0)
        assert proxy.address is None
        await proxy.start()
        address = proxy.address
        proxy.shutdown()
        await proxy.serve()
        return address

    host, port = run(_run())
    assert host == '127.0.0.1'
    assert port > 0


def test_shutdown_cancels_in_flight_relays():
    """关闭时进行中的会话被取消，客户端连接被关闭"""
    async def _run():
        echo = await asyncio.start_server(echo_handler, '127.0.0.1', 0)
        echo_port = echo.sockets[0].getsockname()[1]

        proxy = Socks5Server(host='127.0.0.1', port=0)
        await proxy.start()
        serve_task = asyncio.create_task(proxy.serve())

        clients = [await open_relay(proxy, echo_port) for _ in range(3)]
        for reader, writer in clients:
            writer.write(b'alive')
            assert await reader.readexactly(5) == b'alive'
        assert len(proxy.sessions) == 3
        address = proxy.address

        proxy.shutdown()
        await asyncio.wait_for(serve_task, TIMEOUT)
        assert not proxy.sessions

        for reader, writer in clients:
            try:
                data = await asyncio.wait_for(reader.read(), TIMEOUT)
            except ConnectionResetError:
                data = b''
            assert data == b''
            writer.close()

        echo.close()
        return address

    address = run(_run())

    async def _connect():
        await asyncio.open_connection(*address)

    with pytest.raises(OSError):
        run(_connect())


def test_shutdown_cancels_session_not_yet_started():
    """刚被接受、任务还没运行的连接也会被取消并关闭"""
    async def _run():
        accepted = asyncio.Queue()

        async def on_accept(reader, writer):
            await accepted.put((reader, writer))

        side = await asyncio.start_server(on_accept, '127.0.0.1', 0)
        port = side.sockets[0].getsockname()[1]
        client_reader, client_writer = await asyncio.open_connection('127.0.0.1', port)
        server_reader, server_writer = await accepted.get()

        proxy = Socks5Server(host='127.0.0.1', port=0)
        await proxy.start()

        # 登记后不让出事件循环，直接关闭
        proxy._accept(server_reader, server_writer)
        assert len(proxy.sessions) == 1
        await asyncio.wait_for(proxy._close(), TIMEOUT)

        assert not proxy.sessions
        # 会话从未创建
        assert next(proxy._session_ids) == 1

        data = await asyncio.wait_for(client_reader.read(), TIMEOUT)
        client_writer.close()
        side.close()
        return data

    assert run(_run()) == b''


def test_shutdown_before_start_is_noop():
    proxy = Socks5Server(port=0)
    proxy.shutdown()
    assert proxy.address is None


def test_relay_ends_when_either_side_finishes():
    """上游关闭后转发结束，统计两个方向的字节数"""
    async def _run():
        accepted = asyncio.Queue()

        async def on_accept(reader, writer):
            await accepted.put((reader, writer))

        server = await asyncio.start_server(on_accept, '127.0.0.1', 0)
        port = server.sockets[0].getsockname()[1]

        # client <-> proxy 端
        client_reader, client_writer = await asyncio.open_connection('127.0.0.1', port)
        proxy_client_reader, proxy_client_writer = await accepted.get()
        # proxy <-> upstream 端
        proxy_up_reader, proxy_up_writer = await asyncio.open_connection('127.0.0.1', port)
        upstream_reader, upstream_writer = await accepted.get()

        relay = Relay(proxy_client_reader, proxy_client_writer, proxy_up_reader, proxy_up_writer, buffer_size=4)
        relay_task = asyncio.create_task(relay.run())

        client_writer.write(b'request')
        assert await upstream_reader.readexactly(7) == b'request'
        upstream_writer.write(b'response!')
        await upstream_writer.drain()
        assert await client_reader.readexactly(9) == b'response!'

        upstream_writer.close()
        result = await asyncio.wait_for(relay_task, TIMEOUT)

        # 客户端看到 EOF，转发结束不另行通知
        assert await asyncio.wait_for(client_reader.read(), TIMEOUT) == b''
        client_writer.close()
        server.close()
        return result

    result = run(_run())
    assert result.first_done == 'upstream->client'
    assert result.error is None
    assert result.client_to_upstream == 7
    assert result.upstream_to_client == 9
