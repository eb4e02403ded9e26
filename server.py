#!/usr/bin/env python3
"""
SOCKS5 代理服务端

版本: 1.0.0

协议:
1. 方法协商（无认证 / 用户名密码）
2. 可选的用户名/密码认证（RFC 1929）
3. CONNECT 请求，拨号目标后双向转发
4. BIND 和 UDP ASSOCIATE 回复 "command not supported"

用法:
    socks5-server -c config.yaml
    socks5-server --port 1080 --auth userpass --users users.yaml -d
"""

import argparse
import asyncio
import logging
import signal
import sys

from config import ServerConfig, load_config, build_authenticator, AUTH_METHODS
from logger import LoggerManager, add_context
from proxy import Socks5Server

logger = logging.getLogger('socks5-main')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='SOCKS5 代理服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口')
    parser.add_argument('--auth', choices=AUTH_METHODS, default=None, help='认证方法')
    parser.add_argument('--users', '-u', default=None, help='用户文件（默认：从配置或 users.yaml）')
    parser.add_argument('--connect-timeout', type=float, default=None, help='拨号超时（秒）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    """合并配置文件和命令行参数，命令行优先"""
    server_conf = dict(load_config(args.config).get('server') or {})

    overrides = {
        'host': args.host,
        'port': args.port,
        'auth_method': args.auth,
        'users_file': args.users,
        'connect_timeout': args.connect_timeout,
    }
    server_conf.update({key: value for key, value in overrides.items() if value is not None})
    if args.debug:
        server_conf['debug'] = True
    return ServerConfig.from_dict(server_conf)


async def run_server(server: Socks5Server):
    """运行服务器，收到 SIGINT/SIGTERM 时关闭"""
    await server.start()
    add_context(listen="%s:%s" % server.address)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.shutdown)
        except (NotImplementedError, RuntimeError):
            pass  # 平台不支持信号处理器，依赖 KeyboardInterrupt

    await server.serve()


def main(argv=None) -> int:
    """主函数"""
    args = parse_args(argv)

    try:
        config = build_config(args)
    except (TypeError, ValueError) as e:
        print(f"配置错误: {e}", file=sys.stderr)
        return 1

    manager = LoggerManager()
    manager.initialize(manager.load_config_from_file(args.config, debug=config.debug))

    try:
        authenticator = build_authenticator(config)
    except ValueError as e:
        print(f"配置错误: {e}", file=sys.stderr)
        return 1

    server = Socks5Server(
        authenticator,
        host=config.host,
        port=config.port,
        connect_timeout=config.connect_timeout,
        buffer_size=config.buffer_size,
    )

    try:
        asyncio.run(run_server(server))
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        print(f"监听失败: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
