"""
SOCKS5 代理服务器包

本包实现了 SOCKS5 服务器的各个组件：
- 认证器（无认证 / 用户名密码）
- 地址解析与拨号
- 单连接协议状态机
- 双向转发
- 监听与生命周期管理

使用示例：
    from proxy import Socks5Server, UserPassAuthenticator

    server = Socks5Server(UserPassAuthenticator({'alice': 'secret'}), port=1080)
    await server.serve()
"""

from .auth import Authenticator, NoneAuthenticator, UserPassAuthenticator
from .address import Address, bound_address_fields, classify_connect_error, open_upstream
from .relay import Relay, RelayResult, close_writer
from .session import Socks5Session, SessionState
from .server import Socks5Server

__all__ = [
    'Authenticator',
    'NoneAuthenticator',
    'UserPassAuthenticator',
    'Address',
    'bound_address_fields',
    'classify_connect_error',
    'open_upstream',
    'Relay',
    'RelayResult',
    'close_writer',
    'Socks5Session',
    'SessionState',
    'Socks5Server',
]
