"""
SOCKS5 协议包

本包提供了 SOCKS5 代理的协议定义和实现，包括：
- 协议常量和编号枚举
- 异常层次
- 握手消息的序列化/反序列化

使用示例：
    from protocol import NegotiationRequest, Request, RequestReply, ReplyCode

    # 从流中读取请求
    request = await Request.read_from(reader)

    # 构造失败应答
    writer.write(RequestReply.failure(ReplyCode.COMMAND_NOT_SUPPORTED).serialize())
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    USERPASS_VERSION,
    RESERVED,
    MAX_FIELD_SIZE,

    # 编号枚举
    AuthMethod,
    Command,
    AddressType,
    ReplyCode,
    AuthStatus,
    is_known,

    # 异常
    Socks5Error,
    ProtocolError,
    TruncatedReadError,
    AuthenticationFailure,
    UpstreamConnectError,
)

from .messages import (
    NegotiationRequest,
    NegotiationReply,
    UserPassAuthRequest,
    UserPassAuthReply,
    Request,
    RequestReply,
    read_exactly,
    check_field,
)

__all__ = [
    'SOCKS_VERSION',
    'USERPASS_VERSION',
    'RESERVED',
    'MAX_FIELD_SIZE',
    'AuthMethod',
    'Command',
    'AddressType',
    'ReplyCode',
    'AuthStatus',
    'is_known',
    'Socks5Error',
    'ProtocolError',
    'TruncatedReadError',
    'AuthenticationFailure',
    'UpstreamConnectError',
    'NegotiationRequest',
    'NegotiationReply',
    'UserPassAuthRequest',
    'UserPassAuthReply',
    'Request',
    'RequestReply',
    'read_exactly',
    'check_field',
]
