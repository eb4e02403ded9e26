"""
SOCKS5 代理 - 配置管理模块
加载配置文件和用户凭据，构造服务器配置和认证器。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器配置数据类（构造时校验）
2. YAML 配置文件加载
3. 用户凭据文件加载
4. 根据配置构造认证器

配置文件格式:
- 服务器配置: config.yaml（server 段）
- 用户配置: users.yaml（users 段）
- 使用 YAML 格式，支持 Unicode
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

from proxy.auth import Authenticator, NoneAuthenticator, UserPassAuthenticator

logger = logging.getLogger(__name__)

AUTH_NONE = 'none'
AUTH_USERPASS = 'userpass'
AUTH_METHODS = (AUTH_NONE, AUTH_USERPASS)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 服务器监听地址（默认: "127.0.0.1"）
        port: 服务器监听端口（默认: 1080）
        auth_method: 认证方法，"none" 或 "userpass"（默认: "none"）
        users_file: 用户凭据文件路径（默认: "users.yaml"）
        debug: 是否输出调试日志到控制台（默认: False）
        connect_timeout: 拨号超时秒数，None 表示不限制（默认: None）
        buffer_size: 转发读取块大小（默认: 65536）
    """
    host: str = "127.0.0.1"
    port: int = 1080
    auth_method: str = AUTH_NONE
    users_file: str = "users.yaml"
    debug: bool = False
    connect_timeout: Optional[float] = None
    buffer_size: int = 65536

    def __post_init__(self):
        self.auth_method = str(self.auth_method).lower()
        if self.auth_method not in AUTH_METHODS:
            raise ValueError(f"未知的认证方法: {self.auth_method}（可选: {', '.join(AUTH_METHODS)}）")
        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"无效的端口号: {self.port}")
        self.port = int(self.port)
        if self.connect_timeout is not None:
            self.connect_timeout = float(self.connect_timeout)
            if self.connect_timeout <= 0:
                raise ValueError(f"连接超时必须大于 0: {self.connect_timeout}")
        if int(self.buffer_size) <= 0:
            raise ValueError(f"缓冲区大小必须大于 0: {self.buffer_size}")
        self.buffer_size = int(self.buffer_size)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ServerConfig':
        """
        从配置字典（config.yaml 的 server 段）创建配置

        未知的键会被忽略并记录警告。
        """
        data = dict(data or {})
        known = set(cls.__dataclass_fields__)
        for key in sorted(set(data) - known):
            logger.warning(f"忽略未知的配置项: server.{key}")
        return cls(**{key: value for key, value in data.items() if key in known})


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}

    if not isinstance(data, dict):
        return {}
    return data


def load_users(users_file: str) -> Dict[str, str]:
    """
    加载用户凭据

    支持两种用户配置格式：
    1. 简化格式：username: password
    2. 完整格式：username: {password: xxx}

    Args:
        users_file: 用户配置文件路径

    Returns:
        Dict[str, str]: 用户名到密码的映射，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(users_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"用户配置文件格式错误: {e}")
        return {}

    if not isinstance(data, dict) or not data.get('users'):
        return {}

    users = {}
    for username, user_data in data['users'].items():
        if isinstance(user_data, dict):
            password = user_data.get('password')
        else:
            password = user_data
        if password is None or password == '':
            logger.warning(f"用户 {username} 没有密码，已跳过")
            continue
        users[str(username)] = str(password)
    return users


def build_authenticator(config: ServerConfig, credentials: Optional[Dict[str, str]] = None) -> Authenticator:
    """
    根据配置构造认证器

    Args:
        config: 服务器配置
        credentials: 用户凭据；为 None 时从 config.users_file 加载

    Returns:
        Authenticator: 认证器实例

    Raises:
        ValueError: 选择了用户名/密码认证但没有任何用户
    """
    if config.auth_method == AUTH_NONE:
        return NoneAuthenticator()

    if credentials is None:
        credentials = load_users(config.users_file)
    if not credentials:
        raise ValueError(f"未配置用户！请在 {config.users_file} 中添加用户")
    logger.info(f"已加载用户数: {len(credentials)}")
    return UserPassAuthenticator(credentials)
