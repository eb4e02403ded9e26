#!/usr/bin/env python3
"""
配置与日志初始化测试

测试内容:
1. ServerConfig 默认值与校验
2. config.yaml / users.yaml 加载
3. 认证器构造
4. 命令行参数覆盖配置文件
5. 日志默认静默，调试模式输出到控制台

使用方法:
    pytest test_config.py
"""

import logging

import pytest

from config import ServerConfig, load_config, load_users, build_authenticator
from logger import LoggerManager, LogConfig, SILENT, add_context
from proxy import NoneAuthenticator, UserPassAuthenticator
from server import parse_args, build_config, main


# ============================================================================
# ServerConfig
# ============================================================================

def test_server_config_defaults():
    config = ServerConfig()
    assert config.host == '127.0.0.1'
    assert config.port == 1080
    assert config.auth_method == 'none'
    assert config.users_file == 'users.yaml'
    assert config.debug is False
    assert config.connect_timeout is None
    assert config.buffer_size == 65536


@pytest.mark.parametrize('kwargs', [
    {'auth_method': 'gssapi'},
    {'port': 70000},
    {'port': -1},
    {'connect_timeout': 0},
    {'buffer_size': 0},
])
def test_server_config_validation(kwargs):
    with pytest.raises(ValueError):
        ServerConfig(**kwargs)


def test_server_config_from_dict_ignores_unknown_keys():
    config = ServerConfig.from_dict({'port': '2080', 'auth_method': 'USERPASS', 'tls': True})
    assert config.port == 2080
    assert config.auth_method == 'userpass'
    assert not hasattr(config, 'tls')


# ============================================================================
# 文件加载
# ============================================================================

def test_load_config_missing_file(tmp_path):
    assert load_config(str(tmp_path / 'missing.yaml')) == {}


def test_load_config_invalid_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('server: [unclosed', encoding='utf-8')
    assert load_config(str(path)) == {}


def test_load_config(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('server:\n  port: 1081\n  auth_method: userpass\n', encoding='utf-8')
    assert load_config(str(path)) == {'server': {'port': 1081, 'auth_method': 'userpass'}}


def test_load_users_both_formats(tmp_path):
    path = tmp_path / 'users.yaml'
    path.write_text(
        'users:\n'
        '  alice: secret\n'
        '  bob:\n'
        '    password: hunter2\n'
        '  carol:\n'
        '    password: ""\n',
        encoding='utf-8'
    )
    assert load_users(str(path)) == {'alice': 'secret', 'bob': 'hunter2'}


def test_load_users_empty(tmp_path):
    path = tmp_path / 'users.yaml'
    path.write_text('users:\n', encoding='utf-8')
    assert load_users(str(path)) == {}
    assert load_users(str(tmp_path / 'missing.yaml')) == {}


# ============================================================================
# 认证器构造
# ============================================================================

def test_build_authenticator_none():
    assert isinstance(build_authenticator(ServerConfig()), NoneAuthenticator)


def test_build_authenticator_userpass(tmp_path):
    path = tmp_path / 'users.yaml'
    path.write_text('users:\n  alice: secret\n', encoding='utf-8')
    authenticator = build_authenticator(ServerConfig(auth_method='userpass', users_file=str(path)))
    assert isinstance(authenticator, UserPassAuthenticator)
    assert authenticator.verify(b'alice', b'secret')


def test_build_authenticator_userpass_without_users(tmp_path):
    config = ServerConfig(auth_method='userpass', users_file=str(tmp_path / 'missing.yaml'))
    with pytest.raises(ValueError):
        build_authenticator(config)


# ============================================================================
# 命令行
# ============================================================================

def test_cli_overrides_config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        'server:\n'
        '  host: 0.0.0.0\n'
        '  port: 1081\n'
        '  connect_timeout: 5\n',
        encoding='utf-8'
    )
    args = parse_args(['-c', str(path), '--port', '9050', '--auth', 'userpass', '-d'])
    config = build_config(args)
    assert config.host == '0.0.0.0'
    assert config.port == 9050
    assert config.auth_method == 'userpass'
    assert config.connect_timeout == 5.0
    assert config.debug is True


def test_main_rejects_invalid_config(tmp_path, capsys):
    path = tmp_path / 'config.yaml'
    path.write_text('server:\n  auth_method: kerberos\n', encoding='utf-8')
    assert main(['-c', str(path)]) == 1
    assert '配置错误' in capsys.readouterr().err


def test_main_userpass_without_users(tmp_path, capsys, root_logger):
    args = ['-c', str(tmp_path / 'missing.yaml'), '--auth', 'userpass', '-u', str(tmp_path / 'none.yaml')]
    assert main(args) == 1
    assert '配置错误' in capsys.readouterr().err


# ============================================================================
# 日志
# ============================================================================

@pytest.fixture
def root_logger():
    root = logging.getLogger()
    level = root.level
    yield root
    LoggerManager()._remove_handlers(root)
    root.setLevel(level)


def test_logging_silent_by_default(root_logger):
    manager = LoggerManager()
    manager.initialize(LogConfig.from_dict({}, debug=False))
    assert root_logger.level == SILENT
    assert all(isinstance(h, logging.NullHandler) for h in manager.handlers)


def test_logging_debug_console(root_logger, capsys):
    manager = LoggerManager()
    manager.initialize(LogConfig.from_dict({'level': 'WARNING'}, debug=True))
    add_context(listen='127.0.0.1:1080')
    assert root_logger.level == logging.DEBUG

    logging.getLogger('socks5-test').debug('hello log')
    out = capsys.readouterr().out
    assert 'hello log' in out
    assert 'listen=127.0.0.1:1080' in out


def test_logging_file(root_logger, tmp_path):
    log_file = tmp_path / 'logs' / 'socks5.log'
    manager = LoggerManager()
    manager.initialize(LogConfig(enabled=True, level='INFO', enable_console=False, log_file=str(log_file)))

    logging.getLogger('socks5-test').debug('not written')
    logging.getLogger('socks5-test').info('written')
    for handler in manager.handlers:
        handler.flush()

    content = log_file.read_text(encoding='utf-8')
    assert 'written' in content
    assert 'not written' not in content
