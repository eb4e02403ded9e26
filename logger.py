"""
SOCKS5 代理 - 日志管理模块

版本: 1.0.0

功能概述:
本模块负责初始化标准 logging 日志系统，包括：
1. 调试模式开关（debug=False 时日志被完全抑制）
2. 控制台输出（TTY 下彩色显示级别）
3. 可选的轮转日志文件
4. 进程级上下文信息（如监听地址）
5. 配置文件和环境变量支持

协议处理不依赖日志：未初始化或被抑制时，各模块的日志调用不产生任何输出。
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

# 高于 CRITICAL，用于抑制全部日志
SILENT = logging.CRITICAL + 10

DEFAULT_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        enabled: 是否输出日志（False 时全部抑制）
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        log_file: 日志文件路径（为空时不写文件）
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        context_fields: 上下文字段列表
    """
    enabled: bool = False
    level: str = "DEBUG"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    log_file: Optional[str] = None
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    context_fields: List[str] = field(default_factory=lambda: ["listen"])

    @classmethod
    def from_dict(cls, data: Optional[dict], debug: bool = False) -> 'LogConfig':
        """
        从配置字典（config.yaml 的 logging 段）和环境变量创建配置

        环境变量优先于配置文件；debug=True 时强制启用并使用 DEBUG 级别。
        """
        data = data or {}
        config = cls(
            enabled=debug,
            level=os.getenv('LOG_LEVEL', data.get('level', 'DEBUG')),
            format_string=os.getenv('LOG_FORMAT', data.get('format_string', DEFAULT_FORMAT)),
            enable_console=os.getenv('LOG_ENABLE_CONSOLE', str(data.get('enable_console', True))).lower() == 'true',
            log_file=os.getenv('LOG_FILE', data.get('log_file')),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', data.get('max_bytes', 10 * 1024 * 1024))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', data.get('backup_count', 5))),
        )
        if debug:
            config.level = "DEBUG"
        return config

    @property
    def level_value(self) -> int:
        if not self.enabled:
            return SILENT
        return getattr(logging, str(self.level).upper(), logging.INFO)


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加进程级上下文信息
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def filter(self, record):
        record.context = " | ".join(
            f"{name}={self.context_data.get(name, '-')}" for name in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出，缺少 context 字段的记录使用 "-" 占位
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理根日志记录器的处理器和上下文过滤器（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self.handlers = []
            self._initialized = True

    def load_config_from_file(self, config_file: str, debug: bool = False) -> LogConfig:
        """
        从配置文件的 logging 段加载日志配置

        Args:
            config_file: 配置文件路径
            debug: 是否启用调试输出

        Returns:
            LogConfig: 日志配置对象
        """
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            config_data = {}
        except yaml.YAMLError as e:
            print(f"加载日志配置文件失败: {e}，使用默认配置", file=sys.stderr)
            config_data = {}

        if not isinstance(config_data, dict):
            config_data = {}
        return LogConfig.from_dict(config_data.get('logging'), debug=debug)

    def initialize(self, config: Optional[LogConfig] = None, debug: bool = False):
        """
        初始化日志系统

        重复调用会先移除上一次安装的处理器。

        Args:
            config: 日志配置对象（可选）
            debug: 未提供 config 时，是否启用调试输出
        """
        self.config = config or LogConfig(enabled=debug)

        root_logger = logging.getLogger()
        self._remove_handlers(root_logger)
        root_logger.setLevel(self.config.level_value)

        if self.config.enabled:
            if self.config.enable_console:
                self._add_handler(root_logger, self._console_handler())
            if self.config.log_file:
                self._add_handler(root_logger, self._file_handler())

        if not self.handlers:
            # 避免 logging 的 lastResort 处理器向 stderr 输出
            self._add_handler(root_logger, logging.NullHandler())

        self.context_filter = ContextFilter(self.config.context_fields)
        for handler in self.handlers:
            handler.addFilter(self.context_filter)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler):
        logger.addHandler(handler)
        self.handlers.append(handler)

    def _remove_handlers(self, logger: logging.Logger):
        for handler in self.handlers:
            logger.removeHandler(handler)
            handler.close()
        self.handlers = []

    def _console_handler(self) -> logging.Handler:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.config.level_value)
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        return console_handler

    def _file_handler(self) -> logging.Handler:
        log_file_path = Path(self.config.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=self.config.max_bytes,
            backupCount=self.config.backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(self.config.level_value)
        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        return file_handler

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)


def add_context(**kwargs):
    """添加上下文信息（便捷函数）"""
    LoggerManager().add_context(**kwargs)
