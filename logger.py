"""
WebSocket 中继 - 日志管理模块

版本: 1.0.0

功能概述:
本模块负责初始化进程级的日志系统，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 控制台彩色输出
3. 日志文件轮转（按日期/大小）
4. 系统日志（systemd journal，可用时）
5. 上下文信息（运行角色等）

配置来源（优先级从高到低）:
1. 环境变量（LOG_LEVEL, LOG_DIR, LOG_FILE, ...）
2. 配置文件的 logging 段
3. LogConfig 默认值

会话相关的信息（连接 ID、阶段）由各会话写入日志消息本身。
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "ws-relay.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["role"]


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加上下文信息
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def filter(self, record):
        record.context = " | ".join(
            f"{field}={self.context_data.get(field, '-')}" for field in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出；缺少 context 字段的记录（例如第三方库的日志）显示为 "-"
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


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和上下文信息，单例
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
            self._initialized = True

    def config_from_dict(self, log_conf: Dict[str, Any]) -> LogConfig:
        """
        由配置文件的 logging 段构造日志配置，环境变量优先

        Args:
            log_conf: 配置文件中的 logging 段（可为空字典）

        Returns:
            LogConfig: 日志配置对象
        """
        defaults = LogConfig()
        return LogConfig(
            level=os.getenv('LOG_LEVEL', log_conf.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', log_conf.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', log_conf.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', log_conf.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_conf.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', log_conf.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', log_conf.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', log_conf.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', log_conf.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', log_conf.get('enable_journal', defaults.enable_journal)),
            context_fields=log_conf.get('context_fields', defaults.context_fields)
        )

    def initialize(self, config: Optional[LogConfig] = None, config_data: Optional[Dict[str, Any]] = None,
                   level: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            config_data: 完整的配置文件数据，使用其中的 logging 段（可选）
            level: 强制使用的日志级别，例如命令行 --debug（可选）
        """
        if config:
            self.config = config
        else:
            self.config = self.config_from_dict((config_data or {}).get('logging') or {})
        if level:
            self.config.level = level

        self._setup_root_logger()
        self._setup_context_filter()

    @property
    def level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)
        root_logger.handlers.clear()

        if self.config.enable_console:
            self._add_console_handler(root_logger)

        if self.config.enable_file:
            self._add_file_handler(root_logger)

        if self.config.enable_journal and HAS_JOURNAL:
            journal_handler = JournalHandler()
            journal_handler.setLevel(self.level)
            root_logger.addHandler(journal_handler)

    def _setup_context_filter(self):
        self.context_filter = ContextFilter(self.config.context_fields)
        # 过滤器挂在处理器上，子日志记录器的记录也能带上上下文
        for handler in logging.getLogger().handlers:
            handler.addFilter(self.context_filter)

    def _add_console_handler(self, logger: logging.Logger):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.level)
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        logger.addHandler(console_handler)

    def _add_file_handler(self, logger: logging.Logger):
        """
        添加文件处理器（支持轮转）

        Args:
            logger: 日志记录器
        """
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(filename=log_file_path, encoding='utf-8')

        file_handler.setLevel(self.level)
        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        logger.addHandler(file_handler)

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)


def setup_logging(config_data: Optional[Dict[str, Any]] = None, level: Optional[str] = None,
                  **context) -> LoggerManager:
    """
    初始化日志系统并设置上下文（便捷函数）

    Args:
        config_data: 完整的配置文件数据
        level: 强制使用的日志级别
        **context: 上下文键值对，例如 role="local"

    Returns:
        LoggerManager: 日志管理器
    """
    manager = LoggerManager()
    manager.initialize(config_data=config_data, level=level)
    manager.add_context(**context)
    return manager
