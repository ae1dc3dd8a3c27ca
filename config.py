"""
WebSocket 中继 - 配置管理模块
加载配置文件，合并命令行参数，校验中继配置。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 中继配置数据类（本地端和服务端共用）
2. 加载 YAML 格式的配置文件
3. 命令行参数覆盖配置文件
4. 配置校验（角色、端口、密码、加密方法）

配置文件格式（config.yaml）:
    relay:
      role: local
      local_address: 127.0.0.1
      local_port: 1080
      server_address: 127.0.0.1
      server_port: 8388
      password: secret
      method: aes-256-cfb
    logging:
      level: INFO

配置只在启动时加载一次，不支持热重载。
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from crypto import DEFAULT_METHOD, METHODS
from protocol import MAX_CONNECTIONS

logger = logging.getLogger(__name__)

ROLE_LOCAL = 'local'
ROLE_SERVER = 'server'
ROLES = (ROLE_LOCAL, ROLE_SERVER)


class ConfigError(ValueError):
    """配置无效"""


def _is_number(value, types) -> bool:
    # YAML 中的 true/false 是 bool，也是 int 的子类
    return isinstance(value, types) and not isinstance(value, bool)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class RelayConfig:
    """
    中继配置数据类

    Attributes:
        role: 运行角色，local 或 server
        local_address: 本地 SOCKS5 监听地址（默认: "127.0.0.1"）
        local_port: 本地 SOCKS5 监听端口（默认: 1080）
        server_address: 服务端地址；服务端角色下为监听地址（默认: "127.0.0.1"）
        server_port: 服务端端口（默认: 8388）
        password: 共享密码
        method: 加密方法名（默认: "aes-256-cfb"）
        max_connections: 本地端最大并发连接数（默认: 50000）
        connect_timeout: 打开隧道/连接目标的超时时间（秒，默认: 10）
    """
    role: str = ROLE_LOCAL
    local_address: str = "127.0.0.1"
    local_port: int = 1080
    server_address: str = "127.0.0.1"
    server_port: int = 8388
    password: str = None
    method: str = DEFAULT_METHOD
    max_connections: int = MAX_CONNECTIONS
    connect_timeout: float = 10.0

    @property
    def is_local(self) -> bool:
        return self.role == ROLE_LOCAL

    @property
    def listen_address(self) -> str:
        """当前角色的监听地址"""
        return self.local_address if self.is_local else self.server_address

    @property
    def listen_port(self) -> int:
        """当前角色的监听端口"""
        return self.local_port if self.is_local else self.server_port

    @property
    def tunnel_uri(self) -> str:
        """本地端连接服务端使用的 WebSocket 地址"""
        host = self.server_address
        if ':' in host and not host.startswith('['):
            host = f"[{host}]"
        return f"ws://{host}:{self.server_port}"

    def validate(self):
        """
        校验配置

        Raises:
            ConfigError: 任一配置项无效
        """
        if self.role not in ROLES:
            raise ConfigError(f"未知的角色: {self.role}（可选: {', '.join(ROLES)}）")
        if self.password is None or self.password == '':
            raise ConfigError("未配置密码!")
        self.password = str(self.password)
        self.method = (self.method or '').lower()
        if self.method not in METHODS:
            raise ConfigError(f"不支持的加密方法: {self.method}")
        for name in ('local_port', 'server_port'):
            port = getattr(self, name)
            if not _is_number(port, int) or not 0 <= port <= 65535:
                raise ConfigError(f"{name} 无效: {port}")
        if not _is_number(self.max_connections, int) or self.max_connections <= 0:
            raise ConfigError(f"max_connections 必须为正整数: {self.max_connections}")
        if not _is_number(self.connect_timeout, (int, float)) or self.connect_timeout <= 0:
            raise ConfigError(f"connect_timeout 必须为正数: {self.connect_timeout}")


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
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def build_config(config_data: Dict[str, Any], role: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None) -> RelayConfig:
    """
    由配置文件数据和命令行参数构造中继配置

    优先级: 命令行参数 > 配置文件 relay 段 > 默认值。值为 None 的覆盖项被忽略。

    Args:
        config_data: load_config 返回的字典
        role: 强制使用的角色（由入口脚本决定），None 表示使用配置文件中的角色
        overrides: 命令行参数覆盖项

    Returns:
        RelayConfig: 校验通过的配置

    Raises:
        ConfigError: 配置无效
    """
    relay_conf = dict(config_data.get('relay') or {})
    known = {f.name for f in fields(RelayConfig)}

    unknown = set(relay_conf) - known
    if unknown:
        logger.warning(f"忽略未知的配置项: {', '.join(sorted(unknown))}")

    values = {k: v for k, v in relay_conf.items() if k in known}
    for key, value in (overrides or {}).items():
        if value is not None and key in known:
            values[key] = value
    if role is not None:
        values['role'] = role

    try:
        config = RelayConfig(**values)
    except TypeError as e:
        raise ConfigError(f"配置格式错误: {e}")

    config.validate()
    return config
