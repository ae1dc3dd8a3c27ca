"""
WebSocket 中继 - 协议定义
定义 SOCKS5 协议常量、会话阶段和目标地址头的解析。

版本: 1.0.0

功能概述:
本模块提供了中继系统的核心协议定义，被本地端（local）和服务端（server）
共享，确保两端使用相同的地址头格式。

主要功能:
1. SOCKS5 协议常量 - 版本号、命令、地址类型、应答码
2. 会话阶段枚举 - 本地会话和服务端会话的状态机阶段
3. 地址头解析 - 解析 SOCKS5 风格的目标地址

地址头格式:
┌──────────┬──────────────────────────────┬────────────┐
│ 地址类型 │           目标地址           │   端口     │
│  1 字节  │ IPv4: 4 字节                 │  2 字节    │
│          │ 域名: 1 字节长度 + 域名      │  大端序    │
└──────────┴──────────────────────────────┴────────────┘

隧道中的第一条消息即为 "地址头 + 已缓冲的负载"，之后的消息都是原始数据块。
"""

import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
MAX_CONNECTIONS = 50000

ADDRESS_TYPE_IPV4 = 0x01
ADDRESS_TYPE_DOMAIN_NAME = 0x03
ADDRESS_TYPE_IPV6 = 0x04

ADDRESS_TYPE_NAMES = {
    ADDRESS_TYPE_IPV4: 'IPV4',
    ADDRESS_TYPE_DOMAIN_NAME: 'DOMAIN_NAME',
    ADDRESS_TYPE_IPV6: 'IPV6',
}


def address_type_name(address_type: int) -> str:
    return ADDRESS_TYPE_NAMES.get(address_type, f"{address_type:#04x}")


METHOD_NO_AUTHENTICATION_REQUIRED = 0x00

CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

CMD_NAMES = {
    CMD_CONNECT: 'CONNECT',
    CMD_BIND: 'BIND',
    CMD_UDP_ASSOCIATE: 'UDP_ASSOCIATE',
}

REPLY_CODE_SUCCEEDED = 0x00
REPLY_CODE_COMMAND_NOT_SUPPORTED = 0x07

# 最小长度: 问候 3 字节，请求 10 字节（IPv4 最短），隧道首包 7 字节（IPv4 地址头）
MIN_GREETING_SIZE = 3
MIN_REQUEST_SIZE = 10
MIN_TUNNEL_HEADER_SIZE = 7

# 请求中地址头的偏移: VER(1) + CMD(1) + RSV(1)
REQUEST_HEADER_OFFSET = 3


def _make_reply(code: int) -> bytes:
    """
    构造固定的 SOCKS5 应答

    绑定地址始终为全零的 IPv4 地址和端口 0，而不是实际的绑定地址。
    """
    return struct.pack('>BBBB4sH', SOCKS_VERSION, code, 0x00, ADDRESS_TYPE_IPV4, b'\x00' * 4, 0)


REPLY_NO_AUTH = bytes([SOCKS_VERSION, METHOD_NO_AUTHENTICATION_REQUIRED])
REPLY_SUCCEEDED = _make_reply(REPLY_CODE_SUCCEEDED)
REPLY_COMMAND_NOT_SUPPORTED = _make_reply(REPLY_CODE_COMMAND_NOT_SUPPORTED)


# ============================================================================
# 会话阶段枚举
# ============================================================================

class Stage(IntEnum):
    """
    会话状态机阶段

    数值沿用原有中继的取值，UDP_ASSOC 与 DNS 两个阶段不受支持，因此未定义。

    阶段说明:
    - DESTROYED: 终止阶段，任何阶段都可以直接进入
    - INIT: 本地端等待 SOCKS5 问候；服务端等待隧道首包
    - ADDR: 本地端等待 SOCKS5 CONNECT 请求
    - CONNECTING: 本地端正在打开隧道；服务端正在连接目标
    - STREAM: 双向转发数据
    """
    DESTROYED = -1
    INIT = 0
    ADDR = 1
    CONNECTING = 4
    STREAM = 5


# ============================================================================
# 地址头
# ============================================================================

@dataclass(frozen=True)
class AddressHeader:
    """
    目标地址头

    Attributes:
        address_type: 地址类型（ADDRESS_TYPE_IPV4 或 ADDRESS_TYPE_DOMAIN_NAME）
        host: 目标主机（点分十进制 IPv4 或域名）
        port: 目标端口
        header_length: 地址头占用的字节数，用于定位同一缓冲区中的后续负载
    """
    address_type: int
    host: str
    port: int
    header_length: int

    def __str__(self):
        return f"{self.host}:{self.port}"


def parse_address_header(data: bytes, offset: int = 0) -> Optional[AddressHeader]:
    """
    从缓冲区的指定偏移处解析一个目标地址头

    只支持 IPv4 和域名两种地址类型。IPv6 虽然是已知的类型标记，
    但没有对应的解码规则，解析失败。缓冲区长度不足以容纳地址头时同样失败。

    调用方必须把解析失败视为会话的致命错误，不能换一个偏移重试。

    Args:
        data: 包含地址头的缓冲区
        offset: 地址头起始偏移

    Returns:
        Optional[AddressHeader]: 解析成功返回地址头，否则返回 None
    """
    if offset < 0 or offset >= len(data):
        return None

    address_type = data[offset]

    if address_type == ADDRESS_TYPE_DOMAIN_NAME:
        if len(data) < offset + 2:
            return None
        name_length = data[offset + 1]
        header_length = 4 + name_length
        if len(data) < offset + header_length:
            return None
        host = data[offset + 2:offset + 2 + name_length].decode('utf-8', errors='replace')
        port = struct.unpack('>H', data[offset + 2 + name_length:offset + header_length])[0]

    elif address_type == ADDRESS_TYPE_IPV4:
        header_length = 7
        if len(data) < offset + header_length:
            return None
        host = socket.inet_ntoa(data[offset + 1:offset + 5])
        port = struct.unpack('>H', data[offset + 5:offset + 7])[0]

    else:
        return None

    return AddressHeader(
        address_type=address_type,
        host=host,
        port=port,
        header_length=header_length
    )
