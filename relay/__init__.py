"""
WebSocket 中继统一模块

本模块整合了本地端和服务端的中继会话，提供了统一的入口。

主要功能包括：
- SOCKS5 握手（仅 CONNECT，无认证）
- 加密的 WebSocket 隧道
- 显式的会话状态机
- 暂停/恢复背压

使用示例：
    # 本地端或服务端，由 config.role 决定
    from relay import RelayDispatcher
    dispatcher = RelayDispatcher(config)
    await dispatcher.serve_forever()

    # 单个会话
    from relay import LocalSession
    session = LocalSession(connection_id, client_leg, cipher, open_tunnel)
    await session.run()
"""

from .base import BaseSession, StageError

# 延迟导入会话和调度模块以避免循环导入
def __getattr__(name):
    if name == 'LocalSession':
        from .local import LocalSession
        return LocalSession
    elif name == 'ServerSession':
        from .server import ServerSession
        return ServerSession
    elif name in ('RelayDispatcher', 'ConnectionIdCounter'):
        from . import dispatcher
        return getattr(dispatcher, name)
    elif name in ('StreamLeg', 'TunnelLeg'):
        from . import transport
        return getattr(transport, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    'BaseSession',
    'StageError',
    'LocalSession',
    'ServerSession',
    'RelayDispatcher',
    'ConnectionIdCounter',
    'StreamLeg',
    'TunnelLeg',
]
