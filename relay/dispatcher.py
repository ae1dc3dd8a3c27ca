"""
中继调度模块 - 监听器生命周期管理

此模块包含 RelayDispatcher 类，负责根据配置选择角色、启动监听器，
并为每个接受的连接分配连接 ID、创建加密器和会话。

主要组件:
- ConnectionIdCounter: 进程内唯一持有者的连接 ID 计数器
- RelayDispatcher: 本地端使用 TCP 监听器，服务端使用 WebSocket 监听器

使用示例:
    >>> config = build_config(load_config('config.yaml'), role='server')
    >>> dispatcher = RelayDispatcher(config)
    >>> asyncio.run(dispatcher.serve_forever())
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple

from websockets.asyncio.client import connect
from websockets.asyncio.server import serve

from config import RelayConfig
from crypto import Encryptor, create_encryptor
from protocol import MAX_CONNECTIONS

from .local import LocalSession
from .server import ServerSession
from .transport import StreamLeg, TunnelLeg

logger = logging.getLogger('relay-dispatcher')

CLIENT_KEEPALIVE_IDLE = 10
TARGET_KEEPALIVE_IDLE = 5


class ConnectionIdCounter:
    """
    连接 ID 计数器

    单调递增，对上限取模后回绕。不保证唯一：ID 只用于日志关联，
    回绕之后的重复是可以接受的。
    """

    def __init__(self, bound: int = MAX_CONNECTIONS, start: int = 1):
        self.bound = bound
        self._next = start

    def next(self) -> int:
        value = self._next % self.bound
        self._next += 1
        return value


class RelayDispatcher:
    """
    中继调度器 - 管理监听器和会话创建

    工作流程:
    1. 根据 config.role 选择角色
    2. 本地端启动 TCP 监听器，服务端启动 WebSocket 监听器
    3. 每个连接分配连接 ID，创建独立的加密器和会话
    4. 会话在各自的协程中运行，单个会话失败不影响其它会话

    Attributes:
        config: RelayConfig，中继配置
        counter: ConnectionIdCounter，连接 ID 计数器
        cipher_factory: 加密器工厂，每个会话调用一次
        active_sessions: 当前活跃的会话数
    """

    def __init__(self, config: RelayConfig, counter: Optional[ConnectionIdCounter] = None,
                 cipher_factory: Callable[[RelayConfig], Encryptor] = create_encryptor):
        self.config = config
        self.counter = counter or ConnectionIdCounter()
        self.cipher_factory = cipher_factory
        self.active_sessions = 0
        self.server = None

    @property
    def name(self) -> str:
        return 'relay-local' if self.config.is_local else 'relay-server'

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """监听器实际绑定的地址（端口为 0 时由系统分配）"""
        if self.server is None:
            return None
        sockets = list(self.server.sockets)
        if not sockets:
            return None
        return sockets[0].getsockname()[:2]

    # ------------------------------------------------------------------
    # 传输端点工厂
    # ------------------------------------------------------------------

    async def open_tunnel(self) -> TunnelLeg:
        """本地端: 打开一条到服务端的隧道"""
        websocket = await connect(
            self.config.tunnel_uri,
            compression=None,
            max_size=None,
            open_timeout=self.config.connect_timeout,
        )
        return TunnelLeg(websocket)

    async def open_target(self, host: str, port: int) -> StreamLeg:
        """服务端: 连接目标主机，启用 keep-alive"""
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=self.config.connect_timeout
        )
        target = StreamLeg(reader, writer, name='target')
        target.set_keepalive(TARGET_KEEPALIVE_IDLE)
        return target

    # ------------------------------------------------------------------
    # 连接处理
    # ------------------------------------------------------------------

    async def handle_local_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理 SOCKS5 客户端连接（本地端）

        Args:
            reader: 客户端读取流
            writer: 客户端写入流
        """
        client = StreamLeg(reader, writer, name='client')
        if self.active_sessions >= self.config.max_connections:
            logger.warning(f"连接数已达上限 {self.config.max_connections}，拒绝 {client.peername}")
            await client.abort()
            return
        client.set_keepalive(CLIENT_KEEPALIVE_IDLE)
        session = LocalSession(self.counter.next(), client, self.cipher_factory(self.config), self.open_tunnel)
        await self._run_session(session)

    async def handle_tunnel_connection(self, websocket):
        """
        处理隧道连接（服务端）

        Args:
            websocket: websockets 服务端连接
        """
        tunnel = TunnelLeg(websocket)
        session = ServerSession(self.counter.next(), tunnel, self.cipher_factory(self.config), self.open_target)
        await self._run_session(session)

    async def _run_session(self, session):
        self.active_sessions += 1
        try:
            await session.run()
        except Exception as e:
            logger.error(f"会话 [{session.connection_id}] 异常退出: {e}", exc_info=True)
        finally:
            self.active_sessions -= 1

    # ------------------------------------------------------------------
    # 监听器生命周期
    # ------------------------------------------------------------------

    async def start(self):
        """
        启动监听器

        Raises:
            OSError: 绑定地址失败（已记录日志）
        """
        host, port = self.config.listen_address, self.config.listen_port
        try:
            if self.config.is_local:
                self.server = await asyncio.start_server(self.handle_local_connection, host, port)
            else:
                self.server = await serve(
                    self.handle_tunnel_connection, host, port,
                    compression=None,
                    max_size=None,
                )
        except OSError as e:
            logger.error(f"{self.name} 监听 {host}:{port} 失败: {e}")
            raise

        bound = self.address
        logger.info(f"{self.name} 正在监听 {bound[0]}:{bound[1]}" if bound else f"{self.name} 正在监听 {host}:{port}")
        if self.config.is_local:
            logger.info(f"隧道服务端: {self.config.tunnel_uri}, 加密方法: {self.config.method}")
        return self.server

    async def serve_forever(self):
        """启动监听器并一直运行，直到被取消"""
        if self.server is None:
            await self.start()
        try:
            await self.server.serve_forever()
        finally:
            await self.close()

    async def close(self):
        """关闭监听器；服务端同时关闭所有隧道连接"""
        if self.server is None:
            return
        server, self.server = self.server, None
        server.close()
        await server.wait_closed()
        logger.info(f"{self.name} 已停止")
