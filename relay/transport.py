"""
传输端点模块

本模块把两种异构的传输封装成会话使用的"腿"（leg）：
- StreamLeg: 原始 TCP 字节流（asyncio.StreamReader/StreamWriter）
- TunnelLeg: 按消息分帧的 WebSocket 隧道连接（websockets）

两种腿都支持暂停/恢复读取。暂停时腿的读取方法会一直等待，直到被恢复，
这是会话唯一的背压机制：在对另一条腿的写入完成之前暂停，写入完成后恢复。

关闭腿会同时唤醒被暂停的读取者，读取者随即得到"已关闭"的结果。
"""

import asyncio
import logging
import socket
from typing import Optional

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

logger = logging.getLogger(__name__)

BUFFER_SIZE = 32768


class Leg:
    """
    传输端点基类，包含暂停/恢复和关闭状态

    Attributes:
        name: 端点名称（client, tunnel, target），用于日志
        closed: 端点是否已关闭
    """

    def __init__(self, name: str):
        self.name = name
        self.closed = False
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def pause(self):
        """暂停读取：下一次读取会等待到 resume() 为止"""
        self._resumed.clear()

    def resume(self):
        """恢复读取"""
        self._resumed.set()

    async def _wait_resumed(self):
        await self._resumed.wait()

    def _mark_closed(self) -> bool:
        """标记为已关闭并唤醒等待中的读取者；已关闭时返回 False"""
        if self.closed:
            return False
        self.closed = True
        self._resumed.set()
        return True


class StreamLeg(Leg):
    """
    TCP 字节流端点

    Attributes:
        reader: asyncio.StreamReader
        writer: asyncio.StreamWriter
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, name: str = 'stream'):
        super().__init__(name)
        self.reader = reader
        self.writer = writer

    @property
    def peername(self) -> str:
        peer = self.writer.get_extra_info('peername')
        return f"{peer[0]}:{peer[1]}" if peer else "unknown"

    def set_keepalive(self, idle: int):
        """
        启用 TCP keep-alive

        Args:
            idle: 空闲多少秒后开始发送探测包（平台支持时）
        """
        sock = self.writer.get_extra_info('socket')
        if sock is None:
            return
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, 'TCP_KEEPIDLE'):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)

    async def read(self, size: int = BUFFER_SIZE) -> bytes:
        """
        读取一个数据块

        Returns:
            bytes: 数据块；对端关闭或本端已关闭时返回 b''

        Raises:
            OSError: 连接错误（例如被重置）
        """
        await self._wait_resumed()
        if self.closed:
            return b''
        return await self.reader.read(size)

    async def write(self, data: bytes):
        """写入数据并等待缓冲区排空（即"写入完成"）"""
        self.writer.write(data)
        await self.writer.drain()

    async def close(self):
        """正常关闭连接"""
        if not self._mark_closed():
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.debug(f"关闭 {self.name} 连接时出错: {e}")

    async def abort(self):
        """立即销毁连接，丢弃未发送的数据"""
        if not self._mark_closed():
            return
        transport = self.writer.transport
        if transport is not None:
            transport.abort()


class TunnelLeg(Leg):
    """
    WebSocket 隧道端点，一次写入对应一条二进制消息

    Attributes:
        websocket: websockets 连接对象
    """

    def __init__(self, websocket, name: str = 'tunnel'):
        super().__init__(name)
        self.websocket = websocket

    async def recv(self) -> Optional[bytes]:
        """
        接收一条隧道消息

        Returns:
            Optional[bytes]: 消息内容；隧道正常关闭或本端已关闭时返回 None

        Raises:
            ConnectionError: 隧道异常关闭
        """
        await self._wait_resumed()
        if self.closed:
            return None
        try:
            message = await self.websocket.recv()
        except ConnectionClosedOK:
            return None
        except ConnectionClosed as e:
            raise ConnectionError(f"隧道连接异常关闭: {e}") from e
        if isinstance(message, str):
            message = message.encode('utf-8')
        return message

    async def send(self, data: bytes):
        """
        发送一条隧道消息，返回即表示发送完成

        Raises:
            ConnectionError: 隧道已关闭
        """
        try:
            await self.websocket.send(data)
        except ConnectionClosed as e:
            raise ConnectionError(f"隧道连接已关闭: {e}") from e

    async def close(self):
        """执行 WebSocket 关闭握手"""
        if not self._mark_closed():
            return
        await self.websocket.close()

    async def abort(self):
        """不经关闭握手，直接断开底层连接"""
        if not self._mark_closed():
            return
        transport = getattr(self.websocket, 'transport', None)
        if transport is not None:
            transport.abort()
        else:
            await self.websocket.close()
