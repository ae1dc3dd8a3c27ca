"""
本地端会话模块

本模块定义了 LocalSession 类：SOCKS5 前端 + 隧道客户端，
驱动一个客户端连接从 SOCKS5 握手到数据转发的完整生命周期。

状态机:
    INIT → ADDR → CONNECTING → STREAM，任何阶段都可以直接进入 DESTROYED

    INIT        收到问候（≥3 字节，版本 5），回复 "无需认证"
    ADDR        收到请求（≥10 字节，版本 5），只接受 CONNECT；
                先回复 "成功"（在隧道建立之前），暂停客户端读取，打开隧道
    CONNECTING  隧道打开后，把请求中地址头及其后的数据加密作为第一条隧道消息发送，
                发送完成后进入 STREAM 并恢复客户端读取
    STREAM      客户端数据 → 加密 → 隧道；隧道消息 → 解密 → 客户端
"""

import logging
from typing import Awaitable, Callable

from crypto import Encryptor
from protocol import (
    CMD_CONNECT,
    CMD_NAMES,
    MIN_GREETING_SIZE,
    MIN_REQUEST_SIZE,
    REPLY_COMMAND_NOT_SUPPORTED,
    REPLY_NO_AUTH,
    REPLY_SUCCEEDED,
    REQUEST_HEADER_OFFSET,
    SOCKS_VERSION,
    Stage,
    address_type_name,
    parse_address_header,
)

from .base import BaseSession
from .transport import StreamLeg, TunnelLeg

logger = logging.getLogger('relay-local')

TunnelOpener = Callable[[], Awaitable[TunnelLeg]]


class LocalSession(BaseSession):
    """
    本地端会话 - 处理单个 SOCKS5 客户端连接

    Attributes:
        near: StreamLeg，客户端连接
        far: TunnelLeg，到服务端的隧道（CONNECTING 阶段之后才存在）
        open_tunnel: 打开隧道的协程函数
        request: 客户端的 CONNECT 请求原文
    """

    TRANSITIONS = {
        Stage.INIT: frozenset({Stage.ADDR}),
        Stage.ADDR: frozenset({Stage.CONNECTING}),
        Stage.CONNECTING: frozenset({Stage.STREAM}),
        Stage.STREAM: frozenset(),
    }

    def __init__(self, connection_id: int, near: StreamLeg, cipher: Encryptor, open_tunnel: TunnelOpener):
        super().__init__(connection_id, near, cipher, logger)
        self.open_tunnel = open_tunnel
        self.request = b''

    # ------------------------------------------------------------------
    # 客户端方向
    # ------------------------------------------------------------------

    async def _near_loop(self):
        self._log(logging.INFO, f"接受来自客户端的连接 {self.near.peername}")
        while not self.destroyed:
            try:
                data = await self.near.read()
            except OSError as e:
                await self.on_near_error(e)
                return
            if not data:
                await self.on_near_end()
                return
            try:
                await self.on_near_data(data)
            except OSError as e:
                await self.on_near_error(e)
                return

    async def on_near_data(self, data: bytes):
        """客户端数据事件，按阶段分发"""
        self._log(logging.DEBUG, f"从客户端读取 {len(data)} 字节")
        if self.stage == Stage.INIT:
            await self._handle_greeting(data)
        elif self.stage == Stage.ADDR:
            await self._handle_request(data)
        elif self.stage == Stage.STREAM:
            await self._forward_to_tunnel(data)
        else:
            await self.unexpected('client-data')

    async def _handle_greeting(self, data: bytes):
        if len(data) < MIN_GREETING_SIZE or data[0] != SOCKS_VERSION:
            self._log(logging.WARNING, f"无效的 SOCKS5 问候: {data[:MIN_GREETING_SIZE].hex()}")
            await self.destroy()
            return
        await self.near.write(REPLY_NO_AUTH)
        self.transition(Stage.ADDR)

    async def _handle_request(self, data: bytes):
        if len(data) < MIN_REQUEST_SIZE or data[0] != SOCKS_VERSION:
            self._log(logging.WARNING, f"无效的 SOCKS5 请求: {len(data)} 字节")
            await self.destroy()
            return

        cmd = data[1]
        if cmd != CMD_CONNECT:
            self._log(logging.ERROR, f"只支持 CONNECT 命令，收到 {CMD_NAMES.get(cmd, hex(cmd))}")
            await self.near.write(REPLY_COMMAND_NOT_SUPPORTED)
            await self.destroy()
            return

        self.address_header = parse_address_header(data, REQUEST_HEADER_OFFSET)
        if self.address_header is None:
            self._log(logging.WARNING, f"无法解析目标地址，地址类型: {address_type_name(data[REQUEST_HEADER_OFFSET])}")
            await self.destroy()
            return

        self._log(logging.INFO, f"连接到 {self.address_header}")
        # 在隧道建立之前就告诉客户端连接成功
        await self.near.write(REPLY_SUCCEEDED)

        self.request = data
        self.transition(Stage.CONNECTING)
        self.near.pause()
        self._spawn_far_task(self._connect_tunnel(data[REQUEST_HEADER_OFFSET:]))

    async def _forward_to_tunnel(self, data: bytes):
        self.near.pause()
        try:
            await self.far.send(self.cipher.encrypt(data))
        except ConnectionError as e:
            await self.on_tunnel_error(e)
            return
        self._log(logging.DEBUG, f"向隧道写入 {len(data)} 字节")
        self.near.resume()

    async def on_near_end(self):
        self._log(logging.INFO, "客户端连接已关闭")
        await self.destroy()

    async def on_near_error(self, error: Exception):
        self._log(logging.ERROR, f"客户端连接错误: {error}")
        await self.destroy(abort_near=True)

    # ------------------------------------------------------------------
    # 隧道方向
    # ------------------------------------------------------------------

    async def _connect_tunnel(self, first_payload: bytes):
        """打开隧道并发送第一条消息：地址头 + 已缓冲的负载"""
        try:
            tunnel = await self._open_far(self.open_tunnel)
        except Exception as e:
            self._log(logging.ERROR, f"打开隧道失败: {e}")
            await self.destroy()
            return

        self.far = tunnel
        if self.destroyed:
            await tunnel.close()
            return
        self._log(logging.INFO, "已连接到隧道服务端")

        try:
            await self.far.send(self.cipher.encrypt(first_payload))
        except ConnectionError as e:
            await self.on_tunnel_error(e)
            return

        self.transition(Stage.STREAM)
        self.near.resume()
        await self._tunnel_loop()

    async def _tunnel_loop(self):
        while not self.destroyed:
            try:
                message = await self.far.recv()
            except ConnectionError as e:
                await self.on_tunnel_error(e)
                return
            if message is None:
                await self.on_tunnel_close()
                return
            await self.on_tunnel_message(message)

    async def on_tunnel_message(self, message: bytes):
        """隧道消息事件：解密后写给客户端"""
        self._log(logging.DEBUG, f"从隧道读取 {len(message)} 字节")
        if self.stage != Stage.STREAM:
            await self.unexpected('tunnel-message')
            return
        data = self.cipher.decrypt(message)
        if not self.can_forward_to_near:
            return
        try:
            await self.near.write(data)
        except OSError as e:
            await self.on_near_error(e)
            return
        self._log(logging.DEBUG, f"向客户端写入 {len(data)} 字节")

    async def on_tunnel_close(self):
        self._log(logging.INFO, "隧道连接已关闭")
        await self.destroy()

    async def on_tunnel_error(self, error: Exception):
        self._log(logging.ERROR, f"隧道连接错误: {error}")
        await self.destroy(abort_far=True)
