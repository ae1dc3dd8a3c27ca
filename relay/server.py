"""
服务端会话模块

本模块定义了 ServerSession 类：隧道端点 + TCP 外连，
驱动一个隧道连接从收到目标地址到数据转发的完整生命周期。

状态机:
    INIT → CONNECTING → STREAM，任何阶段都可以直接进入 DESTROYED

每条隧道消息都先解密，再按阶段分发：
    INIT        解析地址头（≥7 字节，IPv4/域名），暂停隧道读取，连接目标
    CONNECTING  连接成功后进入 STREAM；首包中地址头之后的负载先写给目标，
                写入完成后恢复隧道读取
    STREAM      隧道消息 → 目标；目标数据 → 加密 → 隧道
"""

import asyncio
import logging
from typing import Awaitable, Callable

from crypto import Encryptor
from protocol import MIN_TUNNEL_HEADER_SIZE, AddressHeader, Stage, address_type_name, parse_address_header

from .base import BaseSession
from .transport import StreamLeg, TunnelLeg

logger = logging.getLogger('relay-server')

TargetOpener = Callable[[str, int], Awaitable[StreamLeg]]


class ServerSession(BaseSession):
    """
    服务端会话 - 处理单个隧道连接

    Attributes:
        near: TunnelLeg，来自本地端的隧道
        far: StreamLeg，到目标主机的连接（CONNECTING 阶段之后才存在）
        open_target: 连接目标主机的协程函数
    """

    TRANSITIONS = {
        Stage.INIT: frozenset({Stage.CONNECTING}),
        Stage.CONNECTING: frozenset({Stage.STREAM}),
        Stage.STREAM: frozenset(),
    }

    def __init__(self, connection_id: int, near: TunnelLeg, cipher: Encryptor, open_target: TargetOpener):
        super().__init__(connection_id, near, cipher, logger)
        self.open_target = open_target

    # ------------------------------------------------------------------
    # 隧道方向
    # ------------------------------------------------------------------

    async def _near_loop(self):
        self._log(logging.INFO, "接受来自本地端的隧道连接")
        while not self.destroyed:
            try:
                message = await self.near.recv()
            except ConnectionError as e:
                await self.on_tunnel_error(e)
                return
            if message is None:
                await self.on_tunnel_close()
                return
            await self.on_tunnel_message(message)

    async def on_tunnel_message(self, message: bytes):
        """隧道消息事件：先解密，再按阶段分发"""
        data = self.cipher.decrypt(message)
        self._log(logging.DEBUG, f"从隧道读取 {len(data)} 字节")

        if self.stage == Stage.INIT:
            await self._handle_address(data)
        elif self.stage == Stage.STREAM:
            await self._forward_to_target(data)
        else:
            await self.unexpected('tunnel-message')

    async def _handle_address(self, data: bytes):
        if len(data) < MIN_TUNNEL_HEADER_SIZE:
            self._log(logging.WARNING, f"隧道首包过短: {len(data)} 字节")
            await self.destroy()
            return
        self.address_header = parse_address_header(data, 0)
        if self.address_header is None:
            self._log(logging.WARNING, f"无法解析目标地址，地址类型: {address_type_name(data[0])}")
            await self.destroy()
            return

        self._log(logging.INFO, f"连接到 {self.address_header}")
        self.near.pause()
        self.transition(Stage.CONNECTING)
        self._spawn_far_task(self._connect_target(self.address_header, data[self.address_header.header_length:]))

    async def _forward_to_target(self, data: bytes):
        self.near.pause()
        if self.can_forward_to_near:
            try:
                await self.far.write(data)
            except OSError as e:
                await self.on_target_error(e)
                return
            self._log(logging.DEBUG, f"向目标写入 {len(data)} 字节")
        self.near.resume()

    async def on_tunnel_close(self):
        self._log(logging.INFO, "隧道连接已关闭")
        await self.destroy()

    async def on_tunnel_error(self, error: Exception):
        self._log(logging.ERROR, f"隧道连接错误: {error}")
        await self.destroy(abort_near=True)

    # ------------------------------------------------------------------
    # 目标方向
    # ------------------------------------------------------------------

    async def _connect_target(self, header: AddressHeader, payload: bytes):
        """连接目标主机；首包中剩余的负载在恢复隧道读取之前写给目标"""
        try:
            target = await self._open_far(self.open_target, header.host, header.port)
        except (OSError, asyncio.TimeoutError) as e:
            self._log(logging.ERROR, f"连接目标 {header} 失败: {e}")
            await self.destroy(abort_far=True)
            return

        self.far = target
        if self.destroyed:
            await target.abort()
            return
        self._log(logging.INFO, f"已连接到目标 {header}")
        self.transition(Stage.STREAM)

        if payload:
            try:
                await self.far.write(payload)
            except OSError as e:
                await self.on_target_error(e)
                return
            self._log(logging.DEBUG, f"向目标写入首包负载 {len(payload)} 字节")
        self.near.resume()
        await self._target_loop()

    async def _target_loop(self):
        while not self.destroyed:
            try:
                data = await self.far.read()
            except OSError as e:
                await self.on_target_error(e)
                return
            if not data:
                await self.on_target_end()
                return
            await self.on_target_data(data)

    async def on_target_data(self, data: bytes):
        """目标数据事件：加密后通过隧道发回"""
        self._log(logging.DEBUG, f"从目标读取 {len(data)} 字节")
        if not self.can_forward_to_near:
            return
        try:
            await self.near.send(self.cipher.encrypt(data))
        except ConnectionError as e:
            await self.on_tunnel_error(e)
            return
        self._log(logging.DEBUG, f"向隧道写入 {len(data)} 字节")

    async def on_target_end(self):
        self._log(logging.INFO, "目标连接已关闭")
        await self.destroy()

    async def on_target_error(self, error: Exception):
        self._log(logging.ERROR, f"目标连接错误: {error}")
        await self.destroy(abort_far=True)
