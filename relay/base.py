"""
中继会话基础类

本模块定义了本地端会话和服务端会话共享的核心功能，包括：
- 显式的阶段字段和阶段转换表
- 转发保护标志
- 会话销毁（关闭两条腿，取消未完成的连接任务）
- 带连接 ID 和阶段的日志

本地端和服务端会话通过继承此类，实现各自的状态机。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Optional

from crypto import Encryptor
from protocol import AddressHeader, Stage

from .transport import Leg


class StageError(RuntimeError):
    """非法的阶段转换"""


class BaseSession(ABC):
    """
    中继会话基类

    一个会话对应监听器上接受的一个连接，拥有两条传输腿和一个加密器。

    Attributes:
        connection_id: 连接 ID，仅用于日志关联
        stage: 当前阶段
        near: 面向直接对端的腿（本地端为客户端连接，服务端为隧道）
        far: 面向路径其余部分的腿（本地端为隧道，服务端为目标连接）
        cipher: 会话独占的加密器
        can_forward_to_near: 转发保护标志，清除后不再向任何一条腿写入数据
        address_header: 初始阶段解析得到的目标地址
    """

    # 当前阶段 -> 允许进入的下一阶段；DESTROYED 总是允许
    TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {}

    def __init__(self, connection_id: int, near: Leg, cipher: Encryptor, logger: logging.Logger):
        self.connection_id = connection_id
        self.stage = Stage.INIT
        self.near = near
        self.far: Optional[Leg] = None
        self.cipher = cipher
        self.can_forward_to_near = True
        self.address_header: Optional[AddressHeader] = None
        self.logger = logger

        self._far_task: Optional[asyncio.Task] = None
        self._torn_down = False

    @property
    def destroyed(self) -> bool:
        return self.stage == Stage.DESTROYED

    def _log(self, level: int, msg: str, **kwargs):
        """记录日志，附带连接 ID 和当前阶段"""
        self.logger.log(level, f"[{self.connection_id}] [{self.stage.name}] {msg}", **kwargs)

    def transition(self, stage: Stage):
        """
        进入下一个阶段

        Args:
            stage: 目标阶段

        Raises:
            StageError: 当前阶段不允许进入目标阶段
        """
        if stage == Stage.DESTROYED:
            self.stage = stage
            return
        if stage not in self.TRANSITIONS.get(self.stage, frozenset()):
            raise StageError(f"非法的阶段转换: {self.stage.name} -> {stage.name}")
        self._log(logging.DEBUG, f"进入阶段 {stage.name}")
        self.stage = stage

    async def run(self):
        """
        运行会话直到销毁

        驱动近端腿的读取循环；任何逃逸的异常都会被记录并导致会话销毁，
        不会影响其它会话。
        """
        try:
            await self._near_loop()
        except asyncio.CancelledError:
            self._log(logging.DEBUG, "会话被取消")
            raise
        except Exception as e:
            self._log(logging.ERROR, f"会话错误: {e}", exc_info=True)
        finally:
            await self.destroy()
            # 等待远端读取任务结束，保证返回时会话已完全清理
            if self._far_task is not None and not self._far_task.done():
                await asyncio.gather(self._far_task, return_exceptions=True)

    @abstractmethod
    async def _near_loop(self):
        """近端腿的读取循环"""

    def _spawn_far_task(self, coro):
        """在后台任务中驱动远端腿：建立连接，然后读取远端数据"""
        self._far_task = asyncio.create_task(self._guard(coro))

    async def _open_far(self, opener, *args) -> Leg:
        """
        打开远端腿

        会话在打开期间被取消时，取消未完成的打开操作；
        已经打开但尚未交给会话的腿会被立即断开。
        """
        pending = asyncio.ensure_future(opener(*args))
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            pending.cancel()
            result = (await asyncio.gather(pending, return_exceptions=True))[0]
            if isinstance(result, Leg):
                self._log(logging.DEBUG, f"会话已取消，断开刚打开的 {result.name} 连接")
                await result.abort()
            raise

    async def _guard(self, coro):
        """在独立任务中运行事件处理，异常只影响本会话"""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(logging.ERROR, f"会话错误: {e}", exc_info=True)
            await self.destroy()

    async def unexpected(self, event: str):
        """当前阶段没有处理该事件：记录并销毁会话"""
        self._log(logging.WARNING, f"阶段 {self.stage.name} 不处理事件 {event}，销毁会话")
        await self.destroy()

    async def destroy(self, abort_near: bool = False, abort_far: bool = False):
        """
        销毁会话

        进入 DESTROYED 阶段，清除转发保护标志，取消未完成的连接任务，
        关闭两条腿。重复调用是安全的。

        Args:
            abort_near: 立即断开近端腿，而不是正常关闭
            abort_far: 立即断开远端腿，而不是正常关闭
        """
        self.transition(Stage.DESTROYED)
        self.can_forward_to_near = False
        if self._torn_down:
            return
        self._torn_down = True

        current = asyncio.current_task()
        task = self._far_task
        if task is not None and task is not current and not task.done():
            task.cancel()

        await (self.near.abort() if abort_near else self.near.close())
        if self.far is not None:
            await (self.far.abort() if abort_far else self.far.close())
        self._log(logging.INFO, "会话已销毁")
