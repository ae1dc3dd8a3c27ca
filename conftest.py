"""
测试辅助: 会话测试使用的假传输端点

假端点继承 Leg，保留真实的暂停/恢复和关闭语义，
读取的数据由测试通过 feed() 注入，写入的数据记录在列表中。
"""

import asyncio

from relay.transport import Leg


async def wait_until(predicate, timeout: float = 2.0):
    """轮询直到条件成立，超时抛出 AssertionError"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.005)


class FakeStreamLeg(Leg):
    """
    假 TCP 端点

    feed(b'') 表示对端关闭，feed(异常) 表示连接错误。
    gate 未设置时写入会一直等待，用于模拟写缓冲区未排空。
    """

    def __init__(self, name: str = 'client'):
        super().__init__(name)
        self.incoming = asyncio.Queue()
        self.written = []
        self.gate = None
        self.how = None

    @property
    def peername(self) -> str:
        return 'fake:0'

    def feed(self, item):
        self.incoming.put_nowait(item)

    async def read(self, size: int = 32768) -> bytes:
        await self._wait_resumed()
        if self.closed:
            return b''
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data: bytes):
        self.written.append(data)
        if self.gate is not None:
            await self.gate.wait()

    async def close(self):
        if self._mark_closed():
            self.how = 'close'
            self.incoming.put_nowait(b'')

    async def abort(self):
        if self._mark_closed():
            self.how = 'abort'
            self.incoming.put_nowait(b'')


class FakeTunnelLeg(Leg):
    """
    假隧道端点

    feed(None) 表示隧道正常关闭，feed(异常) 表示隧道异常关闭。
    """

    def __init__(self, name: str = 'tunnel'):
        super().__init__(name)
        self.incoming = asyncio.Queue()
        self.sent = []
        self.gate = None
        self.how = None

    def feed(self, item):
        self.incoming.put_nowait(item)

    async def recv(self):
        await self._wait_resumed()
        if self.closed:
            return None
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data: bytes):
        self.sent.append(data)
        if self.gate is not None:
            await self.gate.wait()

    async def close(self):
        if self._mark_closed():
            self.how = 'close'
            self.incoming.put_nowait(None)

    async def abort(self):
        if self._mark_closed():
            self.how = 'abort'
            self.incoming.put_nowait(None)
