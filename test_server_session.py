#!/usr/bin/env python3
"""
服务端会话状态机测试

使用方法:
    pytest test_server_session.py
"""

import asyncio

import pytest

from conftest import FakeStreamLeg, FakeTunnelLeg, wait_until
from crypto import Encryptor
from protocol import Stage
from relay import ServerSession

PASSWORD = 'test-password'
TARGET = b'\x01\x7f\x00\x00\x01\x00\x50'


class Harness:
    """一个服务端会话，隧道为假端点，目标连接由假的拨号函数返回"""

    def __init__(self, open_target=None):
        self.tunnel = FakeTunnelLeg('tunnel')
        self.target = FakeStreamLeg('target')
        self.peer = Encryptor(PASSWORD)
        self.dialed = []
        self.session = ServerSession(3, self.tunnel, Encryptor(PASSWORD), open_target or self.open_target)
        self.task = asyncio.create_task(self.session.run())

    async def open_target(self, host, port):
        self.dialed.append((host, port))
        return self.target

    async def connect(self, payload: bytes = b''):
        self.tunnel.feed(self.peer.encrypt(TARGET + payload))
        await wait_until(lambda: self.session.stage == Stage.STREAM and not self.tunnel.paused)

    async def finished(self):
        await asyncio.wait_for(self.task, 2)
        assert self.session.destroyed
        assert not self.session.can_forward_to_near


def test_dial_and_forward():
    """首包解析出目标地址，剩余负载在恢复隧道读取之前写给目标"""
    async def scenario():
        h = Harness()
        await h.connect(b'GET / HTTP/1.1\r\n')
        assert h.dialed == [('127.0.0.1', 80)]
        assert h.target.written == [b'GET / HTTP/1.1\r\n']

        # 隧道 → 目标
        h.tunnel.feed(h.peer.encrypt(b'Host: localhost\r\n'))
        await wait_until(lambda: len(h.target.written) == 2)
        assert h.target.written[1] == b'Host: localhost\r\n'

        # 目标 → 隧道
        h.target.feed(b'HTTP/1.1 200 OK\r\n')
        await wait_until(lambda: len(h.tunnel.sent) == 1)
        assert h.peer.decrypt(h.tunnel.sent[0]) == b'HTTP/1.1 200 OK\r\n'

        # 目标关闭，整个会话销毁
        h.target.feed(b'')
        await h.finished()
        assert h.tunnel.how == 'close'
        assert h.target.how == 'close'

    asyncio.run(scenario())


def test_header_only_first_message():
    """首包只有地址头时不向目标写入"""
    async def scenario():
        h = Harness()
        await h.connect()
        assert h.target.written == []
        h.tunnel.feed(None)
        await h.finished()

    asyncio.run(scenario())


def test_domain_target():
    async def scenario():
        h = Harness()
        h.tunnel.feed(h.peer.encrypt(b'\x03\x0aexample.cm\x00\x50' + b'data'))
        await wait_until(lambda: h.session.stage == Stage.STREAM)
        assert h.dialed == [('example.cm', 80)]
        await wait_until(lambda: h.target.written == [b'data'])
        h.tunnel.feed(None)
        await h.finished()
        assert h.target.how == 'close'

    asyncio.run(scenario())


@pytest.mark.parametrize('header', [
    b'\x01\x7f',
    b'\x04' + b'\x00' * 18,
    b'\x09' + b'\x00' * 6,
])
def test_invalid_first_message(header):
    """首包过短或地址类型不受支持: 销毁会话，不拨号"""
    async def scenario():
        h = Harness()
        h.tunnel.feed(h.peer.encrypt(header))
        await h.finished()
        assert h.dialed == []
        assert h.session.far is None
        assert h.tunnel.how == 'close'

    asyncio.run(scenario())


def test_first_message_shorter_than_iv():
    """首包连 IV 都不完整时解密输出为空，按过短的首包处理"""
    async def scenario():
        h = Harness()
        message = h.peer.encrypt(TARGET)
        h.tunnel.feed(message[:8])
        await h.finished()
        assert h.dialed == []

    asyncio.run(scenario())


def test_tunnel_paused_while_dialing():
    async def scenario():
        release = asyncio.Event()
        target = FakeStreamLeg('target')

        async def slow_dial(host, port):
            await release.wait()
            return target

        h = Harness(open_target=slow_dial)
        h.tunnel.feed(h.peer.encrypt(TARGET))
        await wait_until(lambda: h.session.stage == Stage.CONNECTING)
        assert h.tunnel.paused

        h.tunnel.feed(h.peer.encrypt(b'early'))
        await asyncio.sleep(0.05)
        assert h.tunnel.incoming.qsize() == 1

        release.set()
        await wait_until(lambda: target.written == [b'early'])
        h.tunnel.feed(None)
        await h.finished()

    asyncio.run(scenario())


def test_dial_failure():
    async def scenario():
        async def refused(host, port):
            raise ConnectionRefusedError('connection refused')

        h = Harness(open_target=refused)
        h.tunnel.feed(h.peer.encrypt(TARGET))
        await h.finished()
        assert h.tunnel.how == 'close'
        assert h.session.far is None

    asyncio.run(scenario())


def test_dial_timeout():
    async def scenario():
        async def timeout(host, port):
            raise asyncio.TimeoutError()

        h = Harness(open_target=timeout)
        h.tunnel.feed(h.peer.encrypt(TARGET))
        await h.finished()

    asyncio.run(scenario())


def test_target_error_clears_forwarding_guard():
    """目标连接错误: 目标被立即断开，隧道正常关闭，之后不再转发"""
    async def scenario():
        h = Harness()
        await h.connect()
        h.target.feed(ConnectionResetError('reset by peer'))
        await h.finished()
        assert h.target.how == 'abort'
        assert h.tunnel.how == 'close'

        # 保护标志清除后，迟到的目标数据不会写入隧道
        await h.session.on_target_data(b'late')
        assert h.tunnel.sent == []

    asyncio.run(scenario())


def test_tunnel_error_aborts_tunnel():
    async def scenario():
        h = Harness()
        await h.connect()
        h.tunnel.feed(ConnectionError('abnormal closure'))
        await h.finished()
        assert h.tunnel.how == 'abort'
        assert h.target.how == 'close'

    asyncio.run(scenario())


def test_backpressure_tunnel_to_target():
    """目标写入完成之前不读取下一条隧道消息"""
    async def scenario():
        h = Harness()
        await h.connect()
        h.target.gate = asyncio.Event()

        h.tunnel.feed(h.peer.encrypt(b'a'))
        h.tunnel.feed(h.peer.encrypt(b'b'))
        await wait_until(lambda: h.target.written == [b'a'])
        assert h.tunnel.paused
        await asyncio.sleep(0.05)
        assert h.tunnel.incoming.qsize() == 1

        h.target.gate.set()
        await wait_until(lambda: h.target.written == [b'a', b'b'])
        h.tunnel.feed(None)
        await h.finished()

    asyncio.run(scenario())


def test_target_dialed_during_teardown_is_aborted():
    """目标连接恰好在会话销毁时建立: 新连接被断开，不写入任何数据"""
    async def scenario():
        release = asyncio.Event()
        target = FakeStreamLeg('target')

        async def racing_dial(host, port):
            await release.wait()
            return target

        h = Harness(open_target=racing_dial)
        h.tunnel.feed(h.peer.encrypt(TARGET + b'payload'))
        await wait_until(lambda: h.session.stage == Stage.CONNECTING)

        release.set()
        await asyncio.sleep(0)
        assert h.session.far is None

        await h.session.destroy()
        await h.finished()
        assert target.how == 'abort'
        assert target.written == []
        assert h.tunnel.how == 'close'

    asyncio.run(scenario())
