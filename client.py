#!/usr/bin/env python3
"""
WebSocket 中继本地端 - SOCKS5 前端

版本: 1.0.0

协议说明:
1. 客户端发送 SOCKS5 问候，本地端回复 "无需认证"
2. 客户端发送 CONNECT 请求，本地端立即回复 "成功"
3. 本地端打开到服务端的 WebSocket 隧道，第一条消息为加密的目标地址头
4. 之后双向转发：客户端数据加密后发往隧道，隧道消息解密后写回客户端

功能特点:
- 仅支持 CONNECT 命令，不支持认证
- 每个客户端连接使用一条独立的隧道
- 流式加密，兼容 shadowsocks 的密钥派生
"""

import argparse
import asyncio
import logging

from config import ROLE_LOCAL, ConfigError, build_config, load_config
from logger import setup_logging
from relay import RelayDispatcher

logger = logging.getLogger('relay-local')


async def run_local(config):
    """启动本地端监听器并一直运行"""
    dispatcher = RelayDispatcher(config)
    await dispatcher.serve_forever()


def main():
    """
    主函数 - 解析命令行参数并启动本地端

    命令行参数:
        --config, -c: 配置文件路径 (默认: config.yaml)
        --local-address, -b: SOCKS5 监听地址
        --local-port, -l: SOCKS5 监听端口
        --server, -s: 服务端地址
        --server-port, -p: 服务端端口
        --password, -k: 共享密码
        --method, -m: 加密方法
        --debug, -d: 启用调试模式
    """
    parser = argparse.ArgumentParser(description='WebSocket 中继本地端 (SOCKS5)')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--local-address', '-b', default=None, help='SOCKS5 监听地址')
    parser.add_argument('--local-port', '-l', type=int, default=None, help='SOCKS5 监听端口')
    parser.add_argument('--server', '-s', default=None, help='服务端地址')
    parser.add_argument('--server-port', '-p', type=int, default=None, help='服务端端口')
    parser.add_argument('--password', '-k', default=None, help='共享密码')
    parser.add_argument('--method', '-m', default=None, help='加密方法')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    config_data = load_config(args.config)
    setup_logging(config_data, level='DEBUG' if args.debug else None, role=ROLE_LOCAL)
    logger.info("启动 WebSocket 中继本地端")

    # 命令行参数优先于配置文件
    try:
        config = build_config(config_data, role=ROLE_LOCAL, overrides={
            'local_address': args.local_address,
            'local_port': args.local_port,
            'server_address': args.server,
            'server_port': args.server_port,
            'password': args.password,
            'method': args.method,
        })
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    try:
        asyncio.run(run_local(config))
    except KeyboardInterrupt:
        logger.info("本地端已停止")
    except OSError:
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
