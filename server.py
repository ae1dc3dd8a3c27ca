#!/usr/bin/env python3
"""
WebSocket 中继服务端

版本: 1.0.0

接受本地端的 WebSocket 隧道连接，每条隧道对应一个目标连接：
第一条消息解密后为目标地址头（IPv4 或域名），之后的消息原样解密转发给目标，
目标返回的数据加密后作为隧道消息发回。
"""

import argparse
import asyncio
import logging

from config import ROLE_SERVER, ConfigError, build_config, load_config
from logger import setup_logging
from relay import RelayDispatcher

logger = logging.getLogger('relay-server')


async def run_server(config):
    """启动服务端监听器并一直运行"""
    dispatcher = RelayDispatcher(config)
    await dispatcher.serve_forever()


def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='WebSocket 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--server', '-s', default=None, help='监听地址')
    parser.add_argument('--server-port', '-p', type=int, default=None, help='监听端口')
    parser.add_argument('--password', '-k', default=None, help='共享密码')
    parser.add_argument('--method', '-m', default=None, help='加密方法')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    config_data = load_config(args.config)
    setup_logging(config_data, level='DEBUG' if args.debug else None, role=ROLE_SERVER)

    # 创建服务端配置
    try:
        config = build_config(config_data, role=ROLE_SERVER, overrides={
            'server_address': args.server,
            'server_port': args.server_port,
            'password': args.password,
            'method': args.method,
        })
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError:
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
