"""
WebSocket 中继 - 加密模块
处理隧道消息的加密/解密操作。

版本: 1.0.0

功能概述:
每个中继会话拥有一个独立的 Encryptor，由共享密码和加密方法名构造。
加密和解密都是有状态的流加密：同一会话内必须严格按照发送/接收顺序调用，
乱序调用只会得到错误的输出，而不会抛出可检测的错误。

加密方案:
- 使用 OpenSSL EVP_BytesToKey（MD5）从密码派生密钥
- 发送方向第一次加密时在密文前附加随机 IV
- 接收方向第一次解密时从密文前部读取对端的 IV
- 之后的数据块继续使用同一个密钥流

密文格式:
┌────────────────┬──────────────────────────────┐
│    IV（首包）  │            密文              │
│  12 或 16 字节 │           可变长度           │
└────────────────┴──────────────────────────────┘
"""

import hashlib
import logging
import os
from functools import lru_cache
from typing import Dict, Tuple

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.decrepit.ciphers import modes as legacy_modes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)


# 方法名 -> (密钥长度, IV 长度)
METHODS: Dict[str, Tuple[int, int]] = {
    'aes-128-cfb': (16, 16),
    'aes-192-cfb': (24, 16),
    'aes-256-cfb': (32, 16),
    'aes-128-cfb8': (16, 16),
    'aes-192-cfb8': (24, 16),
    'aes-256-cfb8': (32, 16),
    'aes-128-ofb': (16, 16),
    'aes-192-ofb': (24, 16),
    'aes-256-ofb': (32, 16),
    'aes-128-ctr': (16, 16),
    'aes-192-ctr': (24, 16),
    'aes-256-ctr': (32, 16),
    'chacha20-ietf': (32, 12),
}

DEFAULT_METHOD = 'aes-256-cfb'

_AES_MODES = {
    'cfb': legacy_modes.CFB,
    'cfb8': legacy_modes.CFB8,
    'ofb': legacy_modes.OFB,
    'ctr': modes.CTR,
}


@lru_cache(maxsize=64)
def evp_bytes_to_key(password: bytes, key_len: int, iv_len: int) -> Tuple[bytes, bytes]:
    """
    OpenSSL EVP_BytesToKey 密钥派生（MD5，单轮，无盐）

    与 shadowsocks 系列实现保持一致，相同的密码和方法总是得到相同的密钥。

    Args:
        password: 密码字节串
        key_len: 需要的密钥长度
        iv_len: 需要的 IV 长度

    Returns:
        Tuple[bytes, bytes]: (密钥, IV)
    """
    blocks = []
    previous = b''
    while len(b''.join(blocks)) < key_len + iv_len:
        previous = hashlib.md5(previous + password).digest()
        blocks.append(previous)
    material = b''.join(blocks)
    return material[:key_len], material[key_len:key_len + iv_len]


def _new_cipher(method: str, key: bytes, iv: bytes) -> Cipher:
    """根据方法名创建 cryptography 的 Cipher 对象"""
    if method == 'chacha20-ietf':
        # 16 字节 nonce = 4 字节计数器（从 0 开始）+ 12 字节 IV
        return Cipher(algorithms.ChaCha20(key, b'\x00' * 4 + iv), mode=None, backend=default_backend())
    mode_name = method.rsplit('-', 1)[1]
    return Cipher(algorithms.AES(key), _AES_MODES[mode_name](iv), backend=default_backend())


class Encryptor:
    """
    会话加密器

    一个中继会话对应一个 Encryptor，不在会话之间共享或复用。

    Attributes:
        method: 加密方法名
        key: 派生得到的密钥
        iv_len: IV 长度
    """

    def __init__(self, password: str, method: str = DEFAULT_METHOD):
        """
        使用共享密码和加密方法初始化加密器

        Args:
            password: 共享密码
            method: 加密方法名，必须是 METHODS 中的一项

        Raises:
            ValueError: 不支持的加密方法或密码为空
        """
        method = (method or '').lower()
        if method not in METHODS:
            raise ValueError(f"不支持的加密方法: {method}")
        if not password:
            raise ValueError("密码不能为空")

        self.method = method
        key_len, self.iv_len = METHODS[method]
        self.key, _ = evp_bytes_to_key(password.encode('utf-8'), key_len, self.iv_len)

        self._send_iv = os.urandom(self.iv_len)
        self._encryptor = _new_cipher(method, self.key, self._send_iv).encryptor()
        self._iv_sent = False

        self._decryptor = None
        self._recv_iv_buffer = b''

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        加密一个数据块

        第一次调用时返回 IV + 密文，之后只返回密文。

        Args:
            plaintext: 明文

        Returns:
            bytes: 密文
        """
        ciphertext = self._encryptor.update(plaintext)
        if not self._iv_sent:
            self._iv_sent = True
            return self._send_iv + ciphertext
        return ciphertext

    def decrypt(self, ciphertext: bytes) -> bytes:
        """
        解密一个数据块

        在收到完整的 IV 之前，输入会被缓存，返回空字节串。

        Args:
            ciphertext: 密文

        Returns:
            bytes: 明文
        """
        if self._decryptor is None:
            self._recv_iv_buffer += ciphertext
            if len(self._recv_iv_buffer) < self.iv_len:
                return b''
            iv = self._recv_iv_buffer[:self.iv_len]
            ciphertext = self._recv_iv_buffer[self.iv_len:]
            self._recv_iv_buffer = b''
            self._decryptor = _new_cipher(self.method, self.key, iv).decryptor()
            logger.debug(f"收到对端 IV: method={self.method}, iv_len={self.iv_len}")
        return self._decryptor.update(ciphertext)


def create_encryptor(config) -> Encryptor:
    """
    会话加密器工厂

    每个会话调用一次，使用配置中的密码和加密方法。

    Args:
        config: RelayConfig，包含 password 和 method

    Returns:
        Encryptor: 新的加密器实例
    """
    return Encryptor(config.password, config.method)
