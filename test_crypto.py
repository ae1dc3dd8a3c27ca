#!/usr/bin/env python3
"""
会话加密器测试

使用方法:
    pytest test_crypto.py
"""

import hashlib
import importlib
import warnings

import pytest
from cryptography.utils import CryptographyDeprecationWarning

import crypto
from config import RelayConfig
from crypto import DEFAULT_METHOD, METHODS, Encryptor, create_encryptor, evp_bytes_to_key

PASSWORD = 'test-password'


def test_evp_bytes_to_key():
    """密钥为 MD5 链: D1 = MD5(p), D2 = MD5(D1 + p), ..."""
    d1 = hashlib.md5(b'secret').digest()
    d2 = hashlib.md5(d1 + b'secret').digest()
    d3 = hashlib.md5(d2 + b'secret').digest()

    key, iv = evp_bytes_to_key(b'secret', 32, 16)
    assert key == d1 + d2
    assert iv == d3

    key, _ = evp_bytes_to_key(b'secret', 16, 16)
    assert key == d1


@pytest.mark.parametrize('method', sorted(METHODS))
def test_round_trip(method):
    """两个使用相同密码的加密器可以互相解密，且首包带 IV"""
    local = Encryptor(PASSWORD, method)
    remote = Encryptor(PASSWORD, method)
    iv_len = METHODS[method][1]

    first = local.encrypt(b'hello')
    assert len(first) == iv_len + 5
    assert remote.decrypt(first) == b'hello'

    second = local.encrypt(b', world')
    assert len(second) == 7
    assert remote.decrypt(second) == b', world'

    # 反方向使用独立的 IV
    reply = remote.encrypt(b'pong')
    assert local.decrypt(reply) == b'pong'


@pytest.mark.parametrize('method', sorted(METHODS))
def test_round_trip_empty_payload(method):
    """空负载: 首包只有 IV，之后的空数据块不产生输出"""
    local = Encryptor(PASSWORD, method)
    remote = Encryptor(PASSWORD, method)
    iv_len = METHODS[method][1]

    first = local.encrypt(b'')
    assert len(first) == iv_len
    assert remote.decrypt(first) == b''

    assert remote.decrypt(local.encrypt(b'data')) == b'data'
    assert local.encrypt(b'') == b''
    assert remote.decrypt(b'') == b''
    assert remote.decrypt(local.encrypt(b'more')) == b'more'


@pytest.mark.parametrize('method', sorted(METHODS))
def test_same_session_round_trip(method):
    """同一个加密器解密自己的输出"""
    cipher = Encryptor(PASSWORD, method)
    assert cipher.decrypt(cipher.encrypt(b'')) == b''
    assert cipher.decrypt(cipher.encrypt(b'hello')) == b'hello'


def test_decrypt_buffers_partial_iv():
    """IV 分多次到达时，先缓存，凑齐之后才输出明文"""
    local = Encryptor(PASSWORD)
    remote = Encryptor(PASSWORD)
    ciphertext = local.encrypt(b'payload')

    output = b''
    for i in range(len(ciphertext)):
        chunk = remote.decrypt(ciphertext[i:i + 1])
        if i < 15:
            assert chunk == b''
        output += chunk
    assert output == b'payload'


def test_wrong_password_does_not_decrypt():
    local = Encryptor(PASSWORD)
    remote = Encryptor('other-password')
    assert remote.decrypt(local.encrypt(b'attack at dawn')) != b'attack at dawn'


def test_each_encryptor_uses_fresh_iv():
    a = Encryptor(PASSWORD).encrypt(b'x')
    b = Encryptor(PASSWORD).encrypt(b'x')
    assert a[:16] != b[:16]


def test_unknown_method():
    with pytest.raises(ValueError):
        Encryptor(PASSWORD, 'rc4-md5')


def test_empty_password():
    with pytest.raises(ValueError):
        Encryptor('', DEFAULT_METHOD)


def test_method_name_is_case_insensitive():
    assert Encryptor(PASSWORD, 'AES-128-CTR').method == 'aes-128-ctr'


def test_create_encryptor_from_config():
    """每次调用得到一个新的加密器"""
    config = RelayConfig(password=PASSWORD, method='chacha20-ietf')
    first = create_encryptor(config)
    second = create_encryptor(config)
    assert first is not second
    assert first.method == 'chacha20-ietf'
    assert first.iv_len == 12
    assert second.decrypt(first.encrypt(b'data')) == b'data'


def test_legacy_modes_without_deprecation_warning():
    """CFB/CFB8/OFB 从 decrepit 模块导入，加载和使用时不产生弃用警告"""
    with warnings.catch_warnings():
        warnings.simplefilter('error', CryptographyDeprecationWarning)
        module = importlib.reload(crypto)
        for method in ('aes-256-cfb', 'aes-128-cfb8', 'aes-192-ofb'):
            cipher = module.Encryptor(PASSWORD, method)
            assert cipher.decrypt(cipher.encrypt(b'x')) == b'x'
