"""
keys.py - 用户密钥派生

2022 系列加密要求固定长度的用户密钥（aes-128-gcm 16 字节，其余 32 字节），
而面板下发的是更长的不透明字符串（通常是 UUID）。
派生规则：取 secret 原始字节的前 N 字节；长度不足直接报错，绝不补齐。
"""

import base64
from typing import Union

from errors import ConfigError, InvalidSecret
from models import Cipher


def key_length_for(cipher: Union[Cipher, str]) -> int:
    if not isinstance(cipher, Cipher):
        cipher = Cipher.parse(cipher)
    return cipher.key_length


def derive_key(secret: Union[str, bytes], required_length: int) -> bytes:
    if required_length <= 0:
        raise ConfigError(f"key length must be positive, got {required_length}")
    raw = secret.encode('utf-8') if isinstance(secret, str) else bytes(secret)
    if len(raw) < required_length:
        raise InvalidSecret(
            f"secret is {len(raw)} bytes, cipher requires at least {required_length}"
        )
    return raw[:required_length]


def encode_key(key: bytes) -> str:
    """标准 base64（带 padding），即 Shadowsocks 引擎接受的 2022 用户密钥格式"""
    return base64.b64encode(key).decode('ascii')
