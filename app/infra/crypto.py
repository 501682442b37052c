"""
凭证加解密

提供商 API Key 以密文形式存储在 provider_configurations 表中，
通过 CredentialCipher 能力接口加解密，默认实现为 Fernet 对称加密。
"""

from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from app.config import get_settings
from app.exceptions import ConfigurationError


class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetCredentialCipher:
    """基于 Fernet 的凭证加解密"""

    def __init__(self, key: str | bytes):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"凭证加密密钥格式无效: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ConfigurationError("提供商凭证无法解密，请检查 CREDENTIAL_ENCRYPTION_KEY") from e


def generate_key() -> str:
    """生成新的 Fernet 密钥"""
    return Fernet.generate_key().decode("ascii")


def get_cipher() -> FernetCredentialCipher:
    """根据配置创建凭证加解密器"""
    key = get_settings().credential_encryption_key
    if not key:
        raise ConfigurationError("未配置 CREDENTIAL_ENCRYPTION_KEY，无法读写提供商凭证")
    return FernetCredentialCipher(key)
