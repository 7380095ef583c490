"""Identity-bound threshold encryption of record payloads."""

from healthvault.modules.encryption.envelope import AEAD_OVERHEAD
from healthvault.modules.encryption.gateway import EncryptedPayload, EncryptionGateway
from healthvault.modules.encryption.key_servers import HttpKeyServer, KeyServer, LocalKeyServer
from healthvault.modules.encryption.policy import EncryptionPolicy, build_policy

__all__ = [
    "AEAD_OVERHEAD",
    "EncryptedPayload",
    "EncryptionGateway",
    "EncryptionPolicy",
    "HttpKeyServer",
    "KeyServer",
    "LocalKeyServer",
    "build_policy",
]
