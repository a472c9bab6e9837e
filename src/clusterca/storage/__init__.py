# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Secret stores for clusterca.

Provides the abstract store interface, memory and Redis implementations,
and the adapter that maps CA material onto store records.
"""

from .provider import AbstractSecretStore, SecretRecord, StorageConfig
from .memory_provider import MemorySecretStore
from .redis_provider import RedisSecretStore
from .ca_store import CaStoreAdapter

__all__ = [
    "AbstractSecretStore",
    "SecretRecord",
    "StorageConfig",
    "MemorySecretStore",
    "RedisSecretStore",
    "CaStoreAdapter",
]
