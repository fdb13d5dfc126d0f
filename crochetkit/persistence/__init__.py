"""persistence — canonical JSON codec and key-value stores."""

from crochetkit.persistence.codec import (
    DecodedAssembly,
    dumps,
    from_safe_data,
    loads,
    storage_key,
    to_safe_data,
)
from crochetkit.persistence.store import FileStore, KeyValueStore, MemoryStore

__all__ = [
    "DecodedAssembly",
    "FileStore",
    "KeyValueStore",
    "MemoryStore",
    "dumps",
    "from_safe_data",
    "loads",
    "storage_key",
    "to_safe_data",
]
