from .base import CredentialStore
from .memory import MemoryStore
from .file import FileStore

__all__ = ['CredentialStore', 'MemoryStore', 'FileStore']
