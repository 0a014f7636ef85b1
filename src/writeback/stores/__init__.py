from writeback.stores.github import GitHubContentStore
from writeback.stores.memory import MemoryStore

__all__ = ["GitHubContentStore", "MemoryStore"]
