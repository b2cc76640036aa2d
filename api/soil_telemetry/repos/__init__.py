from .base import OTA_KEY_PREFIX, StorageRepo
from .file_repo import FileRepo
from .mongo_repo import MongoRepo

__all__ = ["OTA_KEY_PREFIX", "StorageRepo", "FileRepo", "MongoRepo"]
