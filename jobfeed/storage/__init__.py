"""Storage interfaces and implementations for jobs and import runs."""

from jobfeed.storage.interfaces import ImportRunStorageInterface, JobStorageInterface
from jobfeed.storage.memory import InMemoryImportRunStorage, InMemoryJobStorage
from jobfeed.storage.sql import SQLImportRunStorage, SQLJobStorage

__all__ = [
    "JobStorageInterface",
    "ImportRunStorageInterface",
    "InMemoryJobStorage",
    "InMemoryImportRunStorage",
    "SQLJobStorage",
    "SQLImportRunStorage",
]
