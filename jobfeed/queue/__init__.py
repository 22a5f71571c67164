"""Durable, prioritized, retrying work queue."""

from jobfeed.queue.interfaces import QueueBrokerInterface
from jobfeed.queue.memory import InMemoryQueueBroker
from jobfeed.queue.models import QueueOptions, QueueStats, QueueTask, TaskState
from jobfeed.queue.service import QueueWorker, WorkQueue
from jobfeed.queue.sql import SQLQueueBroker

__all__ = [
    "QueueBrokerInterface",
    "InMemoryQueueBroker",
    "SQLQueueBroker",
    "QueueOptions",
    "QueueStats",
    "QueueTask",
    "TaskState",
    "QueueWorker",
    "WorkQueue",
]
