"""Database module."""

from app.db.database import (
    close_database,
    consistent_read,
    get_db,
    init_database,
    transaction,
)
from app.db.graph_store import GraphStore, graph_store
from app.db.task_queue import TASK_QUEUE, TaskQueue, task_queue

__all__ = [
    "get_db",
    "init_database",
    "close_database",
    "transaction",
    "consistent_read",
    "graph_store",
    "GraphStore",
    "task_queue",
    "TaskQueue",
    "TASK_QUEUE",
]
