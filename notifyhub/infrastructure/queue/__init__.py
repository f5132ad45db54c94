"""Dispatch queue backends and the worker pool consuming them."""

from .base import AdmissionCheck, DispatchQueue, log_permanent_failure
from .memory import InMemoryDispatchQueue
from .redis_queue import RedisDispatchQueue
from .worker import DispatchWorker, JobHandler

__all__ = [
    "AdmissionCheck",
    "DispatchQueue",
    "DispatchWorker",
    "InMemoryDispatchQueue",
    "JobHandler",
    "RedisDispatchQueue",
    "log_permanent_failure",
]
