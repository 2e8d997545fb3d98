"""Generation engines and the result store."""

from genqueue.scheduler.engine.base import EngineResult, GenerationEngine
from genqueue.scheduler.engine.command_engine import CommandEngine
from genqueue.scheduler.engine.echo_engine import EchoEngine
from genqueue.scheduler.engine.http_engine import HttpEngine
from genqueue.scheduler.engine.result_store import DiskResultStore, ResultRef

__all__ = [
    "CommandEngine",
    "DiskResultStore",
    "EchoEngine",
    "EngineResult",
    "GenerationEngine",
    "HttpEngine",
    "ResultRef",
]
