"""pondkit sinks for writing data to the folder and catalog backends."""

from pondkit.sinks.base import Sink, WriteResult
from pondkit.sinks.hive import HiveSink
from pondkit.sinks.lake import LakeSink

__all__ = ["Sink", "WriteResult", "HiveSink", "LakeSink"]
