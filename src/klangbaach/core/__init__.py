"""Core data models, configurations, and errors.

This package provides:
- Data models (RawLogEntry, SwapEvent, SyncEvent, Accumulator, DataPoint, BatchRecord)
- Configuration classes (MinerConfig, RetryPolicy, InfluxConfig)
- The pipeline error taxonomy
"""

from klangbaach.core.config import InfluxConfig, MinerConfig, RetryPolicy
from klangbaach.core.errors import KlangbaachError, PipelineError
from klangbaach.core.models import Accumulator, BatchRecord, DataPoint, RawLogEntry, RunState
