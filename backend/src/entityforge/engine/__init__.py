"""Write planning/execution, reads and the write pipeline."""

from entityforge.engine.cascade import CascadeDeleter
from entityforge.engine.executor import WriteExecutor
from entityforge.engine.pipeline import WEBHOOK_VETO, WritePipeline
from entityforge.engine.planner import (
    MAX_NESTING_DEPTH,
    OpKind,
    PlanNode,
    RelationWrite,
    WritePlan,
    WritePlanner,
    split_payload,
)
from entityforge.engine.reader import ReadService, parse_include, parse_sort

__all__ = [
    "CascadeDeleter",
    "MAX_NESTING_DEPTH",
    "OpKind",
    "PlanNode",
    "ReadService",
    "RelationWrite",
    "WEBHOOK_VETO",
    "WriteExecutor",
    "WritePipeline",
    "WritePlan",
    "WritePlanner",
    "parse_include",
    "parse_sort",
    "split_payload",
]
