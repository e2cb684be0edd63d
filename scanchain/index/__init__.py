from scanchain.index.delta import DeltaComputer
from scanchain.index.strategy import ScanStrategyAdvisor
from scanchain.index.types import DeltaEvent, DeltaSummary, ScanDecision

__all__ = [
    "DeltaComputer",
    "DeltaEvent",
    "DeltaSummary",
    "ScanDecision",
    "ScanStrategyAdvisor",
]
