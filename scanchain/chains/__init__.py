from scanchain.chains.manager import JobChainManager, chain_aggregate_to_dict, chain_link_to_dict
from scanchain.chains.types import ChainAggregate, ChainLinkSnapshot, ChainOutcome, ExecutionResults

__all__ = [
    "JobChainManager",
    "ChainAggregate",
    "ChainLinkSnapshot",
    "ChainOutcome",
    "ExecutionResults",
    "chain_link_to_dict",
    "chain_aggregate_to_dict",
]
