from __future__ import annotations


class ScanPipelineError(RuntimeError):
    error_code = "SCAN_FAILED"
    retryable = True


class TransientSourceError(ScanPipelineError):
    """The remote listing call failed; a later invocation resumes from the last checkpoint."""

    error_code = "SOURCE_ERROR"


class StoreWriteError(ScanPipelineError):
    error_code = "STORE_WRITE_FAILED"


class ChainLimitExceededError(ScanPipelineError):
    error_code = "CHAIN_LIMIT_EXCEEDED"
    retryable = False

    def __init__(self, chain_index: int, max_chain_length: int):
        super().__init__(f"Maximum chain length ({max_chain_length}) exceeded by chain index {chain_index}")
        self.chain_index = chain_index
        self.max_chain_length = max_chain_length


class CheckpointValidationError(ValueError):
    pass


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, ScanPipelineError):
        return exc.error_code
    return ScanPipelineError.error_code
