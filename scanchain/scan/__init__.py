from scanchain.scan.orchestrator import ScanOrchestrator

__all__ = ["ScanOrchestrator"]
