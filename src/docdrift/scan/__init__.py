"""Scan runs."""
from .runner import ScanReport, ScanRunner
from .store import ScanStore

__all__ = ["ScanReport", "ScanRunner", "ScanStore"]
