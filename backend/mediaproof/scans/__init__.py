from mediaproof.scans.service import ScanDescriptor, ScanService, parse_descriptor

__all__ = ["ScanDescriptor", "ScanService", "parse_descriptor"]
