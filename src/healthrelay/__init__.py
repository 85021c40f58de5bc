"""
healthrelay: provider webhook relay for health-data exports

Ingests connection lifecycle webhooks from the aggregator, drives EHI
export triggering with retry and timeout diagnostics, and streams bulk
NDJSON exports into normalized records for the downstream data platform.
"""

__version__ = "0.1.0"
