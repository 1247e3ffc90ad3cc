"""Pipeline Engine - resilient multi-provider pipeline execution.

This service runs a five-stage generation pipeline:
- Provider adapters behind one interface, with waterfall fallback
- Bounded retries with exponential backoff
- Per-stage timeouts, cancellation and a progress event stream
- Per-client request rate governing
"""

__version__ = "0.1.0"
