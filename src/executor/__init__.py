"""Execution engine for the five-stage pipeline.

Takes a StartRunRequest and executes it: dispatching each stage to
providers, threading outputs between stages, streaming progress, and
persisting the finished record.

Architecture (bottom-up):
- retry: Generic bounded retry with exponential backoff
- fallback: Waterfall dispatch across providers, per-provider retry
- guard: Timeout + cancellation race around a stage attempt
- run_registry: In-flight runs and their cancellation tokens
- stages: Stage definitions, input builders, output validation
- progress: Ordered progress channel for one run
- pipeline_runner: Sequential stage execution and terminal handling
- history_store: Finished-run storage (memory or JSON file)
- rate_governor: Per-client admission control
- runtime: Process-wide instances for the API layer
"""
