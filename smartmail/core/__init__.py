"""
Core modules for SmartMail.

This package contains the batch pipeline:
- orchestrator: BatchJob lifecycle and the batch operations
- classifier: AI classification with rules fallback
- rules_engine: Deterministic lookup-table classifier
- credential_guard: Single refresh-and-retry around provider calls
- label_resolver: Label name -> provider label id, created on demand
- rate_limiter: Per-user sliding-window limits
- circuit_breaker: AI backend resilience
- privacy: PII redaction before prompts leave the process
- prompt_engine: Jinja2 prompt templates

Submodules are imported directly (storage depends on core.models).
"""
