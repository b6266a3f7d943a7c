"""Triage engine: prediction cycles, persistence and queue resolution.

Usage:
    from boxzero.engine import build_engine

    engine = build_engine(config, store, anthropic_client)
    await engine.load_state()
    result = await engine.run_cycle(emails, "u1", execute)
"""

from boxzero.engine.triage import TriageCycleResult, TriageEngine, build_engine

__all__ = [
    "TriageCycleResult",
    "TriageEngine",
    "build_engine",
]
