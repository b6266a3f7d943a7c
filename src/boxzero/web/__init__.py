"""JSON review API for the BoxZero triage engine.

Provides a FastAPI app for:
- Review queue (list, approve, modify, reject)
- Trust stages and per-user profiles
- Sender importance ranking
- Health and audit log
"""

from boxzero.web.app import create_app

__all__ = ["create_app"]
