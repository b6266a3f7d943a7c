"""BoxZero: hybrid email triage prediction engine."""

__version__ = "0.1.0"
