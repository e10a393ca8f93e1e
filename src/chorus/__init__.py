"""Chorus: multi-provider workflow orchestrator.

Fans a user turn out to several chat providers, folds their outputs into a
decision artifact, and drives a concierge synthesis phase that keeps one
logical conversation thread across provider-session restarts.
"""

__version__ = "0.1.0"
