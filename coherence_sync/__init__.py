"""
Coherence Sync: session coherence and identity synchronization

Keeps a decaying coherence score and a calendar-driven day counter for a
narrative client, reconciles a durable pseudonymous visitor identity against
the current auth principal, and flushes state to a remote progress store
from several independent triggers.

Usage:
    python3 -m coherence_sync run          # Live session (foreground)
    python3 -m coherence_sync serve        # Recovery / admin HTTP API
    python3 -m coherence_sync status observers <visitor_id>
"""

__version__ = "1.0.0"
