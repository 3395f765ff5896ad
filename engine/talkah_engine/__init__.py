"""Talkah subscription lifecycle and usage enforcement engine.

The engine owns the plan catalog, per-period usage counters, the plan
change state machine and the reconciliation of payment processor events.
HTTP and CLI surfaces live in ``talkah_api`` and ``talkah_cli``.
"""

__version__ = "0.1.0"
