"""
                Cafe Order Engine

Order lifecycle and token assignment engine for a multi-tenant
cafe ordering platform: per-branch display tokens, a bounded order
state machine and a time-bounded cancellation window.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
