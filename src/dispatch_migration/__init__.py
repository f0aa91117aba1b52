"""
Differential migration engine for the legacy dispatch database.

Moves integer-keyed ``dispatch_*`` rows into a UUID-keyed target schema,
one checkpointed batch at a time.
"""

__version__ = "1.0.0"
