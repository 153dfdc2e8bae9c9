"""Card delivery - ID card delivery lifecycle tracking.

Tracks physical ID cards from the print request through courier delivery,
failed attempts and office pickup, with batch printing and an audit trail of
every status change.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
