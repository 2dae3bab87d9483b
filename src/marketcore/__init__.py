"""marketcore - order lifecycle and payment reconciliation for a multi-seller marketplace."""

__version__ = "0.1.0"
