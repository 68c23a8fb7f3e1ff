"""Service Clearinghouse: escrow-backed marketplace for paid service jobs."""

__version__ = "0.1.0"
