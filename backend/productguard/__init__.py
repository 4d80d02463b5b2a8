"""ProductGuard Enforcement Engine - scan ledger, precision learning, DMCA queue, deadlines."""

__version__ = "1.0.0"
