"""Fleet Reconciler: live vehicle feed reconciliation for a fleet-operations console."""

__version__ = "0.1.0"

from fleet_reconciler.__main__ import main

__all__ = ["main", "__version__"]
