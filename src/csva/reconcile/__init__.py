"""Client-side turn reconciliation."""

from csva.reconcile.engine import TurnReconciler
from csva.reconcile.session import LiveSession

__all__ = ["LiveSession", "TurnReconciler"]
