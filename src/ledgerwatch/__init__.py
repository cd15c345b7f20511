"""
LedgerWatch - anomaly and fraud detection for personal finance.

Background subsystem of a personal/small-business finance platform that:
- Builds per-user behavioral baselines from transaction history
- Scores incoming transactions with a rule engine and a statistical scorer
- Aggregates multi-dimensional account risk scores
- Dispatches alerts and push notifications
- Drives scheduled re-analysis through a retrying job queue
"""

__version__ = "0.1.0"
