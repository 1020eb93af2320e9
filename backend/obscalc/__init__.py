"""
Observation Calculation Cache

Keeps a derived result per observation (signal to noise, execution digest,
workflow state) consistent with the upstream data it was computed from.

Components:
- invalidation.py: marks observations dirty when upstream data changes
- service.py: claim / complete / fail protocol over the calculation records
- worker.py: ObscalcWorkerPool that drives calculations in the background
- events.py: per-program change notifications
- telluric.py: telluric star resolution daemon
"""

__version__ = "0.1.0"
