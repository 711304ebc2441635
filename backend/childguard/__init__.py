"""
ChildGuard - Backend Application Package

This package contains the guardian alerting backend:
- Classification of child utterances via an external classifier
- Escalation policy and SOS handling
- Mood history and alert logs
- Real-time fan-out to guardian dashboards (REST + WebSocket)
"""

__version__ = "0.1.0"
