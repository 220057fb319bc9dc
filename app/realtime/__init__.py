"""
Realtime fan-out to socket clients
"""
from app.realtime.fanout import Connection, RealtimeFanout

__all__ = ["Connection", "RealtimeFanout"]
