"""
Presence service - online status announcements and the presence table view.
"""

from .presence_heartbeat import PresenceHeartbeat

__all__ = ['PresenceHeartbeat']
