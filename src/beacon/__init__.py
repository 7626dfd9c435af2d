"""
Beacon - Real-time Emergency Dispatch Service

Accepts incident reports over HTTP and live sockets, notifies nearby
available users, and coordinates responders until an incident is closed.
"""

__version__ = "1.0.0"
__author__ = "Beacon Development Team"
