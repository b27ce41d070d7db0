"""Clinic queue: booked/walk-in slotting and serving state machine."""

__version__ = "1.0.0"
