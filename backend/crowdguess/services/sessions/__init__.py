"""Session domain services: lifecycle, scoring and timers.

This package contains the domain logic that HTTP routes and socket
handlers call into, keeping transport concerns separated from the
session state machine.
"""
