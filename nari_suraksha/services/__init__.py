"""Trip monitoring core: timer, escalation, fan-out and their collaborators.

Import concrete services from their modules; this package keeps no
eager imports so models and services can reference each other freely.
"""
