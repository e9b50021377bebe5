"""Timer domain services: commands, lifecycle and derived values.

This package holds the coordination logic shared by the authority and the
controllers. HTTP routes and socket handlers import from here, keeping
transport concerns separated from timer mechanics.
"""
