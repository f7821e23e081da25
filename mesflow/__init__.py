"""
MesFlow: workstation session and workflow execution engine

This is the root package for MesFlow, which tracks production orders as they
move through process steps at physical workstations and dispatches device
operations to the device communication service.
"""

__version__ = "1.0.0"
