"""
Core package for MesFlow.

Holds the persistence models, the Device Gateway client, the Session Manager
and the Workflow Execution Engine.
"""
