"""
HTTP API package for MesFlow.
"""
