"""
Pydantic request and response schemas for the MesFlow API.
"""
