"""
schemas/ — Pydantic value types and request/response models

The quotation aggregate (schemas/quotation.py) is shared by the state
machine, the workflow service and the API layer.
"""
