from . import orders, workflow, workstation

__all__ = ["orders", "workflow", "workstation"]
