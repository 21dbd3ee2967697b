from .model import NetworkModel

__all__ = ["NetworkModel"]
