from .base import InitramfsHandler
from .initramfs_tools import InitramfsToolsHandler

__all__ = ["InitramfsHandler", "InitramfsToolsHandler"]
