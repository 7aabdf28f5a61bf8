"""EduTwin learning services"""
from .app import EduTwinServices, build_services
from .config import Settings

__all__ = ["EduTwinServices", "build_services", "Settings"]
