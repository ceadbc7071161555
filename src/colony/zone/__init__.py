"""Zone records and resource node assignment."""

from .manager import ZoneManager, ZoneRecord

__all__ = ["ZoneManager", "ZoneRecord"]
