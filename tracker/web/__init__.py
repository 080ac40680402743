from .tick_api import TickAPI

__all__ = ["TickAPI"]
