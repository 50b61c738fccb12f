from .events import EventBus, summarize_error

__all__ = ["EventBus", "summarize_error"]
