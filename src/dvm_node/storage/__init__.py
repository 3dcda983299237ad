from .registry import JobRegistry

__all__ = ["JobRegistry"]
