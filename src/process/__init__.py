"""Process lifecycle -- activation and termination of built artifacts."""
from src.process.manager import ProcessManager

__all__ = ["ProcessManager"]
