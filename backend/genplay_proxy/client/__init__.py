from .orchestrator import TaskOrchestrationClient

__all__ = ["TaskOrchestrationClient"]
