from abc import ABC, abstractmethod
from typing import List, Optional
from .entities import Task

class TaskRepository(ABC):
    @abstractmethod
    def save(self, task: Task) -> None:
        """Idempotent upsert of the full task record."""
        pass

    @abstractmethod
    def get(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    def get_all(self) -> List[Task]:
        pass

    @abstractmethod
    def delete(self, task_id: str) -> None:
        pass
