from dataclasses import dataclass
from typing import Protocol, Type, Dict, Any, TypeVar

from vidq.core.entities import TrimMode

# --- Commands ---
@dataclass
class Command:
    pass

@dataclass
class AddTask(Command):
    url: str
    quality: str = "best"
    format: str = "original"
    format_id: str = ""
    dir: str = ""
    title: str = ""
    trim_start: str = ""
    trim_end: str = ""
    trim_mode: TrimMode = TrimMode.NONE

@dataclass
class AddPlaylist(Command):
    url: str
    dir: str = ""

@dataclass
class ListTasks(Command):
    pass

@dataclass
class PauseTask(Command):
    id: str

@dataclass
class ResumeTask(Command):
    id: str

@dataclass
class RetryTask(Command):
    id: str

@dataclass
class RemoveTask(Command):
    id: str
    delete_files: bool = False

@dataclass
class ShowLogs(Command):
    id: str


# --- Bus ---
C = TypeVar("C", bound=Command)

class CommandHandler(Protocol[C]):
    def __call__(self, command: C) -> Any:
        ...

class CommandBus:
    def __init__(self):
        self._handlers: Dict[Type[Command], CommandHandler] = {}

    def register(self, command_type: Type[C], handler: CommandHandler[C]):
        self._handlers[command_type] = handler

    def handle(self, command: Command) -> Any:
        handler = self._handlers.get(type(command))
        if not handler:
            raise ValueError(f"No handler registered for {type(command)}")
        return handler(command)
