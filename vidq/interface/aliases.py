# vidq/interface/aliases.py

COMMAND_ALIASES = {
    "a": "add",
    "pl": "playlist",
    "list": "ls",
    "ps": "pause",
    "rs": "resume",
    "rt": "retry",
    "remove": "rm",
    "log": "logs",
    "cfg": "config",
}
