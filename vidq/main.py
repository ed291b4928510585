import sys
import json
import argparse

from vidq.bootstrap import create_container, get_app_dir, setup_logging
from vidq.app.commands import (
    AddTask, AddPlaylist, ListTasks, PauseTask, ResumeTask, RetryTask, RemoveTask, ShowLogs,
)
from vidq.core.entities import TrimMode
from vidq.core.errors import VidqError
from vidq.interface.console import ConsoleEventSink, format_task_table


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidq", description="vidq - media download queue")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every downloader line")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    add_parser = subparsers.add_parser("add", help="Queue a download")
    add_parser.add_argument("url", help="URL to download")
    add_parser.add_argument("-q", "--quality", default="best",
                            help="best, 4k, 2k, 1080p, 720p, 480p, 360p, 240p, 144p or audio")
    add_parser.add_argument("-f", "--format", default="original", help="Merge container (mp4, mkv, ...) or 'original'")
    add_parser.add_argument("--format-id", default="", help="Explicit downloader format selector")
    add_parser.add_argument("-o", "--dir", default="", help="Destination directory")
    add_parser.add_argument("--trim", nargs=2, metavar=("START", "END"), help="Cut the result to START..END (hh:mm:ss)")
    add_parser.add_argument("--keep-both", action="store_true", help="Keep the full download next to the trimmed clip")
    add_parser.add_argument("-w", "--wait", action="store_true", help="Run the queue until it is empty")

    pl_parser = subparsers.add_parser("playlist", help="Queue every item of a playlist")
    pl_parser.add_argument("url", help="Playlist URL")
    pl_parser.add_argument("-o", "--dir", default="", help="Destination directory")
    pl_parser.add_argument("-w", "--wait", action="store_true", help="Run the queue until it is empty")

    subparsers.add_parser("ls", help="List tasks")

    for name, help_text in (("pause", "Pause a task"), ("resume", "Resume a paused or failed task"),
                            ("retry", "Restart a task from scratch"), ("logs", "Show the log of a task")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("selector", help="ID or Index")

    rm_parser = subparsers.add_parser("rm", help="Remove a task")
    rm_parser.add_argument("selector", help="ID or Index")
    rm_parser.add_argument("--files", action="store_true", help="Also delete downloaded files")

    subparsers.add_parser("run", help="Process the queue until it is empty (Ctrl+C pauses and exits)")

    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_parser.add_argument("key", help="Config key (concurrency_limit, download_dir, ...)", nargs='?')
    config_parser.add_argument("value", help="Value to set (JSON or plain string)", nargs='?')
    return parser


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _run_queue(manager):
    manager.start()
    manager.wait_idle()


def main(argv=None):
    # --- ALIAS HANDLING ---
    from vidq.interface.aliases import COMMAND_ALIASES
    argv = list(sys.argv[1:] if argv is None else argv)
    for i, arg in enumerate(argv):
        if not arg.startswith("-"):
            argv[i] = COMMAND_ALIASES.get(arg.lower(), arg)
            break

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    app_dir = get_app_dir()
    setup_logging(app_dir)
    container = create_container(app_dir, sink=ConsoleEventSink(verbose=args.verbose))
    bus = container["bus"]
    manager = container["manager"]
    config = container["config"]

    try:
        if args.command == "add":
            trim_start, trim_end = args.trim or ("", "")
            trim_mode = TrimMode.NONE
            if args.trim:
                trim_mode = TrimMode.KEEP_BOTH if args.keep_both else TrimMode.OVERWRITE
            task_id = bus.handle(AddTask(
                url=args.url, quality=args.quality, format=args.format, format_id=args.format_id,
                dir=args.dir, trim_start=trim_start, trim_end=trim_end, trim_mode=trim_mode,
            ))
            print(f"Added {task_id}.")
            if args.wait:
                _run_queue(manager)

        elif args.command == "playlist":
            task_id = bus.handle(AddPlaylist(url=args.url, dir=args.dir))
            print(f"Added {task_id}.")
            if args.wait:
                _run_queue(manager)

        elif args.command == "ls":
            tasks = bus.handle(ListTasks())
            if not tasks:
                print("No tasks.")
            else:
                for line in format_task_table(tasks):
                    print(line)

        elif args.command in ("pause", "resume", "retry"):
            command = {"pause": PauseTask, "resume": ResumeTask, "retry": RetryTask}[args.command]
            if bus.handle(command(id=args.selector)):
                print(f"Command {args.command} executed.")
            else:
                print(f"Nothing to {args.command}.")

        elif args.command == "rm":
            removed = bus.handle(RemoveTask(id=args.selector, delete_files=args.files))
            print(f"Removed {', '.join(removed)}.")

        elif args.command == "logs":
            for line in bus.handle(ShowLogs(id=args.selector)):
                print(line)

        elif args.command == "run":
            _run_queue(manager)

        elif args.command == "config":
            if not args.key:
                for key, value in sorted(config.as_dict().items()):
                    print(f"{key} = {json.dumps(value)}")
            elif args.value is None:
                print(json.dumps(config.get(args.key)))
            else:
                config.set(args.key, _parse_value(args.value))
                print(f"{args.key} = {json.dumps(config.get(args.key))}")

    except KeyboardInterrupt:
        print("\nStopping downloads and exiting...")
    except (VidqError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        manager.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
