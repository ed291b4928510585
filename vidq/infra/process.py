import logging
import subprocess

import psutil

logger = logging.getLogger(__name__)


def terminate_process_tree(proc: subprocess.Popen, timeout: float = 3.0) -> None:
    """
    Stop `proc` and every process it spawned. The downloader forks the media
    toolkit for merging, so killing only the direct child leaves orphans that
    keep writing into the output directory.
    """
    if proc.poll() is not None:
        return
    try:
        parent = psutil.Process(proc.pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return

    for p in procs:
        try:
            p.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for p in alive:
        logger.info("Process %s ignored SIGTERM, killing", p.pid)
        try:
            p.kill()
        except psutil.NoSuchProcess:
            pass
