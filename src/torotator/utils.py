from __future__ import annotations

import shutil
import socket
from contextlib import closing
from pathlib import Path
from typing import Iterable, List


def port_available(port: int) -> bool:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


def ensure_directory(path: Path, mode: int = 0o755) -> Path:
    path.mkdir(parents=True, exist_ok=True, mode=mode)
    return path


def remove_directory(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


def find_missing_programs(programs: Iterable[str]) -> List[str]:
    return [program for program in programs if shutil.which(program) is None]
