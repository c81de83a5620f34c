from __future__ import annotations

import os
import time
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .receiver import ReceivedFile


def unique_name(file_name: str, used: Set[str]) -> str:
    """``report.pdf`` -> ``report (1).pdf`` -> ``report (2).pdf`` as names repeat."""
    base, ext = os.path.splitext(file_name)
    final_name = file_name
    counter = 1
    while final_name in used:
        final_name = f"{base} ({counter}){ext}"
        counter += 1
    used.add(final_name)
    return final_name


def _safe_name(file_name: str) -> str:
    # Peers choose file names; never let one escape the target directory.
    name = os.path.basename(file_name.replace("\\", "/"))
    if name in ("", ".", ".."):
        return "unnamed"
    return name


def save_all(files: Iterable[ReceivedFile], directory: str | os.PathLike) -> List[Path]:
    target = Path(directory)
    target.mkdir(parents=True, exist_ok=True)
    used = {entry.name for entry in target.iterdir()}
    written = []
    for received in files:
        path = target / unique_name(_safe_name(received.file_name), used)
        path.write_bytes(received.data)
        written.append(path)
    return written


def default_zip_name() -> str:
    return f"floe_transfer_{int(time.time() * 1000)}.zip"


def write_zip(files: Iterable[ReceivedFile], path: Optional[str | os.PathLike] = None) -> Path:
    archive = Path(path) if path is not None else Path(default_zip_name())
    used: Set[str] = set()
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for received in files:
            zf.writestr(unique_name(_safe_name(received.file_name), used), received.data)
    return archive
