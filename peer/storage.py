from pathlib import Path

from .models import ReceivedFile


def ensure_storage_dir(storage_dir: Path) -> None:
    storage_dir.mkdir(parents=True, exist_ok=True)


def validate_file_path(file_path: Path) -> None:
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise IsADirectoryError(f"Not a file: {file_path}")


def safe_filename(name: str) -> str:
    """Strip directories so a peer cannot write outside the storage dir."""
    name = Path(name.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return "received.bin"
    return name


def save_received_file(storage_dir: Path, received: ReceivedFile) -> Path:
    """Write a completed file, never overwriting an existing one."""
    ensure_storage_dir(storage_dir)
    target = storage_dir / safe_filename(received.name)
    stem, suffix = target.stem, target.suffix
    counter = 1
    while target.exists():
        target = storage_dir / f"{stem} ({counter}){suffix}"
        counter += 1
    target.write_bytes(received.data)
    return target


def format_file_size(size: int) -> str:
    if not size:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"
