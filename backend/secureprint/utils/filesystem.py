import re
from pathlib import Path
from secureprint.config import settings

_BLOB_NAME = re.compile(r"^[A-Za-z0-9_-]+\.bin$")


def ensure_data_dirs(data_path: Path | None = None) -> Path:
    path = data_path or settings.data_path
    path.mkdir(parents=True, exist_ok=True)
    (path / "uploads").mkdir(exist_ok=True)
    return path


def blob_name(job_id: str) -> str:
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in job_id)
    return f"{safe}.bin"


def is_blob_name(name: str) -> bool:
    return bool(_BLOB_NAME.match(name))
