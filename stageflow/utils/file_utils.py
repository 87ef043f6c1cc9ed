from pathlib import Path, PurePosixPath


def ensure_dir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def safe_filename(name: str) -> str:
    keepchars = (".", "_", "-")
    return "".join(c if c.isalnum() or c in keepchars else "_" for c in name).strip("_")


def safe_relative_path(name: str) -> PurePosixPath:
    """Turn an artifact name into a relative path that stays inside its root.

    Each ``/``-separated segment is sanitised; empty, ``.`` and ``..``
    segments are dropped.
    """
    parts = [
        safe_filename(part)
        for part in name.replace("\\", "/").split("/")
        if part not in ("", ".", "..")
    ]
    parts = [p for p in parts if p]
    if not parts:
        raise ValueError(f"Artifact name has no usable path segments: {name!r}")
    return PurePosixPath(*parts)
