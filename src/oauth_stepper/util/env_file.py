from __future__ import annotations

import os
from pathlib import Path

from dotenv import dotenv_values, set_key

SECRET_FILE_MODE = 0o600


def read_env_file(path: str) -> dict[str, str]:
    file_path = Path(path)
    if not file_path.exists():
        return {}

    parsed = dotenv_values(dotenv_path=file_path, encoding="utf-8")
    return {
        key: value
        for key, value in parsed.items()
        if isinstance(key, str) and value is not None
    }


def write_env_var(
    path: str, name: str, value: str, *, mode: int | None = SECRET_FILE_MODE
) -> None:
    """Set ``name`` in a .env file, creating it (and its directory) when missing.

    Token outputs land here, so the file is kept at ``mode`` (owner-only by
    default); pass ``mode=None`` to leave an existing file's permissions alone.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if not file_path.exists():
        create_mode = SECRET_FILE_MODE if mode is None else mode
        os.close(os.open(file_path, os.O_CREAT | os.O_WRONLY, create_mode))
    set_key(
        dotenv_path=file_path,
        key_to_set=name,
        value_to_set=value,
        quote_mode="always",
        export=False,
        encoding="utf-8",
    )
    if mode is not None:
        os.chmod(file_path, mode)
