"""Filesystem helpers shared across memledger."""

import os
import tempfile
from pathlib import Path

DEFAULT_HOME = Path.home() / ".config" / "mlp"


def get_ledger_home() -> Path:
    """Resolve the memledger home directory.

    ``MEMLEDGER_HOME`` wins; otherwise ``~/.config/mlp``.
    """
    env_home = os.environ.get("MEMLEDGER_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return DEFAULT_HOME


def atomic_write_bytes(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Write ``data`` to ``path`` via a temp file in the same directory.

    The temp file is chmod'ed and fsync'ed before being renamed into
    place, so readers either see the old file or the complete new one.

    Raises:
        OSError: If any step fails. The temp file is removed first.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
