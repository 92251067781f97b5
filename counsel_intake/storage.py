import uuid
from pathlib import Path
from typing import Optional


class StorageNotConfiguredError(RuntimeError):
    pass


class FileStore:
    """Flat directory of uploaded and generated files addressed by opaque keys."""

    def __init__(self, root: Optional[Path]):
        self.root = Path(root).resolve() if root else None

    @property
    def enabled(self) -> bool:
        return self.root is not None

    def _require_root(self) -> Path:
        if self.root is None:
            raise StorageNotConfiguredError("Document storage is not configured")
        return self.root

    def path_for(self, key: str) -> Path:
        root = self._require_root()
        safe = Path(key).name
        if not key or safe != key or safe in (".", ".."):
            raise ValueError(f"Invalid storage key: {key!r}")
        return root / safe

    def new_key(self, filename: str, prefix: str = "") -> str:
        safe_name = Path(filename).name or "file"
        return f"{prefix}{uuid.uuid4().hex}_{safe_name}"

    async def put(self, key: str, data: bytes) -> Path:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    async def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    async def exists(self, key: str) -> bool:
        return self.path_for(key).exists()
