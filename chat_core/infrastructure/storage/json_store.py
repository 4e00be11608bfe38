"""基于 JSON 文件的键值存储。

每个 key 对应 root 下的一个 ``<key>.json`` 文件，写入先落临时文件
再 os.replace，避免写到一半留下损坏的文件。
"""

import json
import os
from pathlib import Path
from typing import Any, Optional, Protocol
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class JsonFileStorage:
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise BusinessError(code="STORE_INVALID_KEY", message=key)
        return self._root / f"{key}.json"
