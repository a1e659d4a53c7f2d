import json
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote
from uuid import uuid4

from luna_core.config.settings import settings
from luna_core.domain.conversation import HistoryStore
from luna_core.domain.exceptions import StorageError


class JsonHistoryStore(HistoryStore):
    """每个身份键一份 JSON 文件：<root>/history/<quoted key>.json。

    写入总是“临时文件 + os.replace”整体替换，不会留下新旧混合的记录。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._history_root = self._root / "history"
        self._history_root.mkdir(parents=True, exist_ok=True)

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e), key=key)
        if not isinstance(data, dict):
            raise StorageError(code="STORE_READ_ERROR", message="record is not an object", key=key)
        return data

    def save(self, key: str, data: Dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path = self._history_root / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def _path(self, key: str) -> Path:
        return self._history_root / f"{quote(key, safe='')}.json"
