import json
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class SessionStorage:
    """String key/value store with the browser ``sessionStorage`` surface"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str):
        self._items[key] = str(value)

    def remove_item(self, key: str):
        self._items.pop(key, None)

    def clear(self):
        self._items.clear()

    def __contains__(self, key):
        return key in self._items

    def __len__(self):
        return len(self._items)


class FileSessionStorage(SessionStorage):
    """
    Session storage persisted to a JSON file after every write, so a CLI
    session can be resumed across runs. A missing or unreadable file starts
    an empty session.
    """

    def __init__(self, path):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._items), encoding='utf-8')

    def set_item(self, key: str, value: str):
        super().set_item(key, value)
        self._save()

    def remove_item(self, key: str):
        super().remove_item(key)
        self._save()

    def clear(self):
        super().clear()
        self._save()
