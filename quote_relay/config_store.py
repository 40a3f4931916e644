"""File backed JSON configuration edited by operators.

Each document lives in its own file under ``data_dir``. Reads always go to
disk so every caller sees a fresh snapshot; writes go through a temporary file
followed by :func:`os.replace`.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logger import get_logger

STOCK_MAPPING_FILE = "stock-mapping.json"
OPERATIONS_FILE = "operations.json"
SECTION_OPERATIONS_FILE = "section-operations.json"
DEFAULT_SETTINGS_FILE = "default-settings.json"
FOLDER_CONFIG_FILE = "folder-config.json"

DEFAULT_STOCK_CODE = "100gsm laser"
DEFAULT_PROCESS = "Standard/Heavy CMYK (160sqm/hr)"

DEFAULTS: Dict[str, Any] = {
    STOCK_MAPPING_FILE: {},
    OPERATIONS_FILE: ["Preflight", "* PROOF PDF", "*FILE SETUP ADS", "Auto to Press"],
    SECTION_OPERATIONS_FILE: [{"OperationName": "Square Cut"}],
    DEFAULT_SETTINGS_FILE: {
        "defaultStockCode": DEFAULT_STOCK_CODE,
        "defaultProcessFront": DEFAULT_PROCESS,
        "defaultProcessReverse": DEFAULT_PROCESS,
    },
    FOLDER_CONFIG_FILE: {"selectedFolderId": "Inbox", "selectedFolderName": "Inbox"},
}

# Documents that are JSON arrays; the others are objects.
_LIST_DOCUMENTS = {OPERATIONS_FILE, SECTION_OPERATIONS_FILE}


class ConfigError(ValueError):
    """Raised when a document to be written has the wrong shape."""


class ConfigStore:
    """Load and save the operator-editable JSON documents."""

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)
        self.logger = get_logger()

    def path_for(self, name: str) -> Path:
        return self.data_dir / name

    def ensure_defaults(self) -> None:
        """Create every missing document with its default content."""
        for name, default in DEFAULTS.items():
            if not self.path_for(name).exists():
                self.write(name, copy.deepcopy(default))

    def read(self, name: str) -> Any:
        """Return the document ``name``, or ``None`` when missing or unreadable."""
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("Failed to load %s: %s", path, exc)
            return None

    def write(self, name: str, data: Any) -> None:
        """Atomically replace the document ``name`` with ``data``."""
        expected = list if name in _LIST_DOCUMENTS else dict
        if not isinstance(data, expected):
            raise ConfigError(f"{name} must be a JSON {'array' if expected is list else 'object'}")
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, self.path_for(name))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # Typed accessors ----------------------------------------------------------
    def stock_mapping(self) -> Dict[str, Any]:
        data = self.read(STOCK_MAPPING_FILE)
        return data if isinstance(data, dict) else {}

    def operations(self) -> List[Any]:
        """Job operations. Missing, empty or broken file falls back to defaults."""
        data = self.read(OPERATIONS_FILE)
        if isinstance(data, list) and data:
            return data
        return copy.deepcopy(DEFAULTS[OPERATIONS_FILE])

    def section_operations(self) -> Optional[List[Any]]:
        """Section operations, ``None`` when no usable file exists."""
        data = self.read(SECTION_OPERATIONS_FILE)
        if isinstance(data, list) and data:
            return data
        return None

    def default_settings(self) -> Dict[str, str]:
        data = self.read(DEFAULT_SETTINGS_FILE)
        data = data if isinstance(data, dict) else {}
        return {
            "defaultStockCode": data.get("defaultStockCode") or DEFAULT_STOCK_CODE,
            "defaultProcessFront": data.get("defaultProcessFront") or DEFAULT_PROCESS,
            "defaultProcessReverse": data.get("defaultProcessReverse") or DEFAULT_PROCESS,
        }

    def folder_config(self) -> Dict[str, str]:
        data = self.read(FOLDER_CONFIG_FILE)
        if isinstance(data, dict) and data.get("selectedFolderId"):
            return data
        return copy.deepcopy(DEFAULTS[FOLDER_CONFIG_FILE])

    def selected_folder(self) -> Optional[str]:
        """Folder id chosen by the operator, if a folder file exists."""
        data = self.read(FOLDER_CONFIG_FILE)
        if isinstance(data, dict):
            return data.get("selectedFolderId") or None
        return None

    def lookup_stock(self, stock: str) -> Optional[Dict[str, Optional[str]]]:
        """Resolve an extracted stock description through the mapping.

        Exact key first, then a case-insensitive match on trimmed keys. The
        entry is either a plain stock code or ``{value, processFront,
        processReverse}``; a ``"None"`` process means "keep the default".
        """
        if not stock or not isinstance(stock, str):
            return None
        mapping = self.stock_mapping()
        if not mapping:
            return None
        entry = mapping.get(stock)
        if entry is None:
            wanted = stock.lower().strip()
            for key, value in mapping.items():
                if key.lower().strip() == wanted:
                    entry = value
                    break
        if entry is None:
            return None
        if isinstance(entry, str):
            return {"value": entry, "processFront": None, "processReverse": None}
        if not isinstance(entry, dict):
            return None

        def _process(value: Any) -> Optional[str]:
            return value if value and value != "None" else None

        return {
            "value": entry.get("value"),
            "processFront": _process(entry.get("processFront")),
            "processReverse": _process(entry.get("processReverse")),
        }
