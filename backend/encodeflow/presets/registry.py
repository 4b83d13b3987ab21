"""
In-memory versioned preset registry.

Presets are keyed by (id, version). A registered version never changes:
publishing an edit means registering the next version. Only presets that
pass validation can be registered.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .errors import DuplicatePresetError, PresetNotFoundError
from .models import PresetDefinition
from .validator import load_preset, require_valid

logger = logging.getLogger(__name__)


class PresetRegistry:
    """
    Versioned in-memory store of validated presets.

    Thread-safe: the HTTP surface and the CLI may read while presets load.
    """

    def __init__(self):
        # preset_id -> (version -> PresetDefinition)
        self._presets: Dict[str, Dict[int, PresetDefinition]] = {}
        self._lock = threading.Lock()

    def add(self, preset: PresetDefinition) -> PresetDefinition:
        """
        Register a preset version.

        Raises:
            PresetValidationError: The preset is invalid
            DuplicatePresetError: (id, version) is already registered
        """
        require_valid(preset)
        with self._lock:
            versions = self._presets.setdefault(preset.id, {})
            if preset.version in versions:
                raise DuplicatePresetError(preset.id, preset.version)
            versions[preset.version] = preset
        logger.info(f"[Presets] Registered {preset.key}")
        return preset

    def get(self, preset_id: str, version: Optional[int] = None) -> PresetDefinition:
        """
        Retrieve a preset; the latest version when version is None.

        Raises:
            PresetNotFoundError: Unknown id or version
        """
        with self._lock:
            versions = self._presets.get(preset_id)
            if not versions:
                raise PresetNotFoundError(preset_id)
            if version is None:
                return versions[max(versions)]
            if version not in versions:
                raise PresetNotFoundError(preset_id, version)
            return versions[version]

    def versions(self, preset_id: str) -> List[int]:
        with self._lock:
            return sorted(self._presets.get(preset_id, {}))

    def list_latest(self) -> List[PresetDefinition]:
        """Latest version of every preset, ordered by id."""
        with self._lock:
            return [
                versions[max(versions)]
                for _, versions in sorted(self._presets.items())
            ]

    def __contains__(self, preset_id: str) -> bool:
        with self._lock:
            return preset_id in self._presets

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._presets.values())

    def load_file(self, path: Path) -> PresetDefinition:
        """
        Load and register one preset from a JSON file.

        Raises:
            PresetValidationError: Invalid preset content
            DuplicatePresetError: Version already registered
            OSError / json.JSONDecodeError: Unreadable file
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return self.add(load_preset(data))

    def load_directory(self, directory: Path) -> List[PresetDefinition]:
        """Register every *.json preset in a directory, in file-name order."""
        loaded = []
        for path in sorted(Path(directory).glob("*.json")):
            loaded.append(self.load_file(path))
        logger.info(f"[Presets] Loaded {len(loaded)} preset(s) from {directory}")
        return loaded
