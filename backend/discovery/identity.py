"""
Identity Service for the long-term device identity.
"""

import json
import logging
import uuid
from pathlib import Path

from config import DEVICE_NAME
from discovery.models import DeviceIdentity

logger = logging.getLogger(__name__)


class IdentityService:
    """Manages this installation's persistent device ID and display name."""

    def __init__(self, config_dir: Path, default_name: str = DEVICE_NAME):
        self._path = Path(config_dir) / "identity.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

        self.device_id, self._device_name = self._load_or_generate(default_name)
        logger.info(f"Initialized IdentityService: {self._device_name} ({self.device_id})")

    def _load_or_generate(self, default_name: str) -> tuple[str, str]:
        """Loads the existing identity or creates a new one."""
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text())
                return data["deviceId"], data.get("deviceName") or default_name
            except (ValueError, KeyError) as e:
                logger.warning(f"Failed to load existing identity: {e}. Generating new one.")

        device_id = uuid.uuid4().hex
        self._write(device_id, default_name)
        return device_id, default_name

    def _write(self, device_id: str, device_name: str) -> None:
        self._path.write_text(json.dumps(
            {"deviceId": device_id, "deviceName": device_name}, indent=2
        ))

    @property
    def device_name(self) -> str:
        return self._device_name

    @device_name.setter
    def device_name(self, name: str) -> None:
        self._device_name = name
        self._write(self.device_id, name)

    def describe(self, role: str = "player") -> DeviceIdentity:
        return DeviceIdentity(device_id=self.device_id, device_name=self._device_name, role=role)
