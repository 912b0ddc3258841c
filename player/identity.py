"""Session identity: durable device id, per-launch player id, team name."""
import json
import logging
import os
import secrets
import string
from typing import Optional

import config
from timer_sync import now_ms

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_device_id() -> str:
    return f"device-{now_ms()}-{_random_base36(9)}"


def generate_player_id() -> str:
    return f"player-{_random_base36(7)}"


class IdentityStore:
    """JSON file holding the device id and the last approved team name."""

    def __init__(self, data_dir: Optional[str] = None):
        self.path = os.path.join(data_dir or config.DATA_DIR, config.IDENTITY_FILE)

    def load(self) -> dict:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not read identity file %s, starting fresh", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: dict):
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError:
            logger.warning("Could not persist identity to %s", self.path)


class SessionIdentity:
    def __init__(self, device_id: str, player_id: Optional[str] = None,
                 team_name: str = "", store: Optional[IdentityStore] = None,
                 cached_team_name: str = ""):
        self.device_id = device_id
        self.player_id = player_id or generate_player_id()
        self.team_name = team_name
        self.cached_team_name = cached_team_name
        self.team_photo: Optional[str] = None
        self.buzzer_sound: Optional[str] = None
        self.store = store

    @classmethod
    def load(cls, store: Optional[IdentityStore] = None) -> "SessionIdentity":
        """Restore the device id (creating and persisting one on first launch)."""
        store = store or IdentityStore()
        data = store.load()
        device_id = data.get("device_id")
        if not isinstance(device_id, str) or not device_id:
            device_id = generate_device_id()
            data["device_id"] = device_id
            store.save(data)
            logger.info("Generated new device id %s", device_id)
        cached = data.get("last_team_name") or ""
        return cls(device_id, store=store, cached_team_name=cached if isinstance(cached, str) else "")

    def remember_team(self):
        """Cache the current team name for auto-rejoin."""
        if not self.team_name:
            return
        self.cached_team_name = self.team_name
        self._persist()

    def forget_team(self):
        self.cached_team_name = ""
        self._persist()

    def _persist(self):
        if self.store is None:
            return
        data = {"device_id": self.device_id}
        if self.cached_team_name:
            data["last_team_name"] = self.cached_team_name
        self.store.save(data)

    def envelope(self, msg_type: str, **payload) -> dict:
        """Build an outbound message stamped with this identity."""
        message = {
            "type": msg_type,
            "playerId": self.player_id,
            "deviceId": self.device_id,
            "teamName": self.team_name,
        }
        message.update(payload)
        message["timestamp"] = now_ms()
        return message

    def snapshot(self) -> dict:
        return {
            "player_id": self.player_id,
            "device_id": self.device_id,
            "team_name": self.team_name,
            "cached_team_name": self.cached_team_name,
            "has_team_photo": bool(self.team_photo),
            "buzzer_sound": self.buzzer_sound,
        }
