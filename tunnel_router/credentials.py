import json
import logging
import os
import secrets
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger("tunnel_router.credentials")


@dataclass(frozen=True)
class Credentials:
    client_id: str
    node_name: str


class CredentialStore:
    """Persists the generated client id and node name across restarts."""

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)

    def _read(self) -> dict:
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            LOGGER.warning("unreadable state %s (%s); regenerating", self.state_path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_suffix(".tmp")
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.state_path)

    def load(self, client_id_override: str = "", node_name_override: str = "") -> Credentials:
        data = self._read()
        changed = False
        if not data.get("client_id"):
            data["client_id"] = str(uuid.uuid4())
            changed = True
            LOGGER.info("generated new client id")
        if not data.get("node_name"):
            data["node_name"] = f"ws-{secrets.token_hex(3)}"
            changed = True
        if changed:
            self._write(data)
        return Credentials(
            client_id=client_id_override or data["client_id"],
            node_name=node_name_override or data["node_name"],
        )

    def stored_client_id(self) -> Optional[str]:
        return self._read().get("client_id")
