"""
Persisted client settings: a small JSON key/value store, the same keys the
browser extension keeps in its local storage.
"""
import json
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path.home() / ".callrelay" / "agent.json"
DEFAULT_SERVER = "localhost:3000"
KEYS = ("extensionNumber", "serverAddress", "sharedSecret")


class ClientSettings:
    def __init__(self, path: Optional[str | Path] = None, values: Optional[dict] = None) -> None:
        self.path = Path(path) if path else DEFAULT_SETTINGS_PATH
        self._values: dict[str, str] = {k: "" for k in KEYS}
        if values:
            self.update(**values)

    @classmethod
    def load(cls, path: Optional[str | Path] = None) -> "ClientSettings":
        settings = cls(path)
        if settings.path.exists():
            try:
                with open(settings.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as exc:
                logger.warning(f"Could not read settings from {settings.path}: {exc}")
                data = {}
            settings.update(**{k: v for k, v in data.items() if k in KEYS})
        return settings

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self._values, f, indent=2)

    def update(self, **values: str) -> None:
        for key, value in values.items():
            if key not in KEYS:
                raise KeyError(f"Unknown setting: {key}")
            self._values[key] = (value or "").strip() if key != "sharedSecret" else (value or "")

    @property
    def agent(self) -> str:
        return self._values["extensionNumber"]

    @property
    def server_address(self) -> str:
        return self._values["serverAddress"] or DEFAULT_SERVER

    @property
    def secret(self) -> str:
        return self._values["sharedSecret"]

    def base_url(self) -> str:
        """``host:port`` means plain http; an explicit scheme is kept."""
        server = self.server_address.rstrip("/")
        if server.startswith(("http://", "https://")):
            return server
        return f"http://{server}"

    def sse_url(self) -> str:
        return (
            f"{self.base_url()}/sse?agent={quote(self.agent, safe='')}"
            f"&secret={quote(self.secret, safe='')}"
        )

    def missing_reason(self) -> Optional[str]:
        """Why no connection can be attempted, or None when configured."""
        if not self.agent:
            return "Not configured"
        if not self.secret:
            return "Secret not set"
        return None
