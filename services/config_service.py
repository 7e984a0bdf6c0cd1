import json
import os
import logging
from typing import Callable, List


# Configure logging
logger = logging.getLogger(__name__)


class ConfigManager:
    """
    JSON-file settings that can be changed at runtime (webhook URL, snapshot
    limits, sales funnel name). Static settings live in config.py.
    """

    def __init__(self, config_path="config.json"):
        self._config_path = config_path
        if os.path.isabs(config_path):
            self._resolved_path = config_path
        else:
            self._resolved_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), config_path)
        self.config = self._load_config()
        self._observers = []

    @property
    def resolved_path(self):
        return self._resolved_path

    def register_observer(self, observer: Callable[[List[str], object], None]):
        """Register an observer to be notified on configuration changes."""
        self._observers.append(observer)

    def _notify_observers(self, keys: List[str], value):
        for observer in self._observers:
            observer(keys, value)

    def _load_config(self):
        """Load configuration from the file or initialize an empty config."""
        path = self._resolved_path
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except json.JSONDecodeError:
                logger.error(f"Invalid JSON in {path}. Loading empty configuration.")
        return {}

    def save_config(self):
        try:
            with open(self._resolved_path, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=4, ensure_ascii=False)
        except (OSError, IOError) as e:
            logger.error(f"Unable to save configuration to {self._config_path}. {e}")

    def update_config(self, keys: List[str], value):
        """Update a nested configuration key with a new value if it has changed."""
        config = self.config
        for key in keys[:-1]:
            if key not in config or not isinstance(config[key], dict):
                config[key] = {}
            config = config[key]

        last_key = keys[-1]
        if config.get(last_key) != value:
            config[last_key] = value
            self.save_config()
            self._notify_observers(keys, value)
            return True
        return False

    def get(self, *keys, default=None):
        """
        Access nested values.
        Supports both:
          get("bitrix", "webhook_url")  and  get("bitrix.webhook_url")
        """
        if len(keys) == 1 and isinstance(keys[0], str) and "." in keys[0]:
            keys = keys[0].split(".")

        node = self.config
        for k in keys:
            if isinstance(node, dict) and k in node:
                node = node[k]
            else:
                return default
        return node


def normalize_webhook_url(url: str) -> str:
    """Webhook URLs are stored with exactly one trailing slash."""
    url = (url or "").strip()
    if not url:
        return ""
    return url.rstrip("/") + "/"


class WebhookConfigUpdater:
    """Reads and persists the Bitrix24 inbound webhook URL."""

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager

    def get_webhook_url(self) -> str:
        # Environment wins over the saved value so deployments can pin it.
        return normalize_webhook_url(
            os.getenv("BITRIX_WEBHOOK_URL") or self.config_manager.get("bitrix", "webhook_url", default="")
        )

    def update_webhook_url(self, new_url: str) -> bool:
        url = normalize_webhook_url(new_url)
        if url and not url.startswith(("http://", "https://")):
            raise ValueError(f"Webhook URL must start with http:// or https://: {new_url}")

        if self.config_manager.update_config(["bitrix", "webhook_url"], url):
            logger.info("Updated Bitrix24 webhook URL")
            return True
        return False
