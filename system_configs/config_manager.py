import os
import toml
from dotenv import load_dotenv
import logging
from typing import Any, Optional, List, Dict

config_manager_logger = logging.getLogger("ConfigManager")
if not config_manager_logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)
    config_manager_logger.addHandler(handler)
config_manager_logger.setLevel(logging.INFO)


class ConfigManager:
    def __init__(self, project_root: Optional[str] = None, config_toml_path: Optional[str] = None,
                 dotenv_path: Optional[str] = None):
        base_project_dir_env = os.getenv("BASE_PROJECT_DIR")
        if project_root:
            self.project_root: str = os.path.abspath(project_root)
        elif base_project_dir_env:
            self.project_root = os.path.abspath(base_project_dir_env)
            config_manager_logger.info(f"BASE_PROJECT_DIR environment variable found: {self.project_root}")
        else:
            # This file lives in system_configs/, one level below the project root.
            self.project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
            config_manager_logger.debug(f"BASE_PROJECT_DIR not set. Inferred project root: {self.project_root}")

        self.config_toml_path: str = config_toml_path or os.getenv(
            "FLEET_CONFIG_FILE", os.path.join(self.project_root, "system_configs", "config.toml"))
        self.dotenv_path: str = dotenv_path or os.path.join(self.project_root, "system_configs", ".env.fleet")

        self.config: Dict[str, Any] = {}
        self._load_config_toml()
        self._load_dotenv()

    def _load_config_toml(self):
        try:
            if os.path.exists(self.config_toml_path):
                with open(self.config_toml_path, 'r', encoding='utf-8') as f:
                    self.config = toml.load(f)
                config_manager_logger.info(f"Successfully loaded configuration from: {self.config_toml_path}")
            else:
                config_manager_logger.warning(f"Configuration file not found at: {self.config_toml_path}. Using defaults and environment variables only.")
                self.config = {}
        except toml.TomlDecodeError as e:
            config_manager_logger.error(f"Error decoding TOML from {self.config_toml_path}: {e}", exc_info=True)
            self.config = {}
        except OSError as e:
            config_manager_logger.error(f"Could not read {self.config_toml_path}: {e}", exc_info=True)
            self.config = {}

    def _load_dotenv(self):
        if os.path.exists(self.dotenv_path):
            if load_dotenv(dotenv_path=self.dotenv_path, override=True):
                config_manager_logger.info(f"Successfully loaded environment variables from: {self.dotenv_path}")
            else:
                config_manager_logger.warning(f"Dotenv file found at {self.dotenv_path}, but no variables were loaded.")
        else:
            config_manager_logger.debug(f"Dotenv file not found at: {self.dotenv_path}. Skipping .env loading.")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Retrieves a configuration value.
        The key should be in dot notation, e.g., "worker.tick_period_seconds".
        Environment variables take precedence. Env var name is derived from key:
        "worker.tick_period_seconds" -> "WORKER_TICK_PERIOD_SECONDS"
        """
        env_var_name = key.upper().replace(".", "_")
        env_value = os.getenv(env_var_name)

        if env_value is not None:
            config_manager_logger.debug(f"Found value for '{key}' in environment variable '{env_var_name}': '{env_value}'")
            return env_value

        value = self.config
        for k_part in key.split('.'):
            if not isinstance(value, dict) or k_part not in value:
                config_manager_logger.debug(f"Key '{key}' not found in TOML config. Using default: '{default}'")
                return default
            value = value[k_part]
        return value

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.get(key, default)
        return str(value) if value is not None else None

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value_str = self.get(key)
        if value_str is None:
            return default
        try:
            return int(value_str)
        except (ValueError, TypeError):
            config_manager_logger.warning(f"Could not convert value for '{key}' ('{value_str}') to int. Using default: {default}")
            return default

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value_str = self.get(key)
        if value_str is None:
            return default
        try:
            return float(value_str)
        except (ValueError, TypeError):
            config_manager_logger.warning(f"Could not convert value for '{key}' ('{value_str}') to float. Using default: {default}")
            return default

    def get_bool(self, key: str, default: Optional[bool] = None) -> Optional[bool]:
        value_str = self.get(key)
        if value_str is None:
            return default

        if isinstance(value_str, bool):
            return value_str

        if isinstance(value_str, str):
            if value_str.lower() in ('true', 'yes', '1', 'on'):
                return True
            elif value_str.lower() in ('false', 'no', '0', 'off'):
                return False

        config_manager_logger.warning(f"Could not convert value for '{key}' ('{value_str}') to bool. Using default: {default}")
        return default

    def get_list(self, key: str, default: Optional[List[Any]] = None) -> Optional[List[Any]]:
        value = self.get(key, default)
        if value is None:
            return default
        if isinstance(value, list):
            return value
        # Comma-separated strings from env vars; an empty string is an empty list
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        config_manager_logger.warning(f"Value for '{key}' is not a list or comma-separated string. Using default: {default}")
        return default

    def get_dict(self, key: str, default: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        value = self.get(key, default)
        if value is None:
            return default
        if isinstance(value, dict):
            return value
        config_manager_logger.warning(f"Value for '{key}' is not a dictionary. Using default: {default}")
        return default

    def get_project_root(self) -> str:
        """Returns the determined project root directory."""
        return self.project_root

    def get_path(self, key: str, default: Optional[str] = None, relative_to_root: bool = True) -> Optional[str]:
        """
        Retrieves a path string. If relative_to_root is True,
        and the path is relative, it's made absolute to the project root.
        """
        path_str = self.get_str(key, default)
        if path_str is None:
            return None

        if relative_to_root and not os.path.isabs(path_str):
            return os.path.join(self.project_root, path_str)
        return path_str

# Global instance of ConfigManager
# from system_configs.config_manager import config
config = ConfigManager()
