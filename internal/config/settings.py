"""YAML-backed settings for the migration control plane.

The settings file path defaults to 'config/migration.yaml'.
Set DRP_CONFIG_PATH env var to override.  The replication API token is
read from DRP_REPLICATION_TOKEN when set, so it need not live in the file.
"""

import copy
import os
import yaml


_DEFAULTS = {
    "functions": {
        "peer_vpc": "DRPCommonPeerVpc",
        "find_common_subnet": "DRPCommonFindCommonSubnet",
        "add_peer_route": "DRPCommonAddPeerRoute",
        "configure_blueprint": "DRPCloudEndureConfigureBlueprint",
        "install_agent": "DRPCloudEndureInstallAgent",
        "launch_machines": "DRPCloudEndureLaunchMachines",
    },
    "workflows": {
        "create-project": "",
        "run-wizard": "",
        "prepare-cutback": "",
        "delete-project": "",
    },
    "tables": {"translation": "drp-vpc-translation"},
    "replication": {"api_url": "https://console.cloudendure.com/api/latest", "api_token": ""},
    "blueprint": {"default_instance_type": "t2.large", "disk_iops": 3000},
    "secrets": {"prefix": "drp"},
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class SettingsStore:
    def __init__(self, path: str | None = None):
        self.path = path or os.environ.get("DRP_CONFIG_PATH", "config/migration.yaml")
        self._cache = None

    def load(self) -> dict:
        if self._cache is None:
            data = {}
            if os.path.exists(self.path):
                with open(self.path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            settings = _merge(_DEFAULTS, data)
            token = os.environ.get("DRP_REPLICATION_TOKEN")
            if token:
                settings["replication"]["api_token"] = token
            self._cache = settings
        return self._cache

    def reload(self) -> dict:
        self._cache = None
        return self.load()

    def function(self, key: str) -> str:
        return self.load()["functions"][key]

    def workflow(self, key: str) -> str:
        return self.load()["workflows"][key]


settings_store = SettingsStore()
